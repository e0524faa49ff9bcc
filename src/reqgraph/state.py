"""Shared access to a Directory from concurrent async callers.

Reads (queries, suspect-link reports) may overlap; writes (any mutation or
flush) run alone. Writers are preferred: once a writer is waiting, new
readers queue behind it.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from reqgraph.config import Config
from reqgraph.storage.directory import Directory

logger = logging.getLogger(__name__)


class ReadWriteLock:
    """Many readers or one writer, for coroutines on a single event loop."""

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def writing(self) -> bool:
        return self._writer

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and not self._waiting_writers)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._cond:
            self._waiting_writers += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and not self._readers)
            finally:
                self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


class ServerState:
    """A Directory guarded by a readers-writer lock."""

    def __init__(self, directory: Directory) -> None:
        self._directory = directory
        self._lock = ReadWriteLock()

    @classmethod
    def open(cls, root: Path, config: Config | None = None) -> ServerState:
        return cls(Directory.open(root, config))

    @property
    def lock(self) -> ReadWriteLock:
        return self._lock

    @asynccontextmanager
    async def read(self) -> AsyncIterator[Directory]:
        async with self._lock.read():
            yield self._directory

    @asynccontextmanager
    async def write(self) -> AsyncIterator[Directory]:
        async with self._lock.write():
            yield self._directory

    async def reload(self) -> Directory:
        """Re-read the directory from disk, discarding unflushed changes."""
        async with self._lock.write():
            current = self._directory
            if current.dirty:
                logger.warning("Reloading %s with %d unflushed changes", current.root, len(current.dirty))
            self._directory = await asyncio.to_thread(Directory.open, current.root, current.config)
            return self._directory
