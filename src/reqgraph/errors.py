"""Error taxonomy shared by the domain and storage layers.

Structural violations (duplicates, cycles, self-links) are raised and never
corrected. Stale and dangling links are not errors: they are reported by
``Tree.suspect_links()``.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Sequence
from uuid import UUID

if TYPE_CHECKING:
    from reqgraph.domain.hrid import Hrid


class ReqGraphError(Exception):
    """Base class for every error raised by reqgraph."""


class ParseError(ReqGraphError):
    """A document (or identifier text) could not be parsed."""

    def __init__(self, reason: str, location: Path | str | None = None) -> None:
        self.reason = reason
        self.location = location
        if location is None:
            super().__init__(reason)
        else:
            super().__init__(f"{location}: {reason}")


class HridError(ParseError):
    """Identifier text does not follow the ``[namespace-]KIND-NNN`` grammar."""

    def __init__(self, text: str, reason: str) -> None:
        self.text = text
        super().__init__(f"invalid identifier {text!r}: {reason}")


class UnrecognisedDocument(ReqGraphError):
    """A file does not follow the configured layout convention at all."""

    def __init__(self, location: Path | str, reason: str) -> None:
        self.location = location
        self.reason = reason
        super().__init__(f"{location}: unrecognised document ({reason})")


class DuplicateUuid(ReqGraphError):
    def __init__(
        self,
        uuid: UUID,
        existing_source: Path | str | None = None,
        rejected_source: Path | str | None = None,
    ) -> None:
        self.uuid = uuid
        self.existing_source = existing_source
        self.rejected_source = rejected_source
        message = f"duplicate uuid {uuid}"
        if existing_source is not None or rejected_source is not None:
            message += f" (kept {existing_source}, rejected {rejected_source})"
        super().__init__(message)


class DuplicateHrid(ReqGraphError):
    def __init__(
        self,
        hrid: Hrid,
        existing: UUID,
        rejected: UUID,
        existing_source: Path | str | None = None,
        rejected_source: Path | str | None = None,
    ) -> None:
        self.hrid = hrid
        self.existing = existing
        self.rejected = rejected
        self.existing_source = existing_source
        self.rejected_source = rejected_source
        kept = existing_source if existing_source is not None else existing
        dropped = rejected_source if rejected_source is not None else rejected
        super().__init__(f"duplicate identifier {hrid} (kept {kept}, rejected {dropped})")


class NotFound(ReqGraphError):
    """No requirement (or link) with the given uuid or identifier."""

    def __init__(self, key: UUID | Hrid | str, what: str = "requirement") -> None:
        self.key = key
        self.what = what
        super().__init__(f"{what} {key} not found")


class CycleDetected(ReqGraphError):
    """The edge relation would contain (or contains) a cycle.

    ``path`` lists the identifiers around the loop, first and last equal.
    """

    def __init__(self, path: Sequence[Hrid], location: Path | str | None = None) -> None:
        self.path = list(path)
        self.location = location
        rendered = " -> ".join(str(hrid) for hrid in self.path)
        message = f"cycle detected: {rendered}"
        if location is not None:
            message = f"{location}: {message}"
        super().__init__(message)


class SelfLink(ReqGraphError):
    def __init__(self, hrid: Hrid, location: Path | str | None = None) -> None:
        self.hrid = hrid
        self.location = location
        message = f"{hrid} cannot be its own parent"
        if location is not None:
            message = f"{location}: {message}"
        super().__init__(message)


class IoError(ReqGraphError):
    def __init__(self, location: Path | str, cause: OSError) -> None:
        self.location = location
        self.cause = cause
        super().__init__(f"{location}: {cause}")


class ConfigError(ReqGraphError):
    pass


class FlushError(ReqGraphError):
    """One or more documents could not be written.

    Every write is attempted before this is raised.
    """

    MAX_DISPLAY = 5

    def __init__(self, failures: list[tuple[Path, OSError]]) -> None:
        self.failures = failures
        shown = ", ".join(str(path) for path, _ in failures[: self.MAX_DISPLAY])
        if len(failures) > self.MAX_DISPLAY:
            shown += f"... (and {len(failures) - self.MAX_DISPLAY} more)"
        super().__init__(f"failed to flush requirements: {shown}")
