"""Content fingerprints used to detect upstream change.

Only kind, title and body take part. Tags, timestamps and parent links are
metadata: editing them never moves a requirement's fingerprint.
"""

from __future__ import annotations

import hashlib
import struct
import unicodedata
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from reqgraph.domain.requirement import Requirement

DIGEST_LENGTH = 64


def normalize_text(text: str) -> str:
    """NFC form with ``\\n`` line endings."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return unicodedata.normalize("NFC", text)


def canonical_bytes(kind: str, title: str, body: str) -> bytes:
    """Length-prefixed ``kind || title || body`` (8-byte big-endian lengths)."""
    chunks = []
    for field in (kind, title, body):
        encoded = normalize_text(field).encode("utf-8")
        chunks.append(struct.pack(">Q", len(encoded)))
        chunks.append(encoded)
    return b"".join(chunks)


def digest(kind: str, title: str, body: str) -> str:
    return hashlib.sha256(canonical_bytes(kind, title, body)).hexdigest()


def compute(requirement: Requirement) -> str:
    return digest(requirement.kind, requirement.title, requirement.body)
