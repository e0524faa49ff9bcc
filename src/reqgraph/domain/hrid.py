"""Human-readable identifiers (HRIDs).

Grammar: ``[namespace-]*KIND-NNN``

- namespace: zero or more alphanumeric segments, lowercase by default
- KIND: uppercase alphanumeric token starting with a letter (``USR``, ``SYS``)
- NNN: non-negative integer, zero-padded to a configurable width on render

Examples: ``USR-001``, ``auth-SYS-042``, ``auth-api-TST-1200``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import Iterable, Literal

from reqgraph.errors import HridError

DEFAULT_WIDTH = 3

NamespaceCase = Literal["lower", "preserve"]

_KIND_RE = re.compile(r"^[A-Z][A-Z0-9]*$")
_SEGMENT_RE = re.compile(r"^[A-Za-z0-9]+$")
_NUMBER_RE = re.compile(r"^[0-9]+$")


@dataclass(frozen=True, order=True)
class Hrid:
    """An identifier; equality and ordering follow (namespace, kind, number)."""

    namespace: tuple[str, ...]
    kind: str
    number: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "namespace", tuple(self.namespace))
        text = self.format()
        if not _KIND_RE.match(self.kind):
            raise HridError(text, f"kind {self.kind!r} must match [A-Z][A-Z0-9]*")
        for segment in self.namespace:
            if not _SEGMENT_RE.match(segment):
                raise HridError(text, f"namespace segment {segment!r} must be alphanumeric")
        if self.number < 0:
            raise HridError(text, "sequence number must not be negative")

    @property
    def prefix(self) -> str:
        """Namespace and kind without the number, e.g. ``auth-SYS``."""
        return "-".join((*self.namespace, self.kind))

    def format(self, width: int = DEFAULT_WIDTH) -> str:
        return f"{self.prefix}-{self.number:0{width}d}"

    def with_number(self, number: int) -> Hrid:
        return replace(self, number=number)

    def __str__(self) -> str:
        return self.format()


def parse(text: str, *, namespace_case: NamespaceCase = "lower") -> Hrid:
    """Parse identifier text; raises ``HridError`` when it is malformed."""
    if not text or text.startswith("-") or text.endswith("-") or "--" in text:
        raise HridError(text, "expected [namespace-]KIND-NNN")

    parts = text.split("-")
    if len(parts) < 2:
        raise HridError(text, "expected [namespace-]KIND-NNN")

    *namespace, kind, number = parts
    if not _NUMBER_RE.match(number):
        raise HridError(text, f"sequence number {number!r} is not a non-negative integer")
    if not _KIND_RE.match(kind):
        raise HridError(text, f"kind {kind!r} must match [A-Z][A-Z0-9]*")
    for segment in namespace:
        if not _SEGMENT_RE.match(segment):
            raise HridError(text, f"namespace segment {segment!r} must be alphanumeric")

    if namespace_case == "lower":
        namespace = [segment.lower() for segment in namespace]

    return Hrid(tuple(namespace), kind, int(number))


def normalize_namespace(
    namespace: Iterable[str], namespace_case: NamespaceCase = "lower"
) -> tuple[str, ...]:
    segments = tuple(namespace)
    if namespace_case == "lower":
        return tuple(segment.lower() for segment in segments)
    return segments


def next_number(existing: Iterable[int]) -> int:
    """One more than the highest number already issued, starting at 1.

    Gaps left by deleted requirements are never refilled.
    """
    return max(existing, default=0) + 1
