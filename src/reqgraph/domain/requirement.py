"""Requirement records and their outbound parent links."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import UUID, uuid4

from reqgraph.domain import fingerprint
from reqgraph.domain.hrid import Hrid
from reqgraph.errors import ParseError

FORMAT_VERSION = "1"


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def clean_title(title: str) -> str:
    """A title is one line; surrounding whitespace is dropped."""
    if "\n" in title or "\r" in title:
        raise ParseError(f"title must be a single line, got {title!r}")
    return title.strip()


def clean_body(body: str) -> str:
    """The body as a document gives it back: LF endings, no blank lines around it."""
    body = body.replace("\r\n", "\n").replace("\r", "\n")
    return body.rstrip().strip("\n")


@dataclass
class ParentLink:
    """A child's reference to one parent.

    ``hrid`` and ``fingerprint`` are snapshots taken when the link was made
    (or last reviewed); the parent's uuid is the only authoritative part.
    """

    uuid: UUID
    hrid: Hrid
    fingerprint: str
    reviewed: bool = False


@dataclass
class Requirement:
    """A single requirement document.

    Instances handed out by a ``Tree`` are live: change them through the
    tree's operations, not by assigning attributes.

    ``extra`` holds frontmatter keys this package does not interpret; they
    are written back after the known keys.
    """

    hrid: Hrid
    title: str = ""
    body: str = ""
    uuid: UUID = field(default_factory=uuid4)
    created: datetime = field(default_factory=utc_now)
    tags: set[str] = field(default_factory=set)
    parents: list[ParentLink] = field(default_factory=list)
    version: str = FORMAT_VERSION
    extra: dict[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.title = clean_title(self.title)
        self.body = clean_body(self.body)

    @property
    def kind(self) -> str:
        return self.hrid.kind

    def fingerprint(self) -> str:
        return fingerprint.compute(self)

    def parent_link(self, parent: UUID) -> ParentLink | None:
        for link in self.parents:
            if link.uuid == parent:
                return link
        return None

    def parent_uuids(self) -> list[UUID]:
        return [link.uuid for link in self.parents]
