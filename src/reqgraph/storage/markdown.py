"""Requirement documents: YAML frontmatter, a heading, then free text.

    ---
    _version: '1'
    uuid: 12b3f5c5-b1a8-4aa8-a882-20ff1c2aab53
    created: '2025-07-14T07:15:00Z'
    tags:
    - security
    parents:
    - uuid: 550e8400-e29b-41d4-a716-446655440000
      hrid: USR-001
      fingerprint: 9f86d081884c7d659a2feaa0c55ad015a3bf4f1b2b0b822cd15d6c15b0f00a08
      reviewed: true
    ---

    # SYS-001 Session timeout

    Sessions expire after 15 minutes of inactivity.

Keys are always written in the order above; empty ``tags``/``parents`` and
false ``reviewed`` markers are omitted, so an unedited document renders back
to the same metadata block. Keys this package does not know are kept and
written after the known ones.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from pathlib import Path
from uuid import UUID

import frontmatter
import yaml

from reqgraph.domain.hrid import DEFAULT_WIDTH, Hrid, NamespaceCase, parse
from reqgraph.domain.requirement import FORMAT_VERSION, ParentLink, Requirement
from reqgraph.errors import HridError, ParseError

logger = logging.getLogger(__name__)

SUPPORTED_VERSIONS = {FORMAT_VERSION}
_KNOWN_KEYS = {"_version", "uuid", "created", "tags", "parents"}


# ── Reading ───────────────────────────────────────────────────


def _parse_uuid(value: object, field: str, location: Path | str | None) -> UUID:
    if value is None:
        raise ParseError(f"missing required field '{field}'", location)
    try:
        return UUID(str(value))
    except ValueError:
        raise ParseError(f"'{field}' is not a valid uuid: {value!r}", location) from None


def _parse_created(value: object, location: Path | str | None) -> datetime:
    if value is None:
        raise ParseError("missing required field 'created'", location)
    if isinstance(value, datetime):
        created = value
    elif isinstance(value, date):
        created = datetime(value.year, value.month, value.day)
    else:
        try:
            created = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise ParseError(f"'created' is not a timestamp: {value!r}", location) from None
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return created.astimezone(timezone.utc)


def _parse_hrid(
    value: object, location: Path | str | None, namespace_case: NamespaceCase
) -> Hrid:
    try:
        return parse(str(value), namespace_case=namespace_case)
    except HridError as e:
        raise ParseError(e.reason, location) from None


def _parse_parents(
    entries: object, location: Path | str | None, namespace_case: NamespaceCase
) -> list[ParentLink]:
    if entries is None:
        return []
    if not isinstance(entries, list):
        raise ParseError("'parents' must be a list", location)

    links: list[ParentLink] = []
    seen: set[UUID] = set()
    for entry in entries:
        if not isinstance(entry, dict):
            raise ParseError(f"invalid parent entry: {entry!r}", location)
        uuid = _parse_uuid(entry.get("uuid"), "parents.uuid", location)
        if uuid in seen:
            raise ParseError(f"parent {uuid} listed more than once", location)
        seen.add(uuid)
        if entry.get("hrid") is None:
            raise ParseError("missing required field 'parents.hrid'", location)
        if entry.get("fingerprint") is None:
            raise ParseError("missing required field 'parents.fingerprint'", location)
        reviewed = entry.get("reviewed", False)
        if not isinstance(reviewed, bool):
            raise ParseError(f"'reviewed' must be true or false, got {reviewed!r}", location)
        links.append(
            ParentLink(
                uuid=uuid,
                hrid=_parse_hrid(entry["hrid"], location, namespace_case),
                fingerprint=str(entry["fingerprint"]),
                reviewed=reviewed,
            )
        )
    return links


def _split_heading(
    content: str, location: Path | str | None, namespace_case: NamespaceCase
) -> tuple[Hrid, str, str]:
    """``# HRID Title`` on the first line, the rest is the body."""
    heading, _, rest = content.partition("\n")
    if not heading.startswith("#"):
        raise ParseError("missing heading with the requirement identifier", location)
    tokens = heading.lstrip("#").strip().split(maxsplit=1)
    if not tokens:
        raise ParseError("heading does not start with an identifier", location)
    hrid = _parse_hrid(tokens[0], location, namespace_case)
    title = tokens[1].strip() if len(tokens) > 1 else ""
    return hrid, title, rest.strip("\n")


def loads(
    text: str,
    location: Path | str | None = None,
    *,
    expected: Hrid | None = None,
    namespace_case: NamespaceCase = "lower",
) -> Requirement:
    """Parse one document. Raises ``ParseError`` naming ``location``.

    ``expected`` is the identifier implied by the document's location; a
    heading that disagrees with it makes the document invalid.
    """
    try:
        metadata, content = frontmatter.parse(text)
    except yaml.YAMLError as e:
        raise ParseError(f"malformed metadata block: {e}", location) from e

    metadata = dict(metadata)
    if not metadata:
        raise ParseError("missing metadata block", location)

    version = str(metadata.get("_version", FORMAT_VERSION))
    if version not in SUPPORTED_VERSIONS:
        raise ParseError(f"unsupported format version {version!r}", location)

    extra = {key: value for key, value in metadata.items() if key not in _KNOWN_KEYS}
    if extra:
        logger.debug("%s: keeping unknown metadata keys %s", location, list(extra))

    uuid = _parse_uuid(metadata.get("uuid"), "uuid", location)
    created = _parse_created(metadata.get("created"), location)

    tags = metadata.get("tags") or []
    if not isinstance(tags, list):
        raise ParseError("'tags' must be a list", location)

    parents = _parse_parents(metadata.get("parents"), location, namespace_case)
    hrid, title, body = _split_heading(content, location, namespace_case)
    if expected is not None and hrid != expected:
        raise ParseError(f"heading identifier {hrid} does not match location ({expected})", location)

    return Requirement(
        hrid=hrid,
        title=title,
        body=body,
        uuid=uuid,
        created=created,
        tags={str(tag) for tag in tags},
        parents=parents,
        version=version,
        extra=extra,
    )


def load(
    path: Path,
    *,
    expected: Hrid | None = None,
    namespace_case: NamespaceCase = "lower",
) -> Requirement:
    """Read and parse a document file. ``OSError`` propagates to the caller."""
    text = path.read_text(encoding="utf-8")
    return loads(text, path, expected=expected, namespace_case=namespace_case)


# ── Writing ───────────────────────────────────────────────────


def format_created(created: datetime) -> str:
    return created.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def metadata_for(requirement: Requirement, digits: int = DEFAULT_WIDTH) -> dict:
    """Frontmatter fields in their canonical order."""
    metadata: dict = {
        "_version": requirement.version,
        "uuid": str(requirement.uuid),
        "created": format_created(requirement.created),
    }
    if requirement.tags:
        metadata["tags"] = sorted(requirement.tags)
    if requirement.parents:
        entries = []
        for link in requirement.parents:
            entry = {
                "uuid": str(link.uuid),
                "hrid": link.hrid.format(digits),
                "fingerprint": link.fingerprint,
            }
            if link.reviewed:
                entry["reviewed"] = True
            entries.append(entry)
        metadata["parents"] = entries
    metadata.update(requirement.extra)
    return metadata


def dumps(requirement: Requirement, digits: int = DEFAULT_WIDTH) -> str:
    heading = f"# {requirement.hrid.format(digits)}"
    if requirement.title:
        heading += f" {requirement.title}"
    content = f"{heading}\n\n{requirement.body}" if requirement.body else heading

    post = frontmatter.Post(content)
    post.metadata.update(metadata_for(requirement, digits))
    return frontmatter.dumps(post, sort_keys=False) + "\n"


def dump(requirement: Requirement, path: Path, digits: int = DEFAULT_WIDTH) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps(requirement, digits), encoding="utf-8")
