"""A filesystem-backed store of requirements.

Loading is fan-out/fan-in: every discovered document is parsed on a worker
pool (parsing is side-effect free), then the results are folded into a fresh
``Tree`` one at a time in sorted-path order, so conflicts are always reported
against the same "first" document. Edges are only built once every node is
known. A load either returns a complete ``Directory`` or raises; no partial
tree is ever exposed.

The directory owns no graph logic: every relationship change goes through
its ``Tree``. It tracks which requirements changed and writes them back on
``flush()``.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Iterable, Iterator
from uuid import UUID

import yaml

from reqgraph.config import CONFIG_DIR, Config, load_config
from reqgraph.domain.hrid import Hrid, normalize_namespace, parse
from reqgraph.domain.requirement import Requirement
from reqgraph.domain.tree import SuspectLink, Tree
from reqgraph.errors import (
    ConfigError,
    CycleDetected,
    DuplicateHrid,
    DuplicateUuid,
    FlushError,
    IoError,
    NotFound,
    ParseError,
    SelfLink,
    UnrecognisedDocument,
)
from reqgraph.storage import markdown
from reqgraph.storage.layout import SUFFIX, Layout

logger = logging.getLogger(__name__)

_SEQUENCE_FILE = "sequence.yaml"
_TEMPLATES_DIR = "templates"


@dataclass(frozen=True)
class LoadWarning:
    """A document excluded from a lenient load."""

    location: Path
    reason: str


@dataclass
class _Parsed:
    path: Path
    requirement: Requirement | None = None
    invalid: ParseError | None = None
    unrecognised: UnrecognisedDocument | None = None


# ── Discovery and parsing ─────────────────────────────────────


def discover(root: Path) -> Iterator[Path]:
    """Markdown files under ``root``, skipping ``.req/`` and other hidden folders."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(name for name in dirnames if not name.startswith("."))
        for name in sorted(filenames):
            if name.endswith(SUFFIX):
                yield Path(dirpath) / name


def _parse_one(path: Path, layout: Layout, config: Config) -> _Parsed:
    """Classify and parse one document. Runs on a worker thread."""
    try:
        expected = layout.hrid_for(path)
    except UnrecognisedDocument as e:
        return _Parsed(path, unrecognised=e)

    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return _Parsed(path, invalid=ParseError("not valid UTF-8 text", path))
    except OSError as e:
        raise IoError(path, e) from e

    try:
        requirement = markdown.loads(
            text, path, expected=expected, namespace_case=config.namespace_case
        )
        if not config.is_kind_allowed(requirement.kind):
            raise ParseError(
                f"kind {requirement.kind} is not allowed "
                f"(allowed: {', '.join(config.allowed_kinds)})",
                path,
            )
    except ParseError as e:
        return _Parsed(path, invalid=e)
    return _Parsed(path, requirement=requirement)


def _read_sequence(root: Path) -> dict[str, int]:
    path = root / CONFIG_DIR / _SEQUENCE_FILE
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ParseError(f"malformed sequence file: {e}", path) from e
    except OSError as e:
        raise IoError(path, e) from e
    if not isinstance(data, dict) or not all(isinstance(v, int) for v in data.values()):
        raise ParseError("sequence file must map prefixes to numbers", path)
    return {str(prefix): number for prefix, number in data.items()}


def load(root: Path, config: Config | None = None) -> Directory:
    """Load every requirement under ``root`` into a new ``Directory``."""
    config = config or load_config(root)
    if not root.is_dir():
        raise IoError(root, NotADirectoryError(f"requirements root {root} is not a directory"))

    layout = Layout(root, config.layout, config.digits, config.namespace_case)
    paths = sorted(discover(root))

    with ThreadPoolExecutor(max_workers=config.workers or os.cpu_count()) as pool:
        parsed = list(pool.map(partial(_parse_one, layout=layout, config=config), paths))

    tree = Tree()
    locations: dict[UUID, Path] = {}
    warnings: list[LoadWarning] = []
    for result in parsed:
        if result.unrecognised is not None:
            if not config.policy.allow_unrecognised:
                raise result.unrecognised
            logger.debug("Skipping unrecognised file %s", result.path)
            continue
        if result.invalid is not None:
            if not config.policy.allow_invalid:
                raise result.invalid
            warnings.append(LoadWarning(result.path, result.invalid.reason))
            logger.warning("Excluding invalid requirement %s: %s", result.path, result.invalid.reason)
            continue

        requirement = result.requirement
        try:
            tree.insert_node(requirement)
        except DuplicateUuid as e:
            raise DuplicateUuid(e.uuid, locations[e.uuid], result.path) from e
        except DuplicateHrid as e:
            raise DuplicateHrid(
                e.hrid, e.existing, e.rejected, locations[e.existing], result.path
            ) from e
        locations[requirement.uuid] = result.path

    try:
        tree.build_edges()
    except SelfLink as e:
        raise SelfLink(e.hrid, locations[tree.require(e.hrid).uuid]) from e
    except CycleDetected as e:
        raise CycleDetected(e.path, locations[tree.require(e.path[0]).uuid]) from e

    tree.seed_issued(_read_sequence(root))
    logger.info(
        "Loaded %d requirements from %s (%d excluded)", len(tree), root, len(warnings)
    )
    return Directory(root, config, tree, locations, warnings)


# ── Directory ─────────────────────────────────────────────────


class Directory:
    """Requirements stored one file per entity under ``root``."""

    def __init__(
        self,
        root: Path,
        config: Config,
        tree: Tree | None = None,
        locations: dict[UUID, Path] | None = None,
        warnings: list[LoadWarning] | None = None,
    ) -> None:
        self.root = root
        self.config = config
        self.tree = tree if tree is not None else Tree()
        self.layout = Layout(root, config.layout, config.digits, config.namespace_case)
        self.warnings = warnings or []
        self._paths: dict[UUID, Path] = dict(locations or {})
        self._dirty: set[UUID] = set()
        self._deletions: set[Path] = set()

    @classmethod
    def open(cls, root: Path, config: Config | None = None) -> Directory:
        return load(root, config)

    def _hrid(self, value: Hrid | str) -> Hrid:
        if isinstance(value, Hrid):
            return value
        return parse(value, namespace_case=self.config.namespace_case)

    def _mark_dirty(self, *uuids: UUID) -> None:
        self._dirty.update(uuids)

    @property
    def dirty(self) -> list[Hrid]:
        return sorted(self.tree.get(uuid).hrid for uuid in self._dirty if uuid in self.tree)

    # ── Reads ─────────────────────────────────────────────────

    def requirements(self) -> list[Requirement]:
        return list(self.tree)

    def get(self, hrid: Hrid | str) -> Requirement:
        return self.tree.require(self._hrid(hrid))

    def get_by_uuid(self, uuid: UUID) -> Requirement:
        return self.tree.get(uuid)

    def children(self, hrid: Hrid | str) -> list[Requirement]:
        return self.tree.children(self.get(hrid).uuid)

    def parents(self, hrid: Hrid | str) -> list[Requirement]:
        return self.tree.parents(self.get(hrid).uuid)

    def ancestors(self, hrid: Hrid | str) -> list[Requirement]:
        return list(self.tree.ancestors(self.get(hrid).uuid))

    def descendants(self, hrid: Hrid | str) -> list[Requirement]:
        return list(self.tree.descendants(self.get(hrid).uuid))

    def suspect_links(self) -> list[SuspectLink]:
        return list(self.tree.suspect_links())

    def orphans(self) -> list[Requirement]:
        return self.tree.orphans()

    def leaves(self) -> list[Requirement]:
        return self.tree.leaves()

    def path_for(self, hrid: Hrid | str) -> Path | None:
        """Where a requirement was loaded from (None if never persisted)."""
        return self._paths.get(self.get(hrid).uuid)

    def canonical_path(self, hrid: Hrid | str) -> Path:
        return self.layout.path_for(self._hrid(hrid))

    # ── Writes ────────────────────────────────────────────────

    def _check_kind(self, kind: str) -> None:
        if not self.config.is_kind_allowed(kind):
            raise ConfigError(
                f"kind {kind!r} is not allowed (allowed: {', '.join(self.config.allowed_kinds)})"
            )

    def _template(self, hrid: Hrid) -> str:
        """Body template: ``.req/templates/<PREFIX>.md``, then ``<KIND>.md``."""
        templates = self.root / CONFIG_DIR / _TEMPLATES_DIR
        for name in dict.fromkeys((hrid.prefix, hrid.kind)):
            path = templates / f"{name}{SUFFIX}"
            if path.exists():
                logger.debug("Using template %s for %s", path, hrid)
                try:
                    return path.read_text(encoding="utf-8").strip("\n")
                except OSError as e:
                    raise IoError(path, e) from e
        return ""

    def create(
        self,
        kind: str,
        title: str = "",
        body: str = "",
        *,
        namespace: Iterable[str] = (),
        parents: Iterable[Hrid | str] = (),
        tags: Iterable[str] = (),
    ) -> Requirement:
        """Add a new requirement with the next free number for its prefix."""
        kind = kind.upper()
        self._check_kind(kind)
        parent_nodes = [self.get(parent) for parent in parents]

        hrid = self.tree.next_hrid(normalize_namespace(namespace, self.config.namespace_case), kind)
        requirement = Requirement(
            hrid=hrid, title=title, body=body or self._template(hrid), tags=set(tags)
        )
        self.tree.insert_node(requirement)
        for parent in parent_nodes:
            self.tree.link(requirement.uuid, parent.uuid)
        self._mark_dirty(requirement.uuid)

        logger.info("Created %s", hrid.format(self.config.digits))
        return requirement

    def edit(
        self,
        hrid: Hrid | str,
        *,
        title: str | None = None,
        body: str | None = None,
        tags: Iterable[str] | None = None,
    ) -> Requirement:
        requirement = self.tree.edit(self.get(hrid).uuid, title=title, body=body, tags=tags)
        self._mark_dirty(requirement.uuid)
        logger.info("Edited %s", requirement.hrid.format(self.config.digits))
        return requirement

    def link(self, child: Hrid | str, parent: Hrid | str) -> Requirement:
        child_node, parent_node = self.get(child), self.get(parent)
        digits = self.config.digits
        if self.tree.link(child_node.uuid, parent_node.uuid):
            self._mark_dirty(child_node.uuid)
            logger.info("Linked %s <- %s", child_node.hrid.format(digits), parent_node.hrid.format(digits))
        else:
            logger.debug("%s already links to %s", child_node.hrid, parent_node.hrid)
        return child_node

    def unlink(self, child: Hrid | str, parent: Hrid | str) -> Requirement:
        """Remove a parent link; the parent may already be deleted."""
        child_node = self.get(child)
        parent_hrid = self._hrid(parent)
        target = self.tree.find(parent_hrid)
        if target is not None:
            parent_uuid = target.uuid
        else:
            parent_uuid = next(
                (link.uuid for link in child_node.parents if link.hrid == parent_hrid), None
            )
            if parent_uuid is None:
                raise NotFound(parent_hrid)
        self.tree.unlink(child_node.uuid, parent_uuid)
        self._mark_dirty(child_node.uuid)
        logger.info("Unlinked %s from %s", child_node.hrid, parent_hrid)
        return child_node

    def review(self, child: Hrid | str, parent: Hrid | str) -> Requirement:
        child_node, parent_node = self.get(child), self.get(parent)
        if self.tree.review(child_node.uuid, parent_node.uuid):
            self._mark_dirty(child_node.uuid)
            logger.info("Reviewed %s <- %s", child_node.hrid, parent_node.hrid)
        return child_node

    def review_all(self) -> list[tuple[Hrid, Hrid]]:
        reviewed = self.tree.review_all()
        for child, _ in reviewed:
            self._mark_dirty(child)
        pairs = [(self.tree.get(child).hrid, self.tree.get(parent).hrid) for child, parent in reviewed]
        if pairs:
            logger.info("Reviewed %d suspect links", len(pairs))
        return pairs

    def delete(self, hrid: Hrid | str) -> tuple[Requirement, list[SuspectLink]]:
        """Remove a requirement; links to it are left dangling and returned."""
        requirement, dangling = self.tree.remove_node(self.get(hrid).uuid)
        self._dirty.discard(requirement.uuid)
        path = self._paths.pop(requirement.uuid, None)
        if path is not None:
            self._deletions.add(path)
        logger.info(
            "Deleted %s (%d dangling links)", requirement.hrid.format(self.config.digits), len(dangling)
        )
        return requirement, dangling

    def delete_and_orphan(self, hrid: Hrid | str) -> tuple[Requirement, list[Hrid]]:
        """Remove a requirement after unlinking it from its children.

        Returns the removed requirement and the children that lost it.
        """
        requirement = self.get(hrid)
        children = self.tree.children(requirement.uuid)
        for child in children:
            self.tree.unlink(child.uuid, requirement.uuid)
        self._mark_dirty(*(child.uuid for child in children))
        removed, _ = self.delete(requirement.hrid)
        return removed, [child.hrid for child in children]

    def find_orphaned_descendants(self, hrid: Hrid | str) -> list[Hrid]:
        """What a cascading delete of ``hrid`` would remove, itself included."""
        doomed = self.tree.orphaned_descendants(self.get(hrid).uuid)
        return sorted(self.tree.get(uuid).hrid for uuid in doomed)

    def delete_cascade(self, hrid: Hrid | str) -> list[Requirement]:
        """Remove ``hrid`` and every descendant that would be left without parents."""
        doomed = self.tree.orphaned_descendants(self.get(hrid).uuid)
        removed = [self.delete(self.tree.get(uuid).hrid)[0] for uuid in reversed(doomed)]
        return sorted(removed, key=lambda requirement: requirement.hrid)

    def rename(self, hrid: Hrid | str, new_hrid: Hrid | str) -> list[Hrid]:
        """Change an identifier; returns the children whose parent entries changed."""
        new_hrid = self._hrid(new_hrid)
        self._check_kind(new_hrid.kind)
        requirement = self.get(hrid)
        old = requirement.hrid
        children = self.tree.rename(requirement.uuid, new_hrid)

        old_path = self._paths.pop(requirement.uuid, None)
        if old_path is not None:
            self._deletions.add(old_path)
            self._paths[requirement.uuid] = self.layout.path_for(new_hrid)
        self._mark_dirty(requirement.uuid, *children)

        logger.info("Renamed %s to %s", old, new_hrid)
        return [self.tree.get(child).hrid for child in children]

    def hrid_drift(self) -> list[Hrid]:
        return [self.tree.get(uuid).hrid for uuid in self.tree.hrid_drift()]

    def refresh_parent_hrids(self) -> list[Hrid]:
        """Update cached parent identifiers that drifted (e.g. files renamed by hand)."""
        updated = self.tree.refresh_parent_hrids()
        self._mark_dirty(*updated)
        return [self.tree.get(uuid).hrid for uuid in updated]

    # ── Locations ─────────────────────────────────────────────

    def misplaced(self) -> list[tuple[Hrid, Path, Path]]:
        """Requirements not stored at their canonical location."""
        found = []
        for requirement in self.tree:
            current = self._paths.get(requirement.uuid)
            canonical = self.layout.path_for(requirement.hrid)
            if current is not None and current != canonical:
                found.append((requirement.hrid, current, canonical))
        return found

    def move(self, hrid: Hrid | str, new_path: Path) -> list[Hrid] | None:
        """Store a requirement at ``new_path`` from the next flush on.

        When the new location implies another identifier the requirement is
        renamed and the children whose parent entries changed are returned;
        otherwise None.
        """
        if not new_path.is_absolute():
            new_path = self.root / new_path
        requirement = self.get(hrid)
        new_hrid = self.layout.hrid_for(new_path)
        old_path = self._paths.get(requirement.uuid)

        children = None
        if new_hrid != requirement.hrid:
            children = self.rename(requirement.hrid, new_hrid)

        if old_path is not None and old_path != new_path:
            self._deletions.add(old_path)
        self._paths[requirement.uuid] = new_path
        self._deletions.discard(new_path)
        self._mark_dirty(requirement.uuid)

        logger.info("Moved %s to %s", requirement.hrid, new_path)
        return children

    def relocate(self) -> list[tuple[Hrid, Path, Path]]:
        """Move misplaced documents to their canonical location."""
        moved = []
        for hrid, current, canonical in self.misplaced():
            try:
                canonical.parent.mkdir(parents=True, exist_ok=True)
                current.rename(canonical)
            except OSError as e:
                raise IoError(current, e) from e
            self._paths[self.tree.require(hrid).uuid] = canonical
            moved.append((hrid, current, canonical))
            logger.info("Moved %s from %s to %s", hrid, current, canonical)
        return moved

    # ── Persistence ───────────────────────────────────────────

    def flush(self, full: bool = False) -> list[Hrid]:
        """Write changed requirements (every requirement with ``full``).

        Documents are rendered and written in parallel. All writes are
        attempted; failures are raised together as ``FlushError``.
        """
        self._dirty = {uuid for uuid in self._dirty if uuid in self.tree}
        targets = list(self.tree) if full else [self.tree.get(uuid) for uuid in self._dirty]
        jobs = {
            requirement.uuid: (
                requirement,
                self._paths.get(requirement.uuid) or self.layout.path_for(requirement.hrid),
            )
            for requirement in targets
        }

        flushed: list[Hrid] = []
        failures: list[tuple[Path, OSError]] = []
        with ThreadPoolExecutor(max_workers=self.config.workers or os.cpu_count()) as pool:
            futures = {
                pool.submit(markdown.dump, requirement, path, self.config.digits): uuid
                for uuid, (requirement, path) in jobs.items()
            }
            for future in as_completed(futures):
                uuid = futures[future]
                requirement, path = jobs[uuid]
                try:
                    future.result()
                except OSError as e:
                    failures.append((path, e))
                    continue
                self._paths[uuid] = path
                self._dirty.discard(uuid)
                flushed.append(requirement.hrid)

        live = set(self._paths.values())
        for path in sorted(self._deletions - live):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                failures.append((path, e))
        self._deletions &= {path for path, _ in failures}

        try:
            self._write_sequence()
        except OSError as e:
            failures.append((self.root / CONFIG_DIR / _SEQUENCE_FILE, e))

        if failures:
            raise FlushError(sorted(failures, key=lambda failure: failure[0]))
        if flushed:
            logger.info("Flushed %d requirements", len(flushed))
        return sorted(flushed)

    def _write_sequence(self) -> None:
        issued = self.tree.issued()
        if not issued:
            return
        path = self.root / CONFIG_DIR / _SEQUENCE_FILE
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(issued, sort_keys=True), encoding="utf-8")
