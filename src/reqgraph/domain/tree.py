"""In-memory requirement graph.

The tree is the only authority on relationship integrity. Nodes are kept in a
flat ``uuid -> Requirement`` map; edges are the ParentLinks each node
declares, plus a derived ``parent -> children`` index. Every mutation that
could break acyclicity or identifier uniqueness is checked before anything
is changed.

The tree does no locking of its own (see ``reqgraph.state``).
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, Mapping
from uuid import UUID

from reqgraph.domain.hrid import Hrid, next_number, parse
from reqgraph.domain.requirement import ParentLink, Requirement, clean_body, clean_title
from reqgraph.errors import CycleDetected, DuplicateHrid, DuplicateUuid, NotFound, SelfLink

logger = logging.getLogger(__name__)

_WHITE, _GRAY, _BLACK = 0, 1, 2


class LinkState(str, Enum):
    STALE = "stale"
    DANGLING = "dangling"


@dataclass(frozen=True)
class SuspectLink:
    """A parent link that needs a reviewer's attention.

    For a dangling link ``parent_hrid`` is the cached identifier and
    ``current_fingerprint`` is None.
    """

    child: UUID
    child_hrid: Hrid
    parent: UUID
    parent_hrid: Hrid
    kind: LinkState
    stored_fingerprint: str
    current_fingerprint: str | None


class Tree:
    """Authoritative store of requirements and their relationships."""

    def __init__(self) -> None:
        self._nodes: dict[UUID, Requirement] = {}
        self._hrids: dict[Hrid, UUID] = {}
        self._children: dict[UUID, set[UUID]] = {}
        # (namespace, kind) -> highest number ever issued; never decreases
        self._issued: dict[tuple[tuple[str, ...], str], int] = {}

    # ── Lookup ────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, uuid: object) -> bool:
        return uuid in self._nodes

    def __iter__(self) -> Iterator[Requirement]:
        """All requirements in identifier order."""
        return iter(sorted(self._nodes.values(), key=lambda req: req.hrid))

    def get(self, uuid: UUID) -> Requirement:
        try:
            return self._nodes[uuid]
        except KeyError:
            raise NotFound(uuid) from None

    def find(self, hrid: Hrid) -> Requirement | None:
        uuid = self._hrids.get(hrid)
        return self._nodes[uuid] if uuid is not None else None

    def require(self, hrid: Hrid) -> Requirement:
        requirement = self.find(hrid)
        if requirement is None:
            raise NotFound(hrid)
        return requirement

    def children(self, uuid: UUID) -> list[Requirement]:
        self.get(uuid)
        return self._sorted(self._children.get(uuid, ()))

    def parents(self, uuid: UUID) -> list[Requirement]:
        """Live parents in declared order; dangling links are left out."""
        return [self._nodes[link.uuid] for link in self.get(uuid).parents if link.uuid in self._nodes]

    # ── Insertion and edges ───────────────────────────────────

    def insert_node(self, requirement: Requirement) -> None:
        """Add a node without registering its edges (see ``build_edges``)."""
        if requirement.uuid in self._nodes:
            raise DuplicateUuid(requirement.uuid)
        existing = self._hrids.get(requirement.hrid)
        if existing is not None:
            raise DuplicateHrid(requirement.hrid, existing, requirement.uuid)

        self._nodes[requirement.uuid] = requirement
        self._hrids[requirement.hrid] = requirement.uuid
        self._children.setdefault(requirement.uuid, set())
        self._mark_issued(requirement.hrid)

    def build_edges(self) -> None:
        """Register every declared parent link after a bulk insert.

        Raises ``SelfLink`` or ``CycleDetected``; the existing edge index is
        left untouched when it does.
        """
        children: dict[UUID, set[UUID]] = {uuid: set() for uuid in self._nodes}
        for requirement in self:
            for link in requirement.parents:
                if link.uuid == requirement.uuid:
                    raise SelfLink(requirement.hrid)
                if link.uuid in children:
                    children[link.uuid].add(requirement.uuid)

        cycle = self._find_cycle()
        if cycle is not None:
            raise CycleDetected(cycle)

        self._children = children
        logger.debug(
            "Built edges for %d requirements (%d links)",
            len(self._nodes),
            sum(len(kids) for kids in children.values()),
        )

    def _find_cycle(self) -> list[Hrid] | None:
        """Depth-first search over parent links; first loop found, in hrid order."""
        color: dict[UUID, int] = {}
        for start in self:
            if color.get(start.uuid, _WHITE) != _WHITE:
                continue
            color[start.uuid] = _GRAY
            path = [start.uuid]
            stack = [iter(self._parent_ids(start.uuid))]
            while stack:
                for parent in stack[-1]:
                    state = color.get(parent, _WHITE)
                    if state == _GRAY:
                        loop = path[path.index(parent) :] + [parent]
                        return [self._nodes[uuid].hrid for uuid in loop]
                    if state == _WHITE:
                        color[parent] = _GRAY
                        path.append(parent)
                        stack.append(iter(self._parent_ids(parent)))
                        break
                else:
                    color[path.pop()] = _BLACK
                    stack.pop()
        return None

    def _parent_ids(self, uuid: UUID) -> list[UUID]:
        return [link.uuid for link in self._nodes[uuid].parents if link.uuid in self._nodes]

    def _path_upward(self, source: UUID, target: UUID) -> list[UUID] | None:
        """Shortest chain of parent links from ``source`` up to ``target``."""
        previous: dict[UUID, UUID] = {source: source}
        queue = deque([source])
        while queue:
            node = queue.popleft()
            if node == target:
                path = [node]
                while node != source:
                    node = previous[node]
                    path.append(node)
                path.reverse()
                return path
            for parent in self._parent_ids(node):
                if parent not in previous:
                    previous[parent] = node
                    queue.append(parent)
        return None

    # ── Relationship mutation ─────────────────────────────────

    def link(self, child: UUID, parent: UUID) -> bool:
        """Make ``parent`` a parent of ``child``.

        Returns False when the link already exists (it is left as is).
        """
        child_node = self.get(child)
        parent_node = self.get(parent)
        if child == parent:
            raise SelfLink(child_node.hrid)
        if child_node.parent_link(parent) is not None:
            return False

        # child -> parent closes a loop iff child is already above parent
        chain = self._path_upward(parent, child)
        if chain is not None:
            raise CycleDetected([child_node.hrid] + [self._nodes[uuid].hrid for uuid in chain])

        child_node.parents.append(
            ParentLink(uuid=parent, hrid=parent_node.hrid, fingerprint=parent_node.fingerprint())
        )
        self._children.setdefault(parent, set()).add(child)
        return True

    def unlink(self, child: UUID, parent: UUID) -> ParentLink:
        child_node = self.get(child)
        link = child_node.parent_link(parent)
        if link is None:
            raise NotFound(f"{child_node.hrid} -> {parent}", what="link")
        child_node.parents.remove(link)
        self._children.get(parent, set()).discard(child)
        return link

    def review(self, child: UUID, parent: UUID) -> bool:
        """Refresh a link's snapshot to the parent's live fingerprint.

        Returns whether anything changed.
        """
        child_node = self.get(child)
        link = child_node.parent_link(parent)
        if link is None:
            raise NotFound(f"{child_node.hrid} -> {parent}", what="link")
        parent_node = self._nodes.get(parent)
        if parent_node is None:
            raise NotFound(link.hrid)

        current = parent_node.fingerprint()
        changed = link.fingerprint != current or not link.reviewed or link.hrid != parent_node.hrid
        link.fingerprint = current
        link.hrid = parent_node.hrid
        link.reviewed = True
        return changed

    def review_all(self) -> list[tuple[UUID, UUID]]:
        """Review every stale link. Dangling links cannot be reviewed and are skipped."""
        reviewed = []
        for suspect in list(self.suspect_links()):
            if suspect.kind is LinkState.DANGLING:
                logger.warning(
                    "Cannot review %s -> %s: parent no longer exists",
                    suspect.child_hrid,
                    suspect.parent_hrid,
                )
                continue
            self.review(suspect.child, suspect.parent)
            reviewed.append((suspect.child, suspect.parent))
        return reviewed

    def remove_node(self, uuid: UUID) -> tuple[Requirement, list[SuspectLink]]:
        """Delete a node. Links pointing at it stay in place, now dangling.

        Returns the removed requirement and the links it left dangling.
        """
        requirement = self.get(uuid)
        children = self._sorted(self._children.pop(uuid, ()))

        del self._nodes[uuid]
        del self._hrids[requirement.hrid]
        for link in requirement.parents:
            self._children.get(link.uuid, set()).discard(uuid)

        dangling = []
        for child in children:
            link = child.parent_link(uuid)
            if link is None:
                continue
            dangling.append(
                SuspectLink(
                    child=child.uuid,
                    child_hrid=child.hrid,
                    parent=uuid,
                    parent_hrid=link.hrid,
                    kind=LinkState.DANGLING,
                    stored_fingerprint=link.fingerprint,
                    current_fingerprint=None,
                )
            )
            logger.warning("%s now has a dangling link to deleted %s", child.hrid, requirement.hrid)
        return requirement, dangling

    # ── Content and identity mutation ─────────────────────────

    def edit(
        self,
        uuid: UUID,
        *,
        title: str | None = None,
        body: str | None = None,
        tags: Iterable[str] | None = None,
    ) -> Requirement:
        requirement = self.get(uuid)
        title = clean_title(title) if title is not None else None
        body = clean_body(body) if body is not None else None
        if title is not None:
            requirement.title = title
        if body is not None:
            requirement.body = body
        if tags is not None:
            requirement.tags = set(tags)
        return requirement

    def rename(self, uuid: UUID, new_hrid: Hrid) -> list[UUID]:
        """Give a node a new identifier.

        Children's cached parent identifiers are updated; returns their uuids.
        """
        requirement = self.get(uuid)
        existing = self._hrids.get(new_hrid)
        if existing is not None and existing != uuid:
            raise DuplicateHrid(new_hrid, existing, uuid)

        del self._hrids[requirement.hrid]
        requirement.hrid = new_hrid
        self._hrids[new_hrid] = uuid
        self._mark_issued(new_hrid)

        touched = []
        for child in self._sorted(self._children.get(uuid, ())):
            link = child.parent_link(uuid)
            if link is not None:
                link.hrid = new_hrid
                touched.append(child.uuid)
        return touched

    def hrid_drift(self) -> list[UUID]:
        """Children whose cached parent identifiers no longer match the parent."""
        return [
            requirement.uuid
            for requirement in self
            if any(
                link.uuid in self._nodes and link.hrid != self._nodes[link.uuid].hrid
                for link in requirement.parents
            )
        ]

    def refresh_parent_hrids(self) -> list[UUID]:
        drifted = self.hrid_drift()
        for uuid in drifted:
            for link in self._nodes[uuid].parents:
                parent = self._nodes.get(link.uuid)
                if parent is not None:
                    link.hrid = parent.hrid
        return drifted

    # ── Identifier allocation ─────────────────────────────────

    def _mark_issued(self, hrid: Hrid) -> None:
        key = (hrid.namespace, hrid.kind)
        self._issued[key] = max(self._issued.get(key, 0), hrid.number)

    def next_hrid(self, namespace: Iterable[str], kind: str) -> Hrid:
        namespace = tuple(namespace)
        number = next_number([self._issued.get((namespace, kind), 0)])
        return Hrid(namespace, kind, number)

    def issued(self) -> dict[str, int]:
        """Highest number issued per prefix, e.g. ``{"auth-SYS": 42}``."""
        return {
            Hrid(namespace, kind, 0).prefix: number
            for (namespace, kind), number in sorted(self._issued.items())
        }

    def seed_issued(self, marks: Mapping[str, int]) -> None:
        """Raise high-water marks to previously persisted values."""
        for prefix, number in marks.items():
            self._mark_issued(parse(f"{prefix}-{number}", namespace_case="preserve"))

    # ── Queries ───────────────────────────────────────────────

    def suspect_links(self) -> Iterator[SuspectLink]:
        """Every stale or dangling link, children in identifier order.

        Each call starts a fresh pass; fingerprints are recomputed from the
        parents' live content.
        """
        live: dict[UUID, str] = {}
        for child in self:
            for link in child.parents:
                parent = self._nodes.get(link.uuid)
                if parent is None:
                    yield SuspectLink(
                        child=child.uuid,
                        child_hrid=child.hrid,
                        parent=link.uuid,
                        parent_hrid=link.hrid,
                        kind=LinkState.DANGLING,
                        stored_fingerprint=link.fingerprint,
                        current_fingerprint=None,
                    )
                    continue
                if link.uuid not in live:
                    live[link.uuid] = parent.fingerprint()
                if live[link.uuid] != link.fingerprint:
                    yield SuspectLink(
                        child=child.uuid,
                        child_hrid=child.hrid,
                        parent=link.uuid,
                        parent_hrid=parent.hrid,
                        kind=LinkState.STALE,
                        stored_fingerprint=link.fingerprint,
                        current_fingerprint=live[link.uuid],
                    )

    def ancestors(self, uuid: UUID) -> Iterator[Requirement]:
        """Transitive parents, breadth first, each yielded once."""
        self.get(uuid)
        visited = {uuid}
        queue = deque(self._parent_ids(uuid))
        while queue:
            node = queue.popleft()
            if node in visited:
                continue
            visited.add(node)
            yield self._nodes[node]
            queue.extend(self._parent_ids(node))

    def descendants(self, uuid: UUID) -> Iterator[Requirement]:
        """Transitive children, breadth first, each yielded once."""
        self.get(uuid)
        visited = {uuid}
        queue = deque(child.uuid for child in self._sorted(self._children.get(uuid, ())))
        while queue:
            node = queue.popleft()
            if node in visited:
                continue
            visited.add(node)
            yield self._nodes[node]
            queue.extend(child.uuid for child in self._sorted(self._children.get(node, ())))

    def orphaned_descendants(self, uuid: UUID) -> list[UUID]:
        """``uuid`` plus every descendant left without a live parent once they are gone.

        Breadth first, so each node comes after all of its deleted parents.
        """
        self.get(uuid)
        doomed = [uuid]
        seen = {uuid}
        queue = deque([uuid])
        while queue:
            node = queue.popleft()
            for child in self._sorted(self._children.get(node, ())):
                if child.uuid in seen:
                    continue
                if all(parent in seen for parent in self._parent_ids(child.uuid)):
                    seen.add(child.uuid)
                    doomed.append(child.uuid)
                    queue.append(child.uuid)
        return doomed

    def orphans(self) -> list[Requirement]:
        """Requirements that declare no parents."""
        return [requirement for requirement in self if not requirement.parents]

    def leaves(self) -> list[Requirement]:
        """Requirements that nobody declares as a parent."""
        return [requirement for requirement in self if not self._children.get(requirement.uuid)]

    def _sorted(self, uuids: Iterable[UUID]) -> list[Requirement]:
        return sorted((self._nodes[uuid] for uuid in uuids), key=lambda req: req.hrid)
