"""Agent-facing tools over a shared requirements directory.

These functions are designed to be exposed as tools to an AI agent (or any
other async caller). Queries take the read lock; mutations take the write
lock. Errors propagate as ``ReqGraphError`` subclasses.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from reqgraph.domain.tree import LinkState

if TYPE_CHECKING:
    from reqgraph.domain.requirement import Requirement
    from reqgraph.state import ServerState


def _summary(requirement: Requirement, digits: int) -> str:
    line = requirement.hrid.format(digits)
    if requirement.title:
        line += f" {requirement.title}"
    return line


def get_requirement_tools(state: ServerState) -> dict[str, callable]:
    """Return a dict of tool_name -> async callable for requirement operations."""

    async def list_requirements(kind: str | None = None) -> str:
        """List requirements, optionally only those of one kind."""
        async with state.read() as directory:
            digits = directory.config.digits
            lines = [
                _summary(req, digits)
                for req in directory.requirements()
                if kind is None or req.kind == kind.upper()
            ]
        return "\n".join(lines) or "(no requirements)"

    async def show_requirement(hrid: str) -> str:
        """Show a requirement's title, body, tags and parents."""
        async with state.read() as directory:
            digits = directory.config.digits
            req = directory.get(hrid)
            lines = [f"# {_summary(req, digits)}", f"uuid: {req.uuid}"]
            if req.tags:
                lines.append(f"tags: {', '.join(sorted(req.tags))}")
            for link in req.parents:
                marker = " (reviewed)" if link.reviewed else ""
                lines.append(f"parent: {link.hrid.format(digits)}{marker}")
            if req.body:
                lines += ["", req.body]
        return "\n".join(lines)

    async def create_requirement(
        kind: str,
        title: str = "",
        body: str = "",
        parents: list[str] | None = None,
        namespace: list[str] | None = None,
    ) -> str:
        """Create a requirement with the next free number for its kind."""
        async with state.write() as directory:
            req = directory.create(
                kind, title, body, namespace=namespace or (), parents=parents or ()
            )
            return f"Created {req.hrid.format(directory.config.digits)}"

    async def edit_requirement(hrid: str, title: str | None = None, body: str | None = None) -> str:
        """Replace a requirement's title and/or body."""
        async with state.write() as directory:
            req = directory.edit(hrid, title=title, body=body)
            return f"Edited {req.hrid.format(directory.config.digits)}"

    async def link_requirements(child: str, parent: str) -> str:
        """Declare ``parent`` as a parent of ``child``."""
        async with state.write() as directory:
            directory.link(child, parent)
        return f"Linked {child} to parent {parent}"

    async def unlink_requirements(child: str, parent: str) -> str:
        """Remove ``parent`` from the parents of ``child``."""
        async with state.write() as directory:
            directory.unlink(child, parent)
        return f"Unlinked {child} from {parent}"

    async def review_link(child: str, parent: str) -> str:
        """Mark a link as reviewed against the parent's current content."""
        async with state.write() as directory:
            directory.review(child, parent)
        return f"Reviewed {child} -> {parent}"

    async def review_all_links() -> str:
        """Review every stale link."""
        async with state.write() as directory:
            pairs = directory.review_all()
        return f"Reviewed {len(pairs)} links"

    async def delete_requirement(hrid: str) -> str:
        """Delete a requirement; links pointing at it become dangling."""
        async with state.write() as directory:
            digits = directory.config.digits
            req, dangling = directory.delete(hrid)
        message = f"Deleted {req.hrid.format(digits)}"
        if dangling:
            children = ", ".join(link.child_hrid.format(digits) for link in dangling)
            message += f"; dangling links from {children}"
        return message

    async def suspect_links() -> str:
        """Report links whose parent changed (stale) or vanished (dangling)."""
        async with state.read() as directory:
            digits = directory.config.digits
            lines = []
            for link in directory.suspect_links():
                child, parent = link.child_hrid.format(digits), link.parent_hrid.format(digits)
                if link.kind is LinkState.DANGLING:
                    lines.append(f"{child} -> {parent} (dangling)")
                else:
                    lines.append(f"{child} -> {parent} (stale)")
        return "\n".join(lines) or "(no suspect links)"

    async def flush() -> str:
        """Write pending changes to disk."""
        async with state.write() as directory:
            flushed = await asyncio.to_thread(directory.flush)
        return f"Flushed {len(flushed)} requirements"

    return {
        "list_requirements": list_requirements,
        "show_requirement": show_requirement,
        "create_requirement": create_requirement,
        "edit_requirement": edit_requirement,
        "link_requirements": link_requirements,
        "unlink_requirements": unlink_requirements,
        "review_link": review_link,
        "review_all_links": review_all_links,
        "delete_requirement": delete_requirement,
        "suspect_links": suspect_links,
        "flush": flush,
    }
