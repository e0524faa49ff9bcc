"""Entry point: python -m reqgraph [status|suspect|sync] [root]

- "status" (default): Load the directory and summarise it
- "suspect":          List stale and dangling links; exit 1 if there are any
- "sync":             Refresh cached parent identifiers, move misplaced files, rewrite all
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from reqgraph.config import load_config
from reqgraph.domain.tree import LinkState
from reqgraph.errors import ReqGraphError
from reqgraph.storage.directory import Directory


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _open(root: Path) -> Directory:
    config = load_config(root)
    _setup_logging(config.log_level)
    return Directory.open(root, config)


def _run_status(root: Path) -> int:
    directory = _open(root)
    kinds: dict[str, int] = {}
    for requirement in directory.requirements():
        kinds[requirement.kind] = kinds.get(requirement.kind, 0) + 1

    print(f"{len(directory.requirements())} requirements in {root}")
    for kind, count in sorted(kinds.items()):
        description = directory.config.kind_descriptions.get(kind)
        print(f"  {kind:<8} {count}" + (f"  ({description})" if description else ""))
    print(f"{len(directory.suspect_links())} suspect links")
    for warning in directory.warnings:
        print(f"excluded {warning.location}: {warning.reason}")
    return 0


def _run_suspect(root: Path) -> int:
    directory = _open(root)
    digits = directory.config.digits
    suspects = directory.suspect_links()
    for link in suspects:
        state = "dangling" if link.kind is LinkState.DANGLING else "stale"
        print(f"{link.child_hrid.format(digits)} -> {link.parent_hrid.format(digits)} ({state})")
    return 1 if suspects else 0


def _run_sync(root: Path) -> int:
    directory = _open(root)
    for hrid in directory.refresh_parent_hrids():
        print(f"updated parent identifiers in {hrid}")
    for hrid, current, canonical in directory.relocate():
        print(f"moved {hrid}: {current} -> {canonical}")
    directory.flush(full=True)
    return 0


def main() -> None:
    cmd = sys.argv[1] if len(sys.argv) > 1 else "status"
    root = Path(sys.argv[2]) if len(sys.argv) > 2 else Path.cwd()

    commands = {"status": _run_status, "suspect": _run_suspect, "sync": _run_sync}
    if cmd not in commands:
        print("Usage: python -m reqgraph [status|suspect|sync] [root]")
        print("  status   Summarise the requirements directory (default)")
        print("  suspect  List stale and dangling links")
        print("  sync     Refresh parent identifiers, relocate files, rewrite all")
        sys.exit(2)

    try:
        sys.exit(commands[cmd](root))
    except ReqGraphError as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
