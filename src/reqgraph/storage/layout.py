"""Mapping between identifiers and document locations.

Two conventions are supported:

1. **filename** (default): the full identifier is the file name; subfolders
   are free-form.
   ``auth-SYS-001`` -> ``root/auth-SYS-001.md`` (or ``root/any/dir/auth-SYS-001.md``)

2. **path**: namespace segments and the kind are folders, the file name is
   the number.
   ``auth-SYS-001`` -> ``root/auth/SYS/001.md``

Recognition looks at the location only; whether the document's content
agrees with it is checked by the parser.
"""

from __future__ import annotations

from pathlib import Path

from reqgraph.domain.hrid import Hrid, NamespaceCase, parse
from reqgraph.errors import HridError, UnrecognisedDocument

SUFFIX = ".md"


class Layout:
    def __init__(
        self,
        root: Path,
        mode: str = "filename",
        digits: int = 3,
        namespace_case: NamespaceCase = "lower",
    ) -> None:
        self.root = root
        self.mode = mode
        self.digits = digits
        self.namespace_case = namespace_case

    def hrid_for(self, path: Path) -> Hrid:
        """Identifier encoded by a location; ``UnrecognisedDocument`` if none."""
        try:
            relative = path.relative_to(self.root)
        except ValueError:
            raise UnrecognisedDocument(path, f"not under {self.root}") from None
        if relative.suffix != SUFFIX:
            raise UnrecognisedDocument(path, f"not a {SUFFIX} file")

        if self.mode == "path":
            *folders, filename = relative.with_suffix("").parts
            if not folders:
                raise UnrecognisedDocument(path, "expected <namespace>/<KIND>/<NNN>.md")
            text = "-".join((*folders, filename))
        else:
            text = relative.stem

        try:
            return parse(text, namespace_case=self.namespace_case)
        except HridError as e:
            raise UnrecognisedDocument(path, e.reason) from None

    def path_for(self, hrid: Hrid) -> Path:
        """Canonical location for an identifier."""
        if self.mode == "path":
            return self.root.joinpath(
                *hrid.namespace, hrid.kind, f"{hrid.number:0{self.digits}d}{SUFFIX}"
            )
        return self.root / f"{hrid.format(self.digits)}{SUFFIX}"
