"""reqgraph: requirements as a directed acyclic graph of markdown documents."""

from reqgraph.config import Config, LoadPolicy, load_config
from reqgraph.domain.hrid import Hrid, parse
from reqgraph.domain.requirement import ParentLink, Requirement
from reqgraph.domain.tree import LinkState, SuspectLink, Tree
from reqgraph.errors import ReqGraphError
from reqgraph.storage.directory import Directory, LoadWarning

__version__ = "0.1.0"

__all__ = [
    "Config",
    "Directory",
    "Hrid",
    "LinkState",
    "LoadPolicy",
    "LoadWarning",
    "ParentLink",
    "ReqGraphError",
    "Requirement",
    "SuspectLink",
    "Tree",
    "load_config",
    "parse",
]
