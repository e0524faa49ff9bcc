"""Configuration loading from environment variables and .req/config.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

from reqgraph.errors import ConfigError

CONFIG_DIR = ".req"
_CONFIG_FILENAME = "config.toml"

LAYOUTS = ("filename", "path")
NAMESPACE_CASES = ("lower", "preserve")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass
class LoadPolicy:
    """How a load treats documents it cannot use. Both default to strict."""

    allow_invalid: bool = False
    allow_unrecognised: bool = False


@dataclass
class Config:
    """Settings for one requirements directory."""

    layout: str = "filename"
    allowed_kinds: list[str] = field(default_factory=list)
    kind_descriptions: dict[str, str] = field(default_factory=dict)
    namespace_case: str = "lower"
    digits: int = 3
    policy: LoadPolicy = field(default_factory=LoadPolicy)
    workers: int | None = None
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.layout not in LAYOUTS:
            raise ConfigError(f"layout must be one of {LAYOUTS}, got {self.layout!r}")
        if self.namespace_case not in NAMESPACE_CASES:
            raise ConfigError(
                f"namespace_case must be one of {NAMESPACE_CASES}, got {self.namespace_case!r}"
            )
        if self.digits < 1:
            raise ConfigError(f"digits must be at least 1, got {self.digits}")
        if self.workers is not None and self.workers < 1:
            raise ConfigError(f"workers must be at least 1, got {self.workers}")

    def is_kind_allowed(self, kind: str) -> bool:
        """An empty allow-list admits every kind."""
        return not self.allowed_kinds or kind in self.allowed_kinds


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def _file_bool(data: dict, key: str) -> bool:
    value = data.get(key, False)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be true or false, got {value!r}")
    return value


def _int(value: object, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None


def _parse_kinds(entries: object) -> tuple[list[str], dict[str, str]]:
    """Accept bare strings or ``{kind = "USR", description = "..."}`` tables."""
    if not isinstance(entries, list):
        raise ConfigError(f"allowed_kinds must be a list, got {entries!r}")
    kinds: list[str] = []
    descriptions: dict[str, str] = {}
    for entry in entries:
        if isinstance(entry, str):
            kind = entry.upper()
        elif isinstance(entry, dict) and isinstance(entry.get("kind"), str):
            kind = entry["kind"].upper()
            description = str(entry.get("description", "")).strip()
            if description:
                descriptions[kind] = description
        else:
            raise ConfigError(f"invalid allowed_kinds entry: {entry!r}")
        if kind not in kinds:
            kinds.append(kind)
    return kinds, descriptions


def config_path_for(root: Path) -> Path:
    return root / CONFIG_DIR / _CONFIG_FILENAME


def load_config(root: Path | None = None, config_path: Path | None = None) -> Config:
    """Load configuration from environment variables and optional config.toml.

    Priority: environment variables > config.toml > defaults. Without an
    explicit ``config_path`` the file is looked up at ``<root>/.req/config.toml``.
    """
    file_data: dict = {}
    path = config_path or (config_path_for(root) if root is not None else None)
    if path and path.exists():
        try:
            file_data = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"{path}: {e}") from e

    kinds, descriptions = _parse_kinds(file_data.get("allowed_kinds", []))
    workers = os.getenv("REQGRAPH_WORKERS", file_data.get("workers"))

    return Config(
        layout=os.getenv("REQGRAPH_LAYOUT", file_data.get("layout", "filename")),
        allowed_kinds=kinds,
        kind_descriptions=descriptions,
        namespace_case=os.getenv(
            "REQGRAPH_NAMESPACE_CASE", file_data.get("namespace_case", "lower")
        ),
        digits=_int(os.getenv("REQGRAPH_DIGITS", file_data.get("digits", 3)), "digits"),
        policy=LoadPolicy(
            allow_invalid=_env_bool(
                "REQGRAPH_ALLOW_INVALID", _file_bool(file_data, "allow_invalid")
            ),
            allow_unrecognised=_env_bool(
                "REQGRAPH_ALLOW_UNRECOGNISED", _file_bool(file_data, "allow_unrecognised")
            ),
        ),
        workers=_int(workers, "workers") if workers is not None else None,
        log_level=os.getenv("REQGRAPH_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
