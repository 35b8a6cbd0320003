from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time
from pathlib import Path
from typing import TypeAlias
import tomllib

from zres.exceptions import ConfigError
from zres.invariants import never

DEFAULT_CONFIG_NAME = "zres.toml"
CONFIG_SECTION = "res"

DEFAULT_SOURCE = Path("res")
DEFAULT_TARGET = Path("target/res")
DEFAULT_TOOL_DIR = Path("tools")
DEFAULT_TOOL_CACHE = Path("target/zres-cache")
DEFAULT_RECURSION_LIMIT = 32
DEFAULT_JOBS = 1

TomlScalar: TypeAlias = str | int | float | bool | None | date | datetime | time
TomlValue: TypeAlias = TomlScalar | list["TomlValue"] | dict[str, "TomlValue"]
TomlTable: TypeAlias = dict[str, TomlValue]


def _load_toml(path: Path) -> TomlTable:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        raise ConfigError(f"cannot read config `{path}`, {exc}") from exc
    try:
        data = tomllib.loads(raw)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"cannot parse config `{path}`, {exc}") from exc
    return data if isinstance(data, dict) else {}


def load_config(root: Path | None = None, config_path: Path | None = None) -> TomlTable:
    if config_path is None:
        base = root if root is not None else Path.cwd()
        config_path = base / DEFAULT_CONFIG_NAME
    return _load_toml(config_path)


def res_defaults(root: Path | None = None, config_path: Path | None = None) -> TomlTable:
    data = load_config(root=root, config_path=config_path)
    section = data.get(CONFIG_SECTION, {})
    return section if isinstance(section, dict) else {}


def merge_payload(payload: TomlTable, defaults: TomlTable) -> TomlTable:
    merged = dict(defaults)
    for key, value in payload.items():
        if value is None:
            continue
        merged[key] = value
    return merged


def _as_bool(value: TomlValue) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return False


def _as_int(value: TomlValue, *, field: str, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"`{field}` must be an integer, got {value!r}")
    try:
        return int(str(value).strip())
    except ValueError as exc:
        raise ConfigError(f"`{field}` must be an integer, got {value!r}") from exc


def _as_path(value: TomlValue, *, field: str, default: Path | None, base: Path) -> Path | None:
    if value is None:
        path = default
    elif isinstance(value, (str, Path)):
        text = str(value).strip()
        if not text:
            raise ConfigError(f"`{field}` cannot be empty")
        path = Path(text)
    else:
        raise ConfigError(f"`{field}` must be a path, got {value!r}")
    if path is None:
        return None
    path = path.expanduser()
    return (path if path.is_absolute() else base / path).resolve()


def _required(path: Path | None, *, field: str) -> Path:
    if path is None:
        never("path option without default", field=field)
    return path


def _contains(parent: Path, child: Path) -> bool:
    return child == parent or child.is_relative_to(parent)


@dataclass(frozen=True)
class BuildOptions:
    """Resolved options of one resource build, every path absolute."""

    source: Path
    target: Path
    tool_cache: Path
    tool_dir: Path | None = None
    pack: bool = False
    recursion_limit: int = DEFAULT_RECURSION_LIMIT
    jobs: int = DEFAULT_JOBS
    driver_dir: Path | None = None

    @classmethod
    def from_payload(cls, payload: TomlTable, *, base: Path | None = None) -> BuildOptions:
        """Build options from merged CLI/config values.

        Relative paths resolve against ``base`` (the working directory by
        default).
        """
        root = (base if base is not None else Path.cwd()).resolve()
        source = _required(
            _as_path(payload.get("source"), field="source", default=DEFAULT_SOURCE, base=root),
            field="source",
        )
        target = _required(
            _as_path(payload.get("target"), field="target", default=DEFAULT_TARGET, base=root),
            field="target",
        )
        tool_cache = _required(
            _as_path(payload.get("tool_cache"), field="tool_cache", default=DEFAULT_TOOL_CACHE, base=root),
            field="tool_cache",
        )
        tool_dir = _as_path(payload.get("tool_dir"), field="tool_dir", default=DEFAULT_TOOL_DIR, base=root)
        driver_dir = _as_path(payload.get("driver_dir"), field="driver_dir", default=None, base=root)
        return cls(
            source=source,
            target=target,
            tool_cache=tool_cache,
            tool_dir=tool_dir,
            pack=_as_bool(payload.get("pack")),
            recursion_limit=_as_int(
                payload.get("recursion_limit"),
                field="recursion_limit",
                default=DEFAULT_RECURSION_LIMIT,
            ),
            jobs=_as_int(payload.get("jobs"), field="jobs", default=DEFAULT_JOBS),
            driver_dir=driver_dir,
        )

    def validate(self) -> BuildOptions:
        if self.recursion_limit < 1:
            raise ConfigError(f"recursion limit must be at least 1, got {self.recursion_limit}")
        if self.jobs < 1:
            raise ConfigError(f"jobs must be at least 1, got {self.jobs}")
        if not self.source.is_dir():
            raise ConfigError(f"source dir `{self.source}` does not exist or is not a directory")
        if _contains(self.source, self.target) or _contains(self.target, self.source):
            raise ConfigError(
                f"source `{self.source}` and target `{self.target}` cannot contain each other"
            )
        if _contains(self.target, self.tool_cache):
            raise ConfigError(
                f"tool cache `{self.tool_cache}` cannot be inside target `{self.target}`, "
                "target is wiped every run"
            )
        return self
