from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

REQUEST_MARKER = ".zr-"

_TOOL_NAME_RE = re.compile(r"^[A-Za-z0-9-]+$")


@dataclass(frozen=True)
class Request:
    """One pending tool invocation encoded in a file name.

    ``target`` is the implied output path: the request path with one suffix
    stripped, mirrored into the target tree for source-side requests.
    """

    path: Path
    tool: str
    target: Path

    @property
    def parent(self) -> Path:
        return self.path.parent

    @property
    def target_parent(self) -> Path:
        return self.target.parent

    def read(self) -> bytes:
        return self.path.read_bytes()

    def exists(self) -> bool:
        return self.path.is_file()


def is_tool_name(name: str) -> bool:
    return bool(name) and _TOOL_NAME_RE.match(name) is not None


def normalize_tool_name(name: str) -> str:
    return name.strip().lower()


def parse_request_name(name: str) -> tuple[str, str] | None:
    """Split ``name`` into ``(base, tool)`` stripping the rightmost marker."""
    index = name.rfind(REQUEST_MARKER)
    if index <= 0:
        return None
    base = name[:index]
    tool = name[index + len(REQUEST_MARKER):]
    if not is_tool_name(tool):
        return None
    return base, normalize_tool_name(tool)


def parse_request_path(path: Path) -> tuple[Path, str] | None:
    parsed = parse_request_name(path.name)
    if parsed is None:
        return None
    base, tool = parsed
    return path.with_name(base), tool


def is_request_path(path: Path) -> bool:
    return parse_request_path(path) is not None


def request_name(base: str, tool: str) -> str:
    return f"{base}{REQUEST_MARKER}{normalize_tool_name(tool)}"


def request_for(path: Path, *, source_root: Path, target_root: Path) -> Request | None:
    """Build the ``Request`` for ``path`` or return ``None`` for plain files.

    Paths under ``target_root`` keep their implied target in place; paths
    under ``source_root`` are mirrored into ``target_root``.
    """
    parsed = parse_request_path(path)
    if parsed is None:
        return None
    base, tool = parsed
    if _is_within(path, target_root):
        return Request(path=path, tool=tool, target=base)
    relative = base.relative_to(source_root)
    return Request(path=path, tool=tool, target=target_root / relative)


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True
