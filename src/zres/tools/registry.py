from __future__ import annotations

import io
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Mapping

from zres import protocol
from zres.exceptions import ConfigError
from zres.request import is_tool_name, normalize_tool_name


@dataclass
class ToolContext:
    """What a builtin tool routine sees of its invocation.

    ``env`` is the same mapping a process tool would receive. Directives
    and ordinary output go to ``stdout``, diagnostics to ``stderr``; both
    are buffers owned by this invocation only.
    """

    env: Mapping[str, str]
    stdout: io.StringIO = field(default_factory=io.StringIO)
    stderr: io.StringIO = field(default_factory=io.StringIO)

    def var(self, name: str) -> str:
        return self.env.get(name, "")

    def _path(self, name: str) -> Path:
        return Path(self.var(name))

    @property
    def request(self) -> Path:
        return self._path("ZR_REQUEST")

    @property
    def request_dd(self) -> Path:
        return self._path("ZR_REQUEST_DD")

    @property
    def target(self) -> Path:
        return self._path("ZR_TARGET")

    @property
    def target_dd(self) -> Path:
        return self._path("ZR_TARGET_DD")

    @property
    def workspace(self) -> Path:
        return self._path("ZR_WORKSPACE_DIR")

    @property
    def cache_dir(self) -> Path:
        return self._path("ZR_CACHE_DIR")

    @property
    def is_final(self) -> bool:
        return "ZR_FINAL" in self.env

    @property
    def final_args(self) -> str:
        return self.var("ZR_FINAL")

    def read_request_text(self) -> str:
        return self.request.read_text(encoding="utf-8")

    def resolve_path(self, text: str) -> Path:
        path = Path(text)
        if path.is_absolute():
            return path
        return self.workspace / path

    def delegate(self) -> None:
        protocol.delegate(out=self.stdout)

    def warning(self, message: str) -> None:
        protocol.warning(message, out=self.stdout)

    def on_final(self, args: str = "") -> None:
        protocol.on_final(args, out=self.stdout)


ToolRoutine = Callable[[ToolContext], None]


@dataclass(frozen=True)
class BuiltinTool:
    name: str
    help: str
    run: ToolRoutine

    @property
    def summary(self) -> str:
        return help_summary(self.help)


def help_summary(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return ""


class BuiltinRegistry:
    """Builtin tools by name; a name may be claimed only once."""

    def __init__(self, tools: tuple[BuiltinTool, ...] = ()) -> None:
        self._tools: dict[str, BuiltinTool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: BuiltinTool) -> None:
        name = normalize_tool_name(tool.name)
        if not is_tool_name(name):
            raise ConfigError(f"invalid builtin tool name `{tool.name}`")
        if name in self._tools:
            raise ConfigError(f"builtin tool `{name}` is registered twice")
        self._tools[name] = tool

    def add(self, name: str, help: str = "") -> Callable[[ToolRoutine], ToolRoutine]:
        def _decorator(run: ToolRoutine) -> ToolRoutine:
            self.register(BuiltinTool(name=name, help=help, run=run))
            return run

        return _decorator

    def get(self, name: str) -> BuiltinTool | None:
        return self._tools.get(normalize_tool_name(name))

    def names(self) -> list[str]:
        return sorted(self._tools)

    def copy(self) -> BuiltinRegistry:
        registry = BuiltinRegistry()
        registry._tools = dict(self._tools)
        return registry

    def __iter__(self) -> Iterator[BuiltinTool]:
        return iter(self._tools[name] for name in self.names())

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and normalize_tool_name(name) in self._tools
