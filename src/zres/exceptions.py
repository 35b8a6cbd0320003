"""Error taxonomy for the zres resource build."""

from __future__ import annotations

from pathlib import Path
from typing import Sequence


class ResError(RuntimeError):
    """Base class for every fatal resource build condition.

    Any ``ResError`` reaching the driver aborts the whole build. The target
    tree is left in an incomplete state and must not be used as output.
    """


class NeverThrown(ResError):
    """Raised by ``zres.invariants.never`` on a code path that should be unreachable."""

    def __init__(self, message: str, *, env: dict[str, object] | None = None):
        super().__init__(message)
        self.env = dict(env or {})


class ConfigError(ResError):
    """Invalid build configuration, detected before any pass runs."""


class ProtocolError(ResError):
    """A tool used the stdout protocol in a way the engine cannot honor."""


class ToolError(Exception):
    """Raised by a builtin tool routine to fail its request.

    The message plays the part of the captured stderr of a process tool.
    """

    def __init__(self, message: str = "", *, returncode: int = 1):
        super().__init__(message)
        self.returncode = returncode if returncode != 0 else 1


class ToolNotFoundError(ResError):
    def __init__(self, *, request: Path, tool: str, searched: Sequence[str]):
        self.request = request
        self.tool = tool
        self.searched = tuple(searched)
        lines = [f"tool `{tool}` not found for request {request}", "searched:"]
        lines.extend(f"  {entry}" for entry in self.searched)
        super().__init__("\n".join(lines))


class ToolFailedError(ResError):
    def __init__(self, *, request: Path, tool: str, returncode: int, stderr: str):
        self.request = request
        self.tool = tool
        self.returncode = returncode
        self.stderr = stderr
        message = f"tool `{tool}` failed with exit code {returncode} for request {request}"
        if stderr:
            message = f"{message}\n{stderr.rstrip()}"
        super().__init__(message)


class RecursionLimitError(ResError):
    def __init__(self, *, limit: int, pending: Sequence[Path]):
        self.limit = limit
        self.pending = tuple(pending)
        lines = [f"recursion limit of {limit} passes exceeded, pending requests:"]
        lines.extend(f"  {path}" for path in self.pending)
        super().__init__("\n".join(lines))
