from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from pathlib import Path
import subprocess
from typing import Callable, Mapping

from zres.exceptions import ToolError, ToolFailedError
from zres.invariants import never
from zres.protocol import Delegate, Directive, OnFinal, Warn, parse_line, parse_output
from zres.request import Request
from zres.tools.locator import ToolTarget
from zres.tools.registry import ToolContext

logger = logging.getLogger(__name__)

ENV_PREFIX = "ZR_"
HELP_VAR = "ZR_HELP"
FINAL_VAR = "ZR_FINAL"

RunCommand = Callable[..., subprocess.CompletedProcess[str]]


@dataclass(frozen=True)
class InvocationResult:
    tool: ToolTarget
    returncode: int
    stderr: str
    directives: tuple[Directive, ...] = ()

    @property
    def delegated(self) -> bool:
        return any(isinstance(item, Delegate) for item in self.directives)

    @property
    def warnings(self) -> list[str]:
        return [item.message for item in self.directives if isinstance(item, Warn)]

    @property
    def final_args(self) -> list[str]:
        return [item.args for item in self.directives if isinstance(item, OnFinal)]

    def check(self, request: Path) -> InvocationResult:
        if self.returncode != 0:
            raise ToolFailedError(
                request=request,
                tool=self.tool.label,
                returncode=self.returncode,
                stderr=self.stderr,
            )
        return self


def _inherited_env(base: Mapping[str, str] | None) -> dict[str, str]:
    source = os.environ if base is None else base
    return {key: value for key, value in source.items() if not key.startswith(ENV_PREFIX)}


def build_env(
    request: Request,
    *,
    source_root: Path,
    target_root: Path,
    workspace_dir: Path,
    cache_dir: Path,
    metadata: Mapping[str, str] | None = None,
    final_args: str | None = None,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Environment for one tool invocation.

    Inherited ``ZR_*`` variables are dropped so a nested build never leaks
    its own request into the tools it runs.
    """
    env = _inherited_env(base)
    env.update(
        {
            "ZR_SOURCE_DIR": str(source_root),
            "ZR_TARGET_DIR": str(target_root),
            "ZR_CACHE_DIR": str(cache_dir),
            "ZR_WORKSPACE_DIR": str(workspace_dir),
            "ZR_REQUEST": str(request.path),
            "ZR_REQUEST_DD": str(request.parent),
            "ZR_TARGET": str(request.target),
            "ZR_TARGET_DD": str(request.target_parent),
        }
    )
    for key, value in (metadata or {}).items():
        env[key] = value
    if final_args is not None:
        env[FINAL_VAR] = final_args
    return env


def help_env(base: Mapping[str, str] | None = None) -> dict[str, str]:
    env = _inherited_env(base)
    env[HELP_VAR] = "1"
    return env


def _join_stderr(*parts: str) -> str:
    return "\n".join(part.rstrip("\n") for part in parts if part)


class ToolInvoker:
    """Runs one tool against one request and parses what it says back."""

    def __init__(self, *, run: RunCommand = subprocess.run) -> None:
        self._run = run

    def _run_process(
        self,
        tool: ToolTarget,
        env: Mapping[str, str],
        cwd: Path,
    ) -> tuple[int, str, str]:
        try:
            completed = self._run(
                list(tool.argv),
                env=dict(env),
                cwd=str(cwd),
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                check=False,
            )
        except OSError as exc:
            return -1, "", f"cannot run `{tool.argv[0]}`: {exc}"
        return completed.returncode, completed.stdout or "", completed.stderr or ""

    def _run_builtin(self, tool: ToolTarget, env: Mapping[str, str]) -> tuple[int, str, str]:
        if tool.builtin is None:
            never("builtin tool target without routine", tool=tool.name)
        ctx = ToolContext(env=env)
        try:
            tool.builtin.run(ctx)
        except ToolError as exc:
            return exc.returncode, ctx.stdout.getvalue(), _join_stderr(ctx.stderr.getvalue(), str(exc))
        except (OSError, UnicodeError) as exc:
            return 1, ctx.stdout.getvalue(), _join_stderr(ctx.stderr.getvalue(), f"{type(exc).__name__}: {exc}")
        return 0, ctx.stdout.getvalue(), ctx.stderr.getvalue()

    def _execute(self, tool: ToolTarget, env: Mapping[str, str], cwd: Path) -> tuple[int, str, str]:
        if tool.builtin is not None:
            return self._run_builtin(tool, env)
        if not tool.argv:
            never("process tool target without argv", tool=tool.name)
        return self._run_process(tool, env, cwd)

    def invoke(
        self,
        request: Request,
        tool: ToolTarget,
        env: Mapping[str, str],
        cwd: Path,
    ) -> InvocationResult:
        cache_dir = env.get("ZR_CACHE_DIR")
        if cache_dir:
            Path(cache_dir).mkdir(parents=True, exist_ok=True)
        logger.debug("invoking %s for %s", tool.label, request.path)
        returncode, stdout, stderr = self._execute(tool, env, cwd)
        if stderr and returncode == 0:
            logger.debug("%s stderr for %s:\n%s", tool.label, request.path, stderr.rstrip())
        return InvocationResult(
            tool=tool,
            returncode=returncode,
            stderr=stderr,
            directives=parse_output(stdout),
        )

    def describe(self, tool: ToolTarget, *, cwd: Path) -> str:
        """Help text of ``tool``; process tools run with only ``ZR_HELP`` set."""
        if tool.builtin is not None:
            return tool.builtin.help
        returncode, stdout, stderr = self._execute(tool, help_env(), cwd)
        if returncode != 0:
            raise ToolFailedError(
                request=Path(tool.origin),
                tool=tool.label,
                returncode=returncode,
                stderr=stderr,
            )
        lines = [line for line in stdout.splitlines() if parse_line(line) is None]
        return "\n".join(lines).strip("\n") + "\n"
