from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
import logging
import os
from pathlib import Path
import sys
from typing import Iterator, Protocol, Sequence

from zres.exceptions import ConfigError
from zres.invariants import never
from zres.request import is_tool_name, normalize_tool_name
from zres.tools.builtins import BUILTINS
from zres.tools.registry import BuiltinRegistry, BuiltinTool

logger = logging.getLogger(__name__)

DEDICATED_PREFIX = "zres-"
SHARED_PACKAGE = "zres-tools"
SIBLING_PREFIX = "zres-"
ENTRY_MODULE = "__main__.py"


class ToolTier(IntEnum):
    DEDICATED = 0
    SHARED = 1
    BUILTIN = 2
    SIBLING = 3


@dataclass(frozen=True)
class ToolTarget:
    """A resolved tool: either a process (``argv``) or a builtin routine."""

    name: str
    tier: ToolTier
    origin: str
    argv: tuple[str, ...] = ()
    builtin: BuiltinTool | None = None

    @property
    def label(self) -> str:
        return f"{self.name} @ {self.origin}"


class ResolverStrategy(Protocol):
    tier: ToolTier

    def try_resolve(self, name: str) -> ToolTarget | None: ...

    def search_path(self, name: str) -> str: ...

    def discover(self) -> dict[str, ToolTarget]: ...


def _is_entry_name(raw_name: str) -> bool:
    """On-disk tool entries must already be lower case to be resolvable."""
    return is_tool_name(raw_name) and raw_name == normalize_tool_name(raw_name)


def _claim(found: dict[str, ToolTarget], target: ToolTarget) -> None:
    existing = found.get(target.name)
    if existing is not None:
        raise ConfigError(
            f"tool `{target.name}` is claimed by both {existing.origin} and {target.origin}"
        )
    found[target.name] = target


@dataclass(frozen=True)
class DedicatedPackageResolver:
    """``<tool_dir>/zres-<name>/__main__.py``, one package per tool."""

    tool_dir: Path | None
    python: str
    tier: ToolTier = ToolTier.DEDICATED

    def _package(self, name: str) -> Path | None:
        if self.tool_dir is None:
            return None
        return self.tool_dir / f"{DEDICATED_PREFIX}{name}"

    def _target(self, name: str, package: Path) -> ToolTarget:
        return ToolTarget(
            name=name,
            tier=self.tier,
            origin=str(package),
            argv=(self.python, str(package)),
        )

    def try_resolve(self, name: str) -> ToolTarget | None:
        package = self._package(name)
        if package is None or not (package / ENTRY_MODULE).is_file():
            return None
        return self._target(name, package)

    def search_path(self, name: str) -> str:
        package = self._package(name)
        if package is None:
            return "<no tool dir>"
        return str(package / ENTRY_MODULE)

    def discover(self) -> dict[str, ToolTarget]:
        found: dict[str, ToolTarget] = {}
        if self.tool_dir is None or not self.tool_dir.is_dir():
            return found
        for entry in sorted(self.tool_dir.iterdir()):
            if not entry.name.startswith(DEDICATED_PREFIX) or entry.name == SHARED_PACKAGE:
                continue
            raw_name = entry.name[len(DEDICATED_PREFIX):]
            if not _is_entry_name(raw_name) or not (entry / ENTRY_MODULE).is_file():
                continue
            _claim(found, self._target(raw_name, entry))
        return found


@dataclass(frozen=True)
class SharedPackageResolver:
    """``<tool_dir>/zres-tools/<name>.py`` or ``<name>/__main__.py``."""

    tool_dir: Path | None
    python: str
    tier: ToolTier = ToolTier.SHARED

    @property
    def package(self) -> Path | None:
        if self.tool_dir is None:
            return None
        return self.tool_dir / SHARED_PACKAGE

    def _target(self, name: str, entry: Path) -> ToolTarget:
        return ToolTarget(
            name=name,
            tier=self.tier,
            origin=str(entry),
            argv=(self.python, str(entry)),
        )

    def try_resolve(self, name: str) -> ToolTarget | None:
        package = self.package
        if package is None:
            return None
        script = package / f"{name}.py"
        if script.is_file():
            return self._target(name, script)
        if (package / name / ENTRY_MODULE).is_file():
            return self._target(name, package / name)
        return None

    def search_path(self, name: str) -> str:
        package = self.package
        if package is None:
            return "<no tool dir>"
        return str(package / f"{name}.py")

    def discover(self) -> dict[str, ToolTarget]:
        found: dict[str, ToolTarget] = {}
        package = self.package
        if package is None or not package.is_dir():
            return found
        for entry in sorted(package.iterdir()):
            if entry.is_file() and entry.suffix == ".py":
                raw_name = entry.stem
            elif entry.is_dir() and (entry / ENTRY_MODULE).is_file():
                raw_name = entry.name
            else:
                continue
            if raw_name.startswith("_") or not _is_entry_name(raw_name):
                continue
            _claim(found, self._target(raw_name, entry))
        return found


@dataclass(frozen=True)
class BuiltinResolver:
    registry: BuiltinRegistry
    tier: ToolTier = ToolTier.BUILTIN

    def _target(self, tool: BuiltinTool) -> ToolTarget:
        return ToolTarget(
            name=normalize_tool_name(tool.name),
            tier=self.tier,
            origin="builtin",
            builtin=tool,
        )

    def try_resolve(self, name: str) -> ToolTarget | None:
        tool = self.registry.get(name)
        if tool is None:
            return None
        return self._target(tool)

    def search_path(self, name: str) -> str:
        return f"builtin `{name}`"

    def discover(self) -> dict[str, ToolTarget]:
        return {target.name: target for target in map(self._target, self.registry)}


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


@dataclass(frozen=True)
class SiblingExecutableResolver:
    """``zres-<name>`` installed next to the build driver."""

    driver_dir: Path | None
    tier: ToolTier = ToolTier.SIBLING

    def _candidates(self, name: str) -> list[Path]:
        if self.driver_dir is None:
            return []
        base = self.driver_dir / f"{SIBLING_PREFIX}{name}"
        if sys.platform == "win32":
            return [base.with_name(base.name + ext) for ext in (".exe", ".cmd", ".bat")]
        return [base]

    def _target(self, name: str, path: Path) -> ToolTarget:
        return ToolTarget(name=name, tier=self.tier, origin=str(path), argv=(str(path),))

    def try_resolve(self, name: str) -> ToolTarget | None:
        for path in self._candidates(name):
            if _is_executable(path):
                return self._target(name, path)
        return None

    def search_path(self, name: str) -> str:
        candidates = self._candidates(name)
        return str(candidates[0]) if candidates else "<no driver dir>"

    def discover(self) -> dict[str, ToolTarget]:
        found: dict[str, ToolTarget] = {}
        if self.driver_dir is None or not self.driver_dir.is_dir():
            return found
        for entry in sorted(self.driver_dir.iterdir()):
            if not entry.name.startswith(SIBLING_PREFIX) or not _is_executable(entry):
                continue
            raw_name = entry.name[len(SIBLING_PREFIX):]
            if sys.platform == "win32":
                raw_name = Path(raw_name).stem
            if not _is_entry_name(raw_name):
                continue
            _claim(found, self._target(raw_name, entry))
        return found


def default_driver_dir() -> Path:
    return Path(sys.executable).resolve().parent


class ToolLocator:
    """Resolves tool names across the fixed tier order.

    The first tier that has the tool wins. ``after`` resumes the search past
    a tier, which is how a ``delegate`` directive falls through to the next
    candidate for the same request.
    """

    def __init__(
        self,
        *,
        tool_dir: Path | None = None,
        driver_dir: Path | None = None,
        builtins: BuiltinRegistry | None = None,
        python: str | None = None,
        strategies: Sequence[ResolverStrategy] | None = None,
    ) -> None:
        self.tool_dir = tool_dir
        if strategies is None:
            interpreter = python or sys.executable
            strategies = (
                DedicatedPackageResolver(tool_dir=tool_dir, python=interpreter),
                SharedPackageResolver(tool_dir=tool_dir, python=interpreter),
                BuiltinResolver(registry=builtins if builtins is not None else BUILTINS),
                SiblingExecutableResolver(driver_dir=driver_dir),
            )
        tiers = [strategy.tier for strategy in strategies]
        if tiers != sorted(tiers) or len(set(tiers)) != len(tiers):
            never("resolver strategies must be in strict tier order", tiers=tiers)
        self.strategies: tuple[ResolverStrategy, ...] = tuple(strategies)

    def validate(self) -> None:
        """Fail fast on search configuration problems."""
        if self.tool_dir is not None and self.tool_dir.exists() and not self.tool_dir.is_dir():
            raise ConfigError(f"tool dir `{self.tool_dir}` is not a directory")
        for strategy in self.strategies:
            strategy.discover()

    def resolve(self, name: str, *, after: ToolTier | None = None) -> ToolTarget | None:
        for target in self.candidates(name, after=after):
            return target
        return None

    def candidates(self, name: str, *, after: ToolTier | None = None) -> Iterator[ToolTarget]:
        tool = normalize_tool_name(name)
        for strategy in self.strategies:
            if after is not None and strategy.tier <= after:
                continue
            target = strategy.try_resolve(tool)
            if target is not None:
                logger.debug("tool %s resolved at tier %s: %s", tool, strategy.tier.name, target.origin)
                yield target

    def search_paths(self, name: str) -> list[str]:
        tool = normalize_tool_name(name)
        return [strategy.search_path(tool) for strategy in self.strategies]

    def list_tools(self) -> list[ToolTarget]:
        """Every discoverable tool, in tier order then by name."""
        listed: list[ToolTarget] = []
        for strategy in self.strategies:
            discovered = strategy.discover()
            listed.extend(discovered[name] for name in sorted(discovered))
        return listed
