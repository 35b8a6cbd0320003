from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
from pathlib import Path
import threading

from zres.reporter import Reporter
from zres.request import Request
from zres.tools.locator import ToolTarget

logger = logging.getLogger(__name__)


class RunPhase(str, Enum):
    WALKING = "walking"
    RESOLVING = "resolving"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class FinalTask:
    """A deferred invocation queued by an ``on-final`` directive."""

    request: Request
    tool: ToolTarget
    args: str
    sequence: int


@dataclass
class PassState:
    """Mutable state of one build run, passed explicitly to every step."""

    reporter: Reporter = field(default_factory=Reporter)
    pass_number: int = 0
    phase: RunPhase = RunPhase.WALKING
    resolved: set[Path] = field(default_factory=set)
    finals: list[FinalTask] = field(default_factory=list)
    invocations: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def enter(self, phase: RunPhase) -> None:
        logger.debug("pass %d: %s -> %s", self.pass_number, self.phase.value, phase.value)
        self.phase = phase

    def is_resolved(self, path: Path) -> bool:
        with self._lock:
            return path in self.resolved

    def mark_resolved(self, path: Path) -> None:
        with self._lock:
            self.resolved.add(path)

    def count_invocation(self) -> None:
        with self._lock:
            self.invocations += 1

    def defer(self, request: Request, tool: ToolTarget, args: str) -> FinalTask:
        with self._lock:
            task = FinalTask(request=request, tool=tool, args=args, sequence=len(self.finals))
            self.finals.append(task)
        return task

    def drain_finals(self) -> list[FinalTask]:
        with self._lock:
            tasks = list(self.finals)
            self.finals.clear()
        return tasks
