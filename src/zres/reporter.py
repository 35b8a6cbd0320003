from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import threading
from typing import Callable

from zres.exceptions import ResError

logger = logging.getLogger(__name__)

Echo = Callable[[str], None]


@dataclass(frozen=True)
class BuildWarning:
    message: str
    request: Path | None = None
    tool: str | None = None

    def render(self) -> str:
        if self.request is None:
            return self.message
        where = f"{self.request}" if self.tool is None else f"{self.request} ({self.tool})"
        return f"{where}: {self.message}"


class Reporter:
    """Append-only warning and failure collector shared by one run.

    Safe to call from concurrent tool invocations. Only the first failure
    is kept; later ones are logged and dropped.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._warnings: list[BuildWarning] = []
        self._failure: ResError | None = None

    def warn(self, message: str, *, request: Path | None = None, tool: str | None = None) -> None:
        warning = BuildWarning(message=message, request=request, tool=tool)
        logger.info("warning: %s", warning.render())
        with self._lock:
            self._warnings.append(warning)

    def fail(self, error: ResError) -> bool:
        """Record ``error``; returns ``True`` when it is the first failure."""
        with self._lock:
            if self._failure is not None:
                logger.debug("dropping later failure: %s", error)
                return False
            self._failure = error
            return True

    @property
    def warnings(self) -> tuple[BuildWarning, ...]:
        with self._lock:
            return tuple(self._warnings)

    @property
    def failure(self) -> ResError | None:
        with self._lock:
            return self._failure

    def render(self, *, warn: Echo, error: Echo) -> None:
        for item in self.warnings:
            warn(f"warning: {item.render()}")
        failure = self.failure
        if failure is not None:
            error(f"error: {failure}")
