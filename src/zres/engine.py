"""Fixpoint resource build.

One run wipes the target tree, then alternates walking and resolving:

- walking mirrors the source directories into target and collects every
  request (source or target side) not resolved yet;
- resolving runs each collected request through the locator and invoker;
  files the tools create are only seen by the next walk.

The loop stops when a walk finds nothing new, or fails once the pass count
exceeds the recursion limit. Deferred ``on-final`` tasks run last, in the
order they were queued.
"""

from __future__ import annotations

import concurrent.futures
from dataclasses import dataclass, field
from itertools import chain
import logging
import os
from pathlib import Path
import shutil
import threading
from typing import Callable, Iterable, Iterator

from zres.cache import CacheKeyer
from zres.config import BuildOptions
from zres.exceptions import ProtocolError, RecursionLimitError, ResError, ToolNotFoundError
from zres.invoker import ToolInvoker, build_env
from zres.reporter import BuildWarning, Reporter
from zres.request import Request, request_for
from zres.state import FinalTask, PassState, RunPhase
from zres.tools.locator import ToolLocator, ToolTarget, default_driver_dir
from zres.workspace import Workspace, locate_workspace

logger = logging.getLogger(__name__)

INCOMPLETE_MARKER = ".zres-incomplete"

WorkspaceFinder = Callable[[Path], Workspace | None]


def default_locator(options: BuildOptions) -> ToolLocator:
    """Locator for ``options``; sibling tools default to the interpreter dir."""
    driver_dir = options.driver_dir if options.driver_dir is not None else default_driver_dir()
    return ToolLocator(tool_dir=options.tool_dir, driver_dir=driver_dir)


@dataclass(frozen=True)
class RunPaths:
    source: Path
    target: Path
    workspace: Path
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class BuildReport:
    source: Path
    target: Path
    workspace: Path | None
    passes: int
    invocations: int
    resolved: int
    finals_run: int
    finals_retracted: int
    warnings: tuple[BuildWarning, ...]


@dataclass(frozen=True)
class _Outcome:
    request: Request
    tool: ToolTarget
    final_args: str | None


class PassEngine:
    """Drives one resource build per ``run()`` call."""

    def __init__(
        self,
        options: BuildOptions,
        *,
        locator: ToolLocator | None = None,
        invoker: ToolInvoker | None = None,
        keyer: CacheKeyer | None = None,
        reporter_factory: Callable[[], Reporter] = Reporter,
        find_workspace: WorkspaceFinder = locate_workspace,
    ) -> None:
        self.options = options
        self.locator = locator or default_locator(options)
        self.invoker = invoker or ToolInvoker()
        self.keyer = keyer or CacheKeyer(options.tool_cache)
        self._reporter_factory = reporter_factory
        self._find_workspace = find_workspace
        self.last_state: PassState | None = None

    def run(self) -> BuildReport:
        options = self.options.validate()
        self.locator.validate()
        state = PassState(reporter=self._reporter_factory())
        self.last_state = state
        workspace = self._find_workspace(options.source)
        paths = self._run_paths(state, workspace)
        self._reset_target()
        try:
            self._fixpoint(state, paths)
            state.enter(RunPhase.FINALIZING)
            finals_run, retracted = self._finalize(state, paths)
            self._remove_intermediate_requests(state, paths)
        except ResError as exc:
            state.enter(RunPhase.FAILED)
            state.reporter.fail(exc)
            self._marker().write_text(f"build failed\n{exc}\n", encoding="utf-8")
            raise
        self._marker().unlink(missing_ok=True)
        state.enter(RunPhase.DONE)
        logger.info(
            "resources built in %d passes, %d invocations",
            state.pass_number,
            state.invocations,
        )
        return BuildReport(
            source=options.source,
            target=options.target,
            workspace=workspace.root if workspace is not None else None,
            passes=state.pass_number,
            invocations=state.invocations,
            resolved=len(state.resolved),
            finals_run=finals_run,
            finals_retracted=retracted,
            warnings=state.reporter.warnings,
        )

    def _run_paths(self, state: PassState, workspace: Workspace | None) -> RunPaths:
        source = self.options.source
        if workspace is None:
            state.reporter.warn(
                f"source `{source}` is not inside a workspace, tools run in the source dir "
                "without manifest metadata"
            )
            return RunPaths(source=source, target=self.options.target, workspace=source)
        return RunPaths(
            source=source,
            target=self.options.target,
            workspace=workspace.root,
            metadata=dict(workspace.metadata),
        )

    def _marker(self) -> Path:
        return self.options.target / INCOMPLETE_MARKER

    def _reset_target(self) -> None:
        target = self.options.target
        if target.exists():
            shutil.rmtree(target)
        target.mkdir(parents=True)
        self._marker().write_text("build in progress\n", encoding="utf-8")

    def _fixpoint(self, state: PassState, paths: RunPaths) -> None:
        state.pass_number = 1
        pending = self._walk(state, paths, first=True)
        while pending:
            logger.info("pass %d: %d requests", state.pass_number, len(pending))
            state.enter(RunPhase.RESOLVING)
            self._resolve_pass(state, paths, pending)
            state.enter(RunPhase.WALKING)
            pending = self._walk(state, paths, first=False)
            if not pending:
                break
            state.pass_number += 1
            if state.pass_number > self.options.recursion_limit:
                raise RecursionLimitError(
                    limit=self.options.recursion_limit,
                    pending=[request.path for request in pending],
                )

    def _walk(self, state: PassState, paths: RunPaths, *, first: bool) -> list[Request]:
        found: list[Request] = []
        for directory, files in _walk_tree(paths.source):
            relative = directory.relative_to(paths.source)
            mirror = paths.target / relative
            if first:
                mirror.mkdir(parents=True, exist_ok=True)
            for path in files:
                request = request_for(path, source_root=paths.source, target_root=paths.target)
                if request is None:
                    if first and self.options.pack:
                        shutil.copyfile(path, mirror / path.name)
                    continue
                if not state.is_resolved(path):
                    found.append(request)
        if not first:
            found.extend(self._target_requests(state, paths, include_resolved=False))
        return found

    def _target_requests(
        self,
        state: PassState,
        paths: RunPaths,
        *,
        include_resolved: bool,
    ) -> Iterator[Request]:
        for _directory, files in _walk_tree(paths.target):
            for path in files:
                request = request_for(path, source_root=paths.source, target_root=paths.target)
                if request is None:
                    continue
                if include_resolved or not state.is_resolved(path):
                    yield request

    def _resolve_pass(self, state: PassState, paths: RunPaths, requests: list[Request]) -> None:
        cancel = threading.Event()

        def _job(request: Request) -> _Outcome | None:
            if cancel.is_set():
                return None
            return self._dispatch(
                state,
                paths,
                request,
                self.locator.candidates(request.tool),
                cancel=cancel,
            )

        if self.options.jobs == 1 or len(requests) == 1:
            outcomes = [_job(request) for request in requests]
        else:
            outcomes = self._run_concurrently(_job, requests, cancel)
        for outcome in outcomes:
            if outcome is None:
                continue
            state.mark_resolved(outcome.request.path)
            if outcome.final_args is not None:
                task = state.defer(outcome.request, outcome.tool, outcome.final_args)
                logger.debug("queued final task %d for %s", task.sequence, task.request.path)

    def _run_concurrently(
        self,
        job: Callable[[Request], _Outcome | None],
        requests: list[Request],
        cancel: threading.Event,
    ) -> list[_Outcome | None]:
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=min(self.options.jobs, len(requests)),
            thread_name_prefix="zres",
        )
        try:
            futures = [executor.submit(job, request) for request in requests]
            done, _pending = concurrent.futures.wait(
                futures,
                return_when=concurrent.futures.FIRST_EXCEPTION,
            )
            errors = [
                error
                for future in futures
                if future in done and (error := future.exception()) is not None
            ]
            if errors:
                cancel.set()
                executor.shutdown(wait=True, cancel_futures=True)
                raise errors[0]
            return [future.result() for future in futures]
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

    def _dispatch(
        self,
        state: PassState,
        paths: RunPaths,
        request: Request,
        candidates: Iterable[ToolTarget],
        *,
        final_args: str | None = None,
        cancel: threading.Event | None = None,
    ) -> _Outcome | None:
        if not request.exists():
            logger.info("request %s vanished, skipping", request.path)
            return None
        content = request.read()
        env = build_env(
            request,
            source_root=paths.source,
            target_root=paths.target,
            workspace_dir=paths.workspace,
            cache_dir=self.keyer.key_for(paths.source, paths.target, request.path, content),
            metadata=paths.metadata,
            final_args=final_args,
        )
        delegated: list[str] = []
        for tool in candidates:
            if cancel is not None and cancel.is_set():
                return None
            state.count_invocation()
            result = self.invoker.invoke(request, tool, env, paths.workspace).check(request.path)
            for message in result.warnings:
                state.reporter.warn(message, request=request.path, tool=tool.name)
            deferred = result.final_args
            if deferred and final_args is not None:
                raise ProtocolError(
                    f"tool `{tool.label}` requested another final pass for {request.path} "
                    "while running in the final pass"
                )
            if len(deferred) > 1:
                raise ProtocolError(
                    f"tool `{tool.label}` requested the final pass {len(deferred)} times "
                    f"for {request.path}"
                )
            if result.delegated:
                if deferred:
                    raise ProtocolError(
                        f"tool `{tool.label}` both delegated and requested the final pass "
                        f"for {request.path}"
                    )
                logger.debug("%s delegated %s", tool.label, request.path)
                delegated.append(f"{tool.label} (delegated)")
                continue
            return _Outcome(request=request, tool=tool, final_args=deferred[0] if deferred else None)
        raise ToolNotFoundError(
            request=request.path,
            tool=request.tool,
            searched=[*self.locator.search_paths(request.tool), *delegated],
        )

    def _finalize(self, state: PassState, paths: RunPaths) -> tuple[int, int]:
        tasks = state.drain_finals()
        ran = 0
        retracted = 0
        for task in tasks:
            if not task.request.exists():
                logger.info("final task for %s retracted, request was removed", task.request.path)
                retracted += 1
                continue
            self._run_final(state, paths, task)
            ran += 1
        return ran, retracted

    def _run_final(self, state: PassState, paths: RunPaths, task: FinalTask) -> None:
        candidates = chain(
            [task.tool],
            self.locator.candidates(task.request.tool, after=task.tool.tier),
        )
        self._dispatch(state, paths, task.request, candidates, final_args=task.args)

    def _remove_intermediate_requests(self, state: PassState, paths: RunPaths) -> None:
        for request in list(self._target_requests(state, paths, include_resolved=True)):
            if state.is_resolved(request.path):
                request.path.unlink()
            else:
                state.reporter.warn(
                    "request created during the final pass is left unresolved",
                    request=request.path,
                    tool=request.tool,
                )


def _walk_tree(root: Path) -> Iterator[tuple[Path, list[Path]]]:
    """Yield ``(directory, files)`` top-down with deterministic ordering."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        directory = Path(dirpath)
        yield directory, [
            directory / name
            for name in sorted(filenames)
            if not (directory == root and name == INCOMPLETE_MARKER)
        ]
