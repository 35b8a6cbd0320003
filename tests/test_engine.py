from __future__ import annotations

from pathlib import Path
import sys

import pytest

from zres.engine import INCOMPLETE_MARKER, PassEngine
from zres.exceptions import ConfigError, ProtocolError, RecursionLimitError, ToolFailedError, ToolNotFoundError
from zres.state import RunPhase
from zres.tools import BUILTINS, BuiltinRegistry, ToolContext
from tests.build_helpers import (
    make_engine,
    make_options,
    snapshot,
    write,
    write_dedicated_tool,
    write_executable,
)


def _target(workspace: Path) -> Path:
    return make_options(workspace).target


def _nesting_registry() -> BuiltinRegistry:
    registry = BUILTINS.copy()

    @registry.add("nest", help="Write a request one level deeper")
    def _nest(ctx: ToolContext) -> None:
        depth = int(ctx.read_request_text().strip())
        ctx.target.parent.mkdir(parents=True, exist_ok=True)
        if depth == 0:
            ctx.target.write_text("bottom\n", encoding="utf-8")
            return
        deeper = ctx.target.with_name(f"{ctx.target.name}-{depth - 1}.zr-nest")
        deeper.write_text(f"{depth - 1}\n", encoding="utf-8")

    return registry


def test_flat_build_with_builtins(workspace: Path) -> None:
    write(workspace / "assets" / "logo.svg", "<svg/>")
    write(workspace / "res" / "img" / "logo.svg.zr-copy", "assets/logo.svg\n")
    write(workspace / "res" / "about.txt.zr-rp", "${ZR_APP} ${ZR_VERSION} by ${ZR_ORG}\n")
    report = make_engine(workspace).run()
    target = _target(workspace)
    assert snapshot(target) == {
        "about.txt": b"demo-app 1.2.3 by Example Org\n",
        "img/logo.svg": b"<svg/>",
    }
    assert report.passes == 1
    assert report.invocations == 2
    assert report.resolved == 2
    assert report.workspace == workspace.resolve()
    assert report.warnings == ()


def test_two_clean_runs_are_identical(workspace: Path) -> None:
    write(workspace / "assets" / "l10n" / "en" / "main.ftl", "hello")
    write(workspace / "assets" / "l10n" / "de" / "main.ftl", "hallo")
    write(workspace / "res" / "l10n" / "all.zr-glob", "assets/l10n/**/*.ftl\n")
    write(workspace / "res" / "plain.txt", "plain")
    write(workspace / "res" / "x.txt.zr-rp", "${ZR_PKG_NAME}\n")
    make_engine(workspace, pack=True).run()
    first = snapshot(_target(workspace))
    write(_target(workspace) / "stale.txt", "left over")
    make_engine(workspace, pack=True).run()
    assert snapshot(_target(workspace)) == first
    assert first == {
        "l10n/de/main.ftl": b"hallo",
        "l10n/en/main.ftl": b"hello",
        "plain.txt": b"plain",
        "x.txt": b"demo-app\n",
    }


def test_pack_mode_controls_plain_file_copy(workspace: Path) -> None:
    write(workspace / "res" / "plain.txt", "plain")
    write(workspace / "res" / "sub" / "other.txt", "other")
    make_engine(workspace).run()
    target = _target(workspace)
    assert snapshot(target) == {}
    assert (target / "sub").is_dir()
    make_engine(workspace, pack=True).run()
    assert snapshot(target) == {"plain.txt": b"plain", "sub/other.txt": b"other"}


def test_nested_chain_converges_in_depth_plus_one_passes(workspace: Path) -> None:
    write(workspace / "res" / "chain.zr-nest", "3\n")
    report = make_engine(workspace, builtins=_nesting_registry(), recursion_limit=4).run()
    assert report.passes == 4
    assert report.invocations == 4
    assert snapshot(_target(workspace)) == {"chain-2-1-0": b"bottom\n"}


def test_nested_chain_beyond_limit_fails(workspace: Path) -> None:
    write(workspace / "res" / "chain.zr-nest", "3\n")
    engine = make_engine(workspace, builtins=_nesting_registry(), recursion_limit=3)
    with pytest.raises(RecursionLimitError) as exc:
        engine.run()
    assert exc.value.limit == 3
    assert exc.value.pending == (_target(workspace) / "chain-2-1-0.zr-nest",)
    marker = _target(workspace) / INCOMPLETE_MARKER
    assert marker.read_text(encoding="utf-8").startswith("build failed")
    assert engine.last_state is not None
    assert engine.last_state.phase is RunPhase.FAILED


def test_chained_suffixes_resolve_right_to_left(workspace: Path) -> None:
    order: list[str] = []
    registry = BuiltinRegistry()

    @registry.add("b")
    def _b(ctx: ToolContext) -> None:
        order.append(f"b:{ctx.target.name}")
        ctx.target.write_text("from b\n", encoding="utf-8")

    @registry.add("a")
    def _a(ctx: ToolContext) -> None:
        order.append(f"a:{ctx.target.name}")
        ctx.target.write_text(ctx.read_request_text().upper(), encoding="utf-8")

    write(workspace / "res" / "x.zr-a.zr-b", "")
    report = make_engine(workspace, builtins=registry).run()
    assert order == ["b:x.zr-a", "a:x"]
    assert report.passes == 2
    assert snapshot(_target(workspace)) == {"x": b"FROM B\n"}


def test_delegating_dedicated_tool_falls_back_to_builtin(workspace: Path) -> None:
    calls: list[str] = []
    registry = BuiltinRegistry()

    @registry.add("foo")
    def _foo(ctx: ToolContext) -> None:
        calls.append(ctx.request.name)
        ctx.target.write_text("builtin foo\n", encoding="utf-8")

    write_dedicated_tool(
        workspace / "tools",
        "foo",
        """\
        print("looking at the request")
        print("zres::delegate")
        """,
    )
    write(workspace / "res" / "thing.zr-foo", "")
    report = make_engine(workspace, builtins=registry).run()
    assert calls == ["thing.zr-foo"]
    assert report.invocations == 2
    assert snapshot(_target(workspace)) == {"thing": b"builtin foo\n"}


def test_delegating_every_tier_is_not_found(workspace: Path) -> None:
    registry = BuiltinRegistry()
    registry.add("foo")(lambda ctx: ctx.delegate())
    write(workspace / "res" / "thing.zr-foo", "")
    with pytest.raises(ToolNotFoundError) as exc:
        make_engine(workspace, builtins=registry).run()
    assert exc.value.tool == "foo"
    assert "foo @ builtin (delegated)" in exc.value.searched


def test_missing_tool_fails_and_keeps_marker(workspace: Path) -> None:
    write(workspace / "res" / "x.zr-nothing-here", "")
    with pytest.raises(ToolNotFoundError, match="nothing-here"):
        make_engine(workspace).run()
    assert (_target(workspace) / INCOMPLETE_MARKER).is_file()


def test_failing_tool_aborts_build(workspace: Path) -> None:
    write(workspace / "res" / "stop.zr-fail", "do not ship\n")
    engine = make_engine(workspace)
    with pytest.raises(ToolFailedError, match="do not ship"):
        engine.run()
    assert engine.last_state is not None
    assert isinstance(engine.last_state.reporter.failure, ToolFailedError)


def test_warnings_accumulate_in_order(workspace: Path) -> None:
    write(workspace / "res" / "a.zr-warn", "first\n")
    write(workspace / "res" / "b.zr-warn", "second\n")
    report = make_engine(workspace).run()
    assert [warning.message for warning in report.warnings] == ["first", "second"]
    assert report.warnings[0].tool == "warn"


def test_final_tasks_run_in_order_and_skip_retracted(workspace: Path) -> None:
    log: list[str] = []
    registry = BuiltinRegistry()

    @registry.add("late")
    def _late(ctx: ToolContext) -> None:
        if not ctx.is_final:
            ctx.on_final(f"args-{ctx.request.name}")
            return
        log.append(ctx.final_args)
        if ctx.read_request_text().strip() == "drop b":
            (ctx.request_dd / "b.zr-late").unlink()

    write(workspace / "res" / "a.zr-late", "drop b\n")
    write(workspace / "res" / "b.zr-late", "")
    write(workspace / "res" / "c.zr-late", "")
    report = make_engine(workspace, builtins=registry).run()
    assert log == ["args-a.zr-late", "args-c.zr-late"]
    assert report.finals_run == 2
    assert report.finals_retracted == 1
    assert report.invocations == 5


def test_shf_builtin_runs_after_every_pass(workspace: Path) -> None:
    write(workspace / "res" / "a.txt.zr-rp", "alpha\n")
    write(
        workspace / "res" / "listing.txt.zr-shf",
        'ls "$ZR_TARGET_DIR" | grep -v listing > "$ZR_TARGET"\n',
    )
    make_engine(workspace).run()
    assert (_target(workspace) / "listing.txt").read_text(encoding="utf-8") == "a.txt\n"


def test_on_final_during_final_pass_is_protocol_error(workspace: Path) -> None:
    registry = BuiltinRegistry()
    registry.add("again")(lambda ctx: ctx.on_final("more"))
    write(workspace / "res" / "x.zr-again", "")
    with pytest.raises(ProtocolError, match="while running in the final pass"):
        make_engine(workspace, builtins=registry).run()


def test_on_final_twice_is_protocol_error(workspace: Path) -> None:
    registry = BuiltinRegistry()

    @registry.add("twice")
    def _twice(ctx: ToolContext) -> None:
        ctx.on_final("one")
        ctx.on_final("two")

    write(workspace / "res" / "x.zr-twice", "")
    with pytest.raises(ProtocolError, match="2 times"):
        make_engine(workspace, builtins=registry).run()


def test_request_created_in_final_pass_is_left_with_warning(workspace: Path) -> None:
    registry = BUILTINS.copy()

    @registry.add("spawn")
    def _spawn(ctx: ToolContext) -> None:
        if not ctx.is_final:
            ctx.on_final()
            return
        (ctx.target_dd / "late.txt.zr-warn").write_text("too late\n", encoding="utf-8")

    write(workspace / "res" / "x.zr-spawn", "")
    report = make_engine(workspace, builtins=registry).run()
    assert (_target(workspace) / "late.txt.zr-warn").is_file()
    assert [warning.message for warning in report.warnings] == [
        "request created during the final pass is left unresolved"
    ]


def test_cache_dir_persists_across_runs(workspace: Path) -> None:
    registry = BuiltinRegistry()

    @registry.add("count")
    def _count(ctx: ToolContext) -> None:
        counter = ctx.cache_dir / "runs"
        previous = counter.read_text(encoding="utf-8") if counter.exists() else ""
        counter.write_text(previous + "x", encoding="utf-8")
        ctx.target.write_text(str(len(previous) + 1), encoding="utf-8")

    write(workspace / "res" / "n.zr-count", "same content")
    make_engine(workspace, builtins=registry).run()
    make_engine(workspace, builtins=registry).run()
    assert (_target(workspace) / "n").read_text(encoding="utf-8") == "2"
    write(workspace / "res" / "n.zr-count", "new content")
    make_engine(workspace, builtins=registry).run()
    assert (_target(workspace) / "n").read_text(encoding="utf-8") == "1"


def test_missing_workspace_warns_and_uses_source(workspace: Path) -> None:
    seen: dict[str, object] = {}
    registry = BuiltinRegistry()

    @registry.add("probe")
    def _probe(ctx: ToolContext) -> None:
        seen["workspace"] = ctx.workspace
        seen["app"] = ctx.env.get("ZR_APP")

    write(workspace / "res" / "x.zr-probe", "")
    options = make_options(workspace)
    engine = PassEngine(
        options,
        locator=make_engine(workspace, builtins=registry).locator,
        find_workspace=lambda start: None,
    )
    report = engine.run()
    assert seen == {"workspace": options.source, "app": None}
    assert report.workspace is None
    assert "not inside a workspace" in report.warnings[0].message


def test_concurrent_resolution_matches_sequential(workspace: Path) -> None:
    for index in range(12):
        write(workspace / "res" / f"d{index % 3}" / f"f{index}.txt.zr-rp", f"{index} ${{ZR_APP:S}}\n")
    write(workspace / "res" / "note.zr-warn", "concurrent\n")
    sequential = make_engine(workspace, jobs=1).run()
    expected = snapshot(_target(workspace))
    concurrent = make_engine(workspace, jobs=4).run()
    assert snapshot(_target(workspace)) == expected
    assert expected["d1/f4.txt"] == b"4 DEMO_APP\n"
    assert concurrent.invocations == sequential.invocations == 13
    assert [w.message for w in concurrent.warnings] == ["concurrent"]


def test_concurrent_failure_aborts_pass(workspace: Path) -> None:
    for index in range(6):
        write(workspace / "res" / f"f{index}.txt.zr-rp", "ok\n")
    write(workspace / "res" / "zz.zr-fail", "halt\n")
    with pytest.raises(ToolFailedError, match="halt"):
        make_engine(workspace, jobs=3).run()
    assert (_target(workspace) / INCOMPLETE_MARKER).is_file()


def test_undecodable_request_fails_builtin_cleanly(workspace: Path) -> None:
    path = workspace / "res" / "bad.txt.zr-rp"
    path.write_bytes(b"caf\xe9\n")
    engine = make_engine(workspace)
    with pytest.raises(ToolFailedError, match="UnicodeDecodeError"):
        engine.run()
    assert engine.last_state is not None
    assert isinstance(engine.last_state.reporter.failure, ToolFailedError)
    marker = _target(workspace) / INCOMPLETE_MARKER
    assert marker.read_text(encoding="utf-8").startswith("build failed")


@pytest.mark.skipif(sys.platform == "win32", reason="posix exec semantics")
def test_unexecutable_sibling_tool_fails_cleanly(workspace: Path) -> None:
    write_executable(workspace / "bin" / "zres-noshebang", "echo hi\n")
    write(workspace / "res" / "x.zr-noshebang", "")
    engine = make_engine(workspace)
    with pytest.raises(ToolFailedError) as exc:
        engine.run()
    assert exc.value.returncode == -1
    assert "cannot run" in exc.value.stderr
    marker = _target(workspace) / INCOMPLETE_MARKER
    assert marker.read_text(encoding="utf-8").startswith("build failed")


def test_final_pass_delegate_falls_through_to_builtin(workspace: Path) -> None:
    log: list[str] = []
    registry = BuiltinRegistry()

    @registry.add("late")
    def _late(ctx: ToolContext) -> None:
        log.append(ctx.final_args if ctx.is_final else "not final")
        ctx.target.write_text(f"{ctx.final_args}\n", encoding="utf-8")

    write_dedicated_tool(
        workspace / "tools",
        "late",
        """\
        import os
        if "ZR_FINAL" in os.environ:
            print("zres::delegate")
        else:
            print("zres::on-final=from-dedicated")
        """,
    )
    write(workspace / "res" / "x.txt.zr-late", "")
    report = make_engine(workspace, builtins=registry).run()
    assert log == ["from-dedicated"]
    assert report.invocations == 3
    assert report.finals_run == 1
    assert snapshot(_target(workspace)) == {"x.txt": b"from-dedicated\n"}


def test_request_removed_mid_pass_is_skipped(workspace: Path) -> None:
    calls: list[str] = []
    registry = BuiltinRegistry()

    @registry.add("eat")
    def _eat(ctx: ToolContext) -> None:
        (ctx.request_dd / "b.zr-record").unlink()

    @registry.add("record")
    def _record(ctx: ToolContext) -> None:
        calls.append(ctx.request.name)

    write(workspace / "res" / "a.zr-eat", "")
    write(workspace / "res" / "b.zr-record", "")
    report = make_engine(workspace, builtins=registry).run()
    assert calls == []
    assert report.invocations == 1
    assert report.resolved == 1
    assert not (_target(workspace) / INCOMPLETE_MARKER).exists()


def test_tool_dir_file_fails_before_any_pass(workspace: Path) -> None:
    write(workspace / "toolfile", "")
    write(workspace / "res" / "a.txt.zr-rp", "x\n")
    with pytest.raises(ConfigError, match="not a directory"):
        make_engine(workspace, tool_dir="toolfile").run()
    assert not _target(workspace).exists()
