from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable, Optional

import typer

from zres.config import BuildOptions, TomlTable, merge_payload, res_defaults
from zres.engine import PassEngine, default_locator
from zres.exceptions import ResError
from zres.invoker import ToolInvoker
from zres.reporter import BuildWarning
from zres.schema import RunSummaryDTO, ToolInfoDTO, ToolListDTO
from zres.tools import ToolLocator, ToolTarget, help_summary

app = typer.Typer(add_completion=False, help="Fixpoint resource builder.")

LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
    )


def _echo_warning(line: str) -> None:
    typer.secho(line, err=True, fg=typer.colors.YELLOW)


def _echo_error(line: str) -> None:
    typer.secho(line, err=True, fg=typer.colors.RED)


def _render_warnings(warnings: Iterable[BuildWarning]) -> None:
    for warning in warnings:
        _echo_warning(f"warning: {warning.render()}")


def _fail(exc: ResError) -> typer.Exit:
    _echo_error(f"error: {exc}")
    return typer.Exit(code=1)


def _load_options(payload: TomlTable, config: Optional[Path]) -> BuildOptions:
    return BuildOptions.from_payload(merge_payload(payload, res_defaults(config_path=config)))


def _tool_locator(tool_dir: Optional[Path], config: Optional[Path]) -> tuple[ToolLocator, Path]:
    options = _load_options({"tool_dir": tool_dir}, config)
    locator = default_locator(options)
    locator.validate()
    return locator, Path.cwd()


def _tool_summary(invoker: ToolInvoker, target: ToolTarget, cwd: Path) -> str:
    return help_summary(invoker.describe(target, cwd=cwd))


@app.command()
def build(
    source: Optional[Path] = typer.Argument(None, help="Source resource dir [default: res]."),
    target: Optional[Path] = typer.Argument(None, help="Target dir [default: target/res]."),
    pack: Optional[bool] = typer.Option(
        None,
        "--pack/--no-pack",
        help="Copy non-request source files into the target.",
    ),
    tool_dir: Optional[Path] = typer.Option(None, "--tool-dir", help="Project tool dir."),
    tool_cache: Optional[Path] = typer.Option(
        None, "--tool-cache", help="Persistent per-request cache root."
    ),
    recursion_limit: Optional[int] = typer.Option(
        None, "--recursion-limit", help="Maximum number of passes."
    ),
    jobs: Optional[int] = typer.Option(
        None, "--jobs", "-j", help="Requests resolved concurrently per pass."
    ),
    config: Optional[Path] = typer.Option(None, "--config", help="Config file [default: zres.toml]."),
    summary_json: Optional[Path] = typer.Option(
        None, "--summary-json", help="Write the run summary as JSON."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Build the target resource tree from the source tree."""
    _configure_logging(verbose)
    payload: TomlTable = {
        "source": source,
        "target": target,
        "pack": pack,
        "tool_dir": tool_dir,
        "tool_cache": tool_cache,
        "recursion_limit": recursion_limit,
        "jobs": jobs,
    }
    try:
        options = _load_options(payload, config)
    except ResError as exc:
        raise _fail(exc) from exc
    engine = PassEngine(options)
    try:
        report = engine.run()
    except ResError as exc:
        reporter = engine.last_state.reporter if engine.last_state is not None else None
        if reporter is None or reporter.failure is None:
            raise _fail(exc) from exc
        reporter.render(warn=_echo_warning, error=_echo_error)
        raise typer.Exit(code=1) from exc
    _render_warnings(report.warnings)
    if summary_json is not None:
        summary = RunSummaryDTO.from_report(report)
        summary_json.parent.mkdir(parents=True, exist_ok=True)
        summary_json.write_text(
            json.dumps(summary.model_dump(), indent=2, sort_keys=True) + "\n",
            encoding="utf-8",
        )
    typer.echo(
        f"built {report.target} in {report.passes} passes "
        f"({report.invocations} tool runs, {report.resolved} requests)"
    )


@app.command("tools")
def list_tools(
    tool_dir: Optional[Path] = typer.Option(None, "--tool-dir", help="Project tool dir."),
    config: Optional[Path] = typer.Option(None, "--config"),
    as_json: bool = typer.Option(False, "--json", help="Print the listing as JSON."),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """List every discoverable tool with its one-line summary."""
    _configure_logging(verbose)
    try:
        locator, cwd = _tool_locator(tool_dir, config)
        targets = locator.list_tools()
    except ResError as exc:
        raise _fail(exc) from exc
    invoker = ToolInvoker()
    infos: list[ToolInfoDTO] = []
    errors: list[str] = []
    for target in targets:
        try:
            summary = _tool_summary(invoker, target, cwd)
        except ResError as exc:
            errors.append(str(exc))
            summary = ""
        infos.append(ToolInfoDTO.from_target(target, summary=summary))
    if as_json:
        listing = ToolListDTO(tools=infos, errors=errors)
        typer.echo(json.dumps(listing.model_dump(), indent=2, sort_keys=True))
        return
    for info in infos:
        typer.echo(f".zr-{info.name}  [{info.tier}] {info.origin}")
        if info.summary:
            typer.echo(f"    {info.summary}")
    for error in errors:
        _echo_warning(f"warning: {error}")


@app.command("tool")
def show_tool(
    name: str = typer.Argument(..., help="Tool name, with or without the .zr- prefix."),
    tool_dir: Optional[Path] = typer.Option(None, "--tool-dir", help="Project tool dir."),
    config: Optional[Path] = typer.Option(None, "--config"),
) -> None:
    """Print the full help of the tool that would handle NAME."""
    name = name.removeprefix(".zr-")
    try:
        locator, cwd = _tool_locator(tool_dir, config)
        target = locator.resolve(name)
        if target is None:
            searched = "\n".join(f"  {path}" for path in locator.search_paths(name))
            _echo_error(f"error: no tool `{name}`, searched:\n{searched}")
            raise typer.Exit(code=1)
        text = ToolInvoker().describe(target, cwd=cwd)
    except ResError as exc:
        raise _fail(exc) from exc
    typer.echo(f"{target.label}\n")
    typer.echo(text.rstrip("\n"))


def main() -> None:  # pragma: no cover
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
