"""Builtin resource tools.

Every routine reads its request through the ``ToolContext`` and writes
only to its own implied target (or, for ``glob``, to new requests beside
it).
"""

from __future__ import annotations

from fnmatch import fnmatchcase
import logging
from pathlib import Path, PurePosixPath
import re
import shutil
import subprocess

from zres.exceptions import ToolError
from zres.request import request_name
from zres.tools.registry import BuiltinRegistry, ToolContext

logger = logging.getLogger(__name__)

BUILTINS = BuiltinRegistry()

_GLOB_CHARS = frozenset("*?[")
_EXCLUDE_PREFIX = "!:"


def _request_lines(ctx: ToolContext) -> list[str]:
    lines: list[str] = []
    for line in ctx.read_request_text().splitlines():
        text = line.strip()
        if not text or text.startswith("#"):
            continue
        lines.append(text)
    return lines


def _copy_entry(source: Path, target: Path) -> None:
    if source.is_dir():
        shutil.copytree(source, target, dirs_exist_ok=True)
    elif source.is_file():
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
    else:
        raise ToolError(f"cannot copy `{source}`, not found")


@BUILTINS.add(
    "copy",
    help="""\
Copy the file or dir

The request file:
  source/foo.txt.zr-copy
   | # comment
   | path/bar.txt

Copies `path/bar.txt` to:
  target/foo.txt

Paths are relative to the workspace root.
""",
)
def copy_tool(ctx: ToolContext) -> None:
    lines = _request_lines(ctx)
    if not lines:
        raise ToolError("expected a path to copy")
    _copy_entry(ctx.resolve_path(lines[0]), ctx.target)


def _split_pattern(pattern: str) -> tuple[PurePosixPath, str]:
    parts = PurePosixPath(pattern).parts
    static: list[str] = []
    for index, part in enumerate(parts):
        if _GLOB_CHARS.intersection(part):
            return PurePosixPath(*static) if static else PurePosixPath("."), "/".join(parts[index:])
        static.append(part)
    return PurePosixPath(*static), ""


def _passes_filters(relative: str, filters: list[str]) -> bool:
    for item in filters:
        if item.startswith(_EXCLUDE_PREFIX):
            if fnmatchcase(relative, item[len(_EXCLUDE_PREFIX):]):
                return False
        elif not fnmatchcase(relative, item):
            return False
    return True


@BUILTINS.add(
    "glob",
    help="""\
Copy all matches in place

The request file:
  source/l10n/fluent-files.zr-glob
   | # localization dir
   | assets/l10n/**/*.ftl
   | # except test locales
   | !:pseudo*/**

Copies all '.ftl' files under `assets/l10n` not in a `pseudo*` dir to:
  target/l10n/

The first pattern is required and selects the entries, relative to the
workspace root. Entries keep their path relative to the non-glob prefix of
the pattern. Following patterns filter that relative path: plain patterns
must match, patterns prefixed with '!:' must not match.

Each match becomes a `.zr-copy` request resolved in the next pass.
""",
)
def glob_tool(ctx: ToolContext) -> None:
    lines = _request_lines(ctx)
    if not lines:
        raise ToolError("expected a glob pattern")
    pattern, filters = lines[0], lines[1:]
    base, rest = _split_pattern(pattern)
    root = ctx.resolve_path(str(base))
    if rest:
        candidates = sorted(root.glob(rest))
        entries = [(path, path.relative_to(root).as_posix()) for path in candidates]
    elif root.exists():
        entries = [(root, root.name)]
    else:
        entries = []
    request = ctx.request.resolve()
    selected: list[tuple[Path, str]] = []
    for path, relative in entries:
        if path.resolve() == request:
            continue
        if not _passes_filters(relative, filters):
            continue
        if any(path.is_relative_to(chosen) for chosen, _ in selected):
            continue
        selected.append((path, relative))
    if not selected:
        ctx.warning(f"glob `{pattern}` did not match any entry")
        return
    for path, relative in selected:
        destination = ctx.target_dd / relative
        copy_request = destination.with_name(request_name(destination.name, "copy"))
        copy_request.parent.mkdir(parents=True, exist_ok=True)
        copy_request.write_text(f"{path.resolve()}\n", encoding="utf-8")
    logger.debug("glob %s selected %d entries", pattern, len(selected))


_REPLACE_RE = re.compile(r"\$\$\{|\$\{([^}]*)\}")
_CAMEL_BOUNDARY_RE = re.compile(r"([a-z0-9])([A-Z])")
_WORD_RE = re.compile(r"[A-Za-z0-9]+")


def _words(text: str) -> list[str]:
    return _WORD_RE.findall(_CAMEL_BOUNDARY_RE.sub(r"\1 \2", text))


def _convert_case(text: str, case: str) -> str:
    words = _words(text)
    match case:
        case "l":
            return text.lower()
        case "U":
            return text.upper()
        case "k":
            return "-".join(word.lower() for word in words)
        case "K":
            return "-".join(word.upper() for word in words)
        case "s":
            return "_".join(word.lower() for word in words)
        case "S":
            return "_".join(word.upper() for word in words)
        case "T":
            return " ".join(word.capitalize() for word in words)
        case "c":
            return "".join(
                word.lower() if index == 0 else word.capitalize()
                for index, word in enumerate(words)
            )
        case "C":
            return "".join(word.capitalize() for word in words)
    raise ToolError(f"unknown case conversion `:{case}`")


_CASES = frozenset("lUkKsSTcC")


def _run_command(ctx: ToolContext, command: str) -> str:
    completed = subprocess.run(
        command,
        shell=True,
        env=dict(ctx.env),
        cwd=ctx.workspace,
        capture_output=True,
        text=True,
    )
    if completed.returncode != 0:
        raise ToolError(
            f"`{command}` exited with status {completed.returncode}\n{completed.stderr}".rstrip(),
        )
    return completed.stdout.strip()


def _replacement(ctx: ToolContext, expression: str) -> str:
    head, sep, fallback = expression.partition(":?")
    case = ""
    name, colon, maybe_case = head.rpartition(":")
    if colon and maybe_case in _CASES:
        head, case = name, maybe_case
    head = head.strip()
    if head.startswith("<"):
        path = ctx.resolve_path(head[1:].strip())
        try:
            value: str | None = path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ToolError(f"cannot read `{path}`, {exc}") from exc
    elif head.startswith("!"):
        value = _run_command(ctx, head[1:].strip())
    else:
        value = ctx.env.get(head)
    if not value and sep:
        value = fallback
    if value is None:
        raise ToolError(f"${{{expression}}} is not set and has no fallback")
    return _convert_case(value, case) if case else value


def replace_text(ctx: ToolContext, text: str) -> str:
    def _sub(match: re.Match[str]) -> str:
        if match.group(0) == "$${":
            return "${"
        return _replacement(ctx, match.group(1))

    return _REPLACE_RE.sub(_sub, text)


@BUILTINS.add(
    "rp",
    help="""\
Replace ${VAR|<file|!cmd} occurrences in the content

The request file:
  source/greetings.txt.zr-rp
   | Thanks for using ${ZR_APP}!

Writes the text content with ZR_APP replaced to:
  target/greetings.txt

Replacements:
  ${VAR}          environment variable (ZR_* included), fails if unset
  ${<file}        content of file, relative to the workspace root
  ${!cmd}         stdout of shell command, run in the workspace root
  ${VAR:?text}    use text when the value is unset or empty
  ${VAR:k}        case conversion, one of:
                  k kebab, K KEBAB, s snake, S SNAKE, l lower,
                  U UPPER, T Title, c camelCase, C PascalCase
  $${             escapes a literal `${`
""",
)
def rp_tool(ctx: ToolContext) -> None:
    text = replace_text(ctx, ctx.read_request_text())
    ctx.target.parent.mkdir(parents=True, exist_ok=True)
    ctx.target.write_text(text, encoding="utf-8")


def _shell() -> list[str]:
    bash = shutil.which("bash")
    if bash is not None:
        return [bash, "-c"]
    return [shutil.which("sh") or "/bin/sh", "-c"]


def _run_script(ctx: ToolContext) -> None:
    script = ctx.read_request_text()
    completed = subprocess.run(
        [*_shell(), script],
        env=dict(ctx.env),
        cwd=ctx.workspace,
        capture_output=True,
        text=True,
    )
    ctx.stdout.write(completed.stdout)
    ctx.stderr.write(completed.stderr)
    if completed.returncode != 0:
        raise ToolError(
            f"script exited with status {completed.returncode}",
            returncode=completed.returncode,
        )


@BUILTINS.add(
    "sh",
    help="""\
Run a bash script

The request file:
  source/greetings.txt.zr-sh
   | echo "Thanks for using $ZR_APP!" > "$ZR_TARGET"

Runs the script with bash (or sh when bash is not available), in the
workspace root, with the ZR_* variables set. Protocol lines the script
prints (zres::warning=, zres::delegate, zres::on-final=) are honored.
""",
)
def sh_tool(ctx: ToolContext) -> None:
    _run_script(ctx)


@BUILTINS.add(
    "shf",
    help="""\
Run a bash script on the final pass

Like `.zr-sh` but the script runs only after every other request
resolved, so it can inspect the whole target tree.
""",
)
def shf_tool(ctx: ToolContext) -> None:
    if not ctx.is_final:
        ctx.on_final()
        return
    _run_script(ctx)


@BUILTINS.add(
    "warn",
    help="""\
Print a warning message

The request file:
  source/warn.zr-warn
   | Warning message!

Prints the content as a build warning.
""",
)
def warn_tool(ctx: ToolContext) -> None:
    message = ctx.read_request_text().strip()
    ctx.warning(message or f"empty warning request {ctx.request}")


@BUILTINS.add(
    "fail",
    help="""\
Fail the build with a message

The request file:
  source/fail.zr-fail
   | Error message!

Fails the build and prints the content as the error.
""",
)
def fail_tool(ctx: ToolContext) -> None:
    message = ctx.read_request_text().strip()
    raise ToolError(message or f"fail requested by {ctx.request.name}")


__all__ = ["BUILTINS", "replace_text"]
