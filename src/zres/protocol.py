"""Line protocol spoken by tools on stdout.

A tool talks back to the engine by printing lines that start with
``zres::``. Recognized directives:

- ``zres::delegate``: the tool declines the request, resolution continues
  with the next tool tier.
- ``zres::warning=<message>``: report a non-fatal warning.
- ``zres::on-final=<args>``: run this tool again in the final pass with
  ``ZR_FINAL=<args>``; a bare ``zres::on-final`` means empty args.

Lines without the prefix are ordinary output and are discarded. Prefixed
lines that do not parse are ignored too: parsing is best effort.

Python tool scripts can use :func:`delegate`, :func:`warning` and
:func:`on_final` instead of formatting lines by hand.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Iterable, TextIO, TypeAlias

PROTOCOL_PREFIX = "zres::"

_DELEGATE = "delegate"
_WARNING = "warning"
_ON_FINAL = "on-final"


@dataclass(frozen=True)
class Delegate:
    pass


@dataclass(frozen=True)
class Warn:
    message: str


@dataclass(frozen=True)
class OnFinal:
    args: str


@dataclass(frozen=True)
class Ignored:
    line: str


Directive: TypeAlias = Delegate | Warn | OnFinal | Ignored


def parse_line(line: str) -> Directive | None:
    """Parse one stdout line; ``None`` means ordinary output."""
    text = line.rstrip("\r\n")
    if not text.startswith(PROTOCOL_PREFIX):
        return None
    body = text[len(PROTOCOL_PREFIX):]
    name, sep, value = body.partition("=")
    name = name.strip()
    if name == _DELEGATE and not sep:
        return Delegate()
    if name == _WARNING and sep:
        return Warn(value)
    if name == _ON_FINAL:
        return OnFinal(value)
    return Ignored(text)


def parse_output(text: str) -> tuple[Directive, ...]:
    directives: list[Directive] = []
    for line in text.splitlines():
        directive = parse_line(line)
        if directive is None or isinstance(directive, Ignored):
            continue
        directives.append(directive)
    return tuple(directives)


def format_directive(directive: Directive) -> str:
    match directive:
        case Delegate():
            return f"{PROTOCOL_PREFIX}{_DELEGATE}"
        case Warn(message=message):
            return f"{PROTOCOL_PREFIX}{_WARNING}={_single_line(message)}"
        case OnFinal(args=args):
            return f"{PROTOCOL_PREFIX}{_ON_FINAL}={_single_line(args)}"
        case Ignored(line=line):
            return line
    raise TypeError(f"not a directive: {directive!r}")


def _single_line(text: str) -> str:
    if "\n" not in text and "\r" not in text:
        return text
    return " ".join(part.strip() for part in text.splitlines() if part.strip())


def emit(directives: Iterable[Directive], *, out: TextIO | None = None) -> None:
    stream = out if out is not None else sys.stdout
    for directive in directives:
        stream.write(format_directive(directive) + "\n")
    stream.flush()


def delegate(*, out: TextIO | None = None) -> None:
    emit([Delegate()], out=out)


def warning(message: str, *, out: TextIO | None = None) -> None:
    emit([Warn(message)], out=out)


def on_final(args: str = "", *, out: TextIO | None = None) -> None:
    emit([OnFinal(args)], out=out)
