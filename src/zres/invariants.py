"""Invariant markers."""

from __future__ import annotations

from typing import NoReturn

from zres.exceptions import NeverThrown


def never(reason: str = "", **env: object) -> NoReturn:
    """Mark a code path as intentionally unreachable.

    The keyword payload is carried on the raised exception for diagnostics
    only; it is never evaluated.
    """
    raise NeverThrown(reason or "never() marker reached", env=env)
