from __future__ import annotations

import json
from pathlib import PurePath
from typing import Mapping


def stable_compact_text(
    value: object,
    *,
    ensure_ascii: bool = True,
) -> str:
    """Deterministic text encoder for hash surfaces.

    Sort-contract note:
    - Mapping keys are sorted lexically once per normalized carrier.
    - Sequence order is preserved; tuple/list normalize to JSON lists.
    - Paths normalize to their POSIX text form.
    """
    normalized = stable_json_value(value, source="stable_encode.stable_compact_text")
    return json.dumps(
        normalized,
        separators=(",", ":"),
        sort_keys=False,
        ensure_ascii=ensure_ascii,
    )


def stable_compact_bytes(
    value: object,
    *,
    ensure_ascii: bool = True,
) -> bytes:
    return stable_compact_text(value, ensure_ascii=ensure_ascii).encode("utf-8")


def stable_json_value(value: object, *, source: str) -> object:
    """Normalize ``value`` into a deterministic JSON-compatible carrier.

    Unsupported objects are rejected so no identity-dependent text (``repr``
    with addresses and the like) can leak into a digest.
    """
    if isinstance(value, Mapping):
        keys = sorted(str(key) for key in value)
        by_text = {str(key): item for key, item in value.items()}
        return {
            key: stable_json_value(by_text[key], source=f"{source}.{key}")
            for key in keys
        }
    if isinstance(value, (tuple, list)):
        return [
            stable_json_value(item, source=f"{source}.item")
            for item in value
        ]
    if isinstance(value, PurePath):
        return value.as_posix()
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    raise TypeError(
        "stable_json_value does not support value type "
        f"{type(value).__name__} at {source}"
    )
