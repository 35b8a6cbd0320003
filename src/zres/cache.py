from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path

from zres.runtime.stable_encode import stable_compact_bytes

_KEY_VERSION = 1
_DIGEST_CHARS = 32


def cache_key(
    source_root: Path,
    target_root: Path,
    request_path: Path,
    content: bytes,
) -> str:
    """Digest of the four request identity inputs.

    No clock, process or host state takes part, so the same inputs always
    produce the same key.
    """
    header = stable_compact_bytes(
        {
            "version": _KEY_VERSION,
            "source": source_root,
            "target": target_root,
            "request": request_path,
            "content_len": len(content),
        }
    )
    digest = hashlib.sha256()
    digest.update(header)
    digest.update(b"\0")
    digest.update(content)
    return digest.hexdigest()[:_DIGEST_CHARS]


@dataclass(frozen=True)
class CacheKeyer:
    """Maps requests to per-request cache directories under ``root``.

    Directories are never created or deleted here. The invoker creates one
    right before the owning tool runs; eviction is left to the user.
    """

    root: Path

    def key_for(
        self,
        source_root: Path,
        target_root: Path,
        request_path: Path,
        content: bytes,
    ) -> Path:
        return self.root / cache_key(source_root, target_root, request_path, content)
