from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
import tomllib

logger = logging.getLogger(__name__)

MANIFEST_NAME = "pyproject.toml"

METADATA_KEYS: tuple[str, ...] = (
    "ZR_APP",
    "ZR_ORG",
    "ZR_VERSION",
    "ZR_DESCRIPTION",
    "ZR_HOMEPAGE",
    "ZR_PKG_NAME",
    "ZR_PKG_AUTHORS",
    "ZR_MODULE_NAME",
    "ZR_QUALIFIER",
)

_HOMEPAGE_KEYS = ("homepage", "home", "home-page", "documentation", "repository", "source")


@dataclass(frozen=True)
class Workspace:
    """Build workspace enclosing the resource source tree."""

    root: Path
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def manifest(self) -> Path:
        return self.root / MANIFEST_NAME


def locate_workspace(start: Path) -> Workspace | None:
    """Find the nearest ancestor of ``start`` (inclusive) holding a manifest."""
    current = start.resolve()
    for candidate in (current, *current.parents):
        manifest = candidate / MANIFEST_NAME
        if manifest.is_file():
            return Workspace(root=candidate, metadata=manifest_metadata(manifest))
    return None


def _load_manifest(path: Path) -> dict[str, object]:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError:
        logger.warning("cannot read workspace manifest %s", path)
        return {}
    try:
        data = tomllib.loads(raw)
    except tomllib.TOMLDecodeError as exc:
        logger.warning("cannot parse workspace manifest %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def _table(data: dict[str, object], *keys: str) -> dict[str, object]:
    current: object = data
    for key in keys:
        if not isinstance(current, dict):
            return {}
        current = current.get(key, {})
    return current if isinstance(current, dict) else {}


def _text(value: object) -> str:
    return value.strip() if isinstance(value, str) else ""


def _authors(project: dict[str, object]) -> list[tuple[str, str]]:
    raw = project.get("authors")
    if not isinstance(raw, list):
        return []
    authors: list[tuple[str, str]] = []
    for entry in raw:
        if isinstance(entry, dict):
            name = _text(entry.get("name"))
            email = _text(entry.get("email"))
            if name or email:
                authors.append((name, email))
        elif isinstance(entry, str) and entry.strip():
            authors.append((entry.strip(), ""))
    return authors


def _format_author(name: str, email: str) -> str:
    if name and email:
        return f"{name} <{email}>"
    return name or f"<{email}>"


def _homepage(project: dict[str, object]) -> str:
    urls = project.get("urls")
    if not isinstance(urls, dict):
        return ""
    by_lower = {str(key).lower(): _text(value) for key, value in urls.items()}
    for key in _HOMEPAGE_KEYS:
        if by_lower.get(key):
            return by_lower[key]
    return ""


def manifest_metadata(path: Path) -> dict[str, str]:
    """Map a ``pyproject.toml`` to the ``ZR_*`` metadata variables.

    ``[project]`` supplies name, version, description, authors and urls;
    ``[tool.zres.about]`` may override ``app``, ``org`` and ``qualifier``.
    Missing values map to empty strings so every key is always present.
    """
    data = _load_manifest(path)
    project = _table(data, "project")
    about = _table(data, "tool", "zres", "about")
    name = _text(project.get("name"))
    authors = _authors(project)
    first_author = authors[0][0] if authors else ""
    metadata = {
        "ZR_APP": _text(about.get("app")) or name,
        "ZR_ORG": _text(about.get("org")) or first_author,
        "ZR_VERSION": _text(project.get("version")),
        "ZR_DESCRIPTION": _text(project.get("description")),
        "ZR_HOMEPAGE": _text(about.get("homepage")) or _homepage(project),
        "ZR_PKG_NAME": name,
        "ZR_PKG_AUTHORS": ", ".join(_format_author(*author) for author in authors),
        "ZR_MODULE_NAME": name.replace("-", "_").replace(".", "_").lower(),
        "ZR_QUALIFIER": _text(about.get("qualifier")),
    }
    return {key: metadata[key] for key in METADATA_KEYS}
