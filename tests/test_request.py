from __future__ import annotations

from pathlib import Path

import pytest

from zres.request import (
    is_request_path,
    parse_request_name,
    request_for,
    request_name,
)


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("greetings.txt.zr-rp", ("greetings.txt", "rp")),
        ("x.zr-a.zr-b", ("x.zr-a", "b")),
        ("icon.png.zr-Copy", ("icon.png", "copy")),
        ("Makefile.zr-my-tool2", ("Makefile", "my-tool2")),
    ],
)
def test_parse_request_name_strips_rightmost_suffix(name: str, expected: tuple[str, str]) -> None:
    assert parse_request_name(name) == expected


@pytest.mark.parametrize(
    "name",
    [
        "plain.txt",
        ".zr-rp",
        "notes.zr-",
        "notes.zr-bad_tool",
        "notes.zr-sp ace",
        "notes.zr-a.txt",
    ],
)
def test_parse_request_name_rejects_non_requests(name: str) -> None:
    assert parse_request_name(name) is None


def test_request_name_normalizes_tool() -> None:
    assert request_name("logo.svg", "COPY") == "logo.svg.zr-copy"
    assert parse_request_name(request_name("logo.svg", "COPY")) == ("logo.svg", "copy")


def test_source_request_mirrors_into_target(tmp_path: Path) -> None:
    source = tmp_path / "res"
    target = tmp_path / "out"
    path = source / "docs" / "readme.md.zr-rp"
    request = request_for(path, source_root=source, target_root=target)
    assert request is not None
    assert request.tool == "rp"
    assert request.target == target / "docs" / "readme.md"
    assert request.target_parent == target / "docs"
    assert request.parent == source / "docs"


def test_target_request_keeps_target_in_place(tmp_path: Path) -> None:
    source = tmp_path / "res"
    target = tmp_path / "out"
    path = target / "docs" / "x.zr-a"
    request = request_for(path, source_root=source, target_root=target)
    assert request is not None
    assert request.target == target / "docs" / "x"


def test_request_for_plain_file_is_none(tmp_path: Path) -> None:
    assert request_for(tmp_path / "res" / "a.txt", source_root=tmp_path / "res", target_root=tmp_path / "out") is None
    assert not is_request_path(tmp_path / "a.txt")
    assert is_request_path(tmp_path / "a.txt.zr-copy")


def test_request_read_and_exists(tmp_path: Path) -> None:
    path = tmp_path / "res" / "hello.zr-warn"
    path.parent.mkdir()
    request = request_for(path, source_root=tmp_path / "res", target_root=tmp_path / "out")
    assert request is not None
    assert not request.exists()
    path.write_bytes(b"hi")
    assert request.exists()
    assert request.read() == b"hi"
