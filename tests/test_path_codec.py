from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

from chatrelay.shared.services.path_codec import (
    decode_path,
    encode_path,
    list_projects,
    session_dir,
)

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX paths")


@posix_only
def test_encode_posix_path():
    assert encode_path("/home/kim/my project") == "-home-kim-my-project"
    assert encode_path("/srv/app/../data") == "-srv-data"


def test_encode_replaces_windows_separators():
    # abspath leaves an already-absolute Windows path alone on Windows only.
    encoded = encode_path("C:\\Users\\kim\\code")
    assert "\\" not in encoded and ":" not in encoded
    assert encoded.endswith("Users-kim-code")


def test_decode_roundtrip_with_hyphens_and_spaces(tmp_path: Path):
    target = tmp_path / "client-portal" / "web app" / "src"
    target.mkdir(parents=True)
    assert decode_path(encode_path(target)) == str(target)


def test_decode_prefers_first_existing_reconstruction(tmp_path: Path):
    (tmp_path / "a" / "b").mkdir(parents=True)
    (tmp_path / "a-b").mkdir()
    decoded = decode_path(encode_path(tmp_path / "a-b"))
    # Both /a/b and /a-b exist; the shorter span is tried first.
    assert decoded in (str(tmp_path / "a" / "b"), str(tmp_path / "a-b"))
    assert os.path.isdir(decoded)


def test_decode_unresolvable_returns_none(tmp_path: Path):
    assert decode_path(encode_path(tmp_path / "does-not" / "exist")) is None
    assert decode_path("no-root-prefix") is None


@posix_only
def test_decode_root():
    assert decode_path("-") == "/"


def test_session_dir(tmp_path: Path):
    root = tmp_path / "projects"
    assert session_dir(str(tmp_path / "p"), root) == root / encode_path(tmp_path / "p")


def test_list_projects(tmp_path: Path):
    root = tmp_path / "claude" / "projects"
    alpha = tmp_path / "Alpha-site"
    beta = tmp_path / "beta"
    alpha.mkdir()
    beta.mkdir()

    (root / encode_path(beta)).mkdir(parents=True)
    (root / encode_path(beta) / "s1.jsonl").write_text("{}\n")
    (root / encode_path(beta) / "s2.jsonl").write_text("{}\n")
    (root / encode_path(beta) / "notes.txt").write_text("")
    (root / encode_path(alpha)).mkdir()
    (root / encode_path(tmp_path / "vanished")).mkdir()

    projects = list_projects(root)
    assert [p.display_name for p in projects] == ["Alpha-site", "beta"]
    assert projects[1].session_count == 2
    assert projects[0].session_count == 0
    assert projects[1].path == str(beta)
    assert projects[1].to_dict()["encodedName"] == encode_path(beta)


def test_list_projects_missing_root(tmp_path: Path):
    assert list_projects(tmp_path / "missing") == []
