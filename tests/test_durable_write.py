from __future__ import annotations

from unittest.mock import patch

import pytest

from chatrelay.shared.services.durable_write import replace_file, rewrite_with_backup


def test_replace_file_creates_parents_and_leaves_no_temp(tmp_path):
    target = tmp_path / "state" / "settings.json"
    replace_file(target, b'{"model": "opus"}')
    replace_file(target, b'{"model": "haiku"}')
    assert target.read_bytes() == b'{"model": "haiku"}'
    assert [p.name for p in target.parent.iterdir()] == ["settings.json"]


def test_failed_rename_keeps_old_content(tmp_path):
    target = tmp_path / "log.jsonl"
    target.write_bytes(b"old\n")
    with patch("chatrelay.shared.services.durable_write.os.replace", side_effect=OSError("busy")):
        with pytest.raises(OSError):
            replace_file(target, b"new\n")
    assert target.read_bytes() == b"old\n"
    assert [p.name for p in tmp_path.iterdir()] == ["log.jsonl"]


def test_rewrite_with_backup_keeps_exact_original(tmp_path):
    log = tmp_path / "abc.jsonl"
    original = "{\"type\":\"user\",\"message\":\"héllo\"}\n{\"type\":\"assistant\"}\n".encode("utf-8")
    log.write_bytes(original)

    backup = rewrite_with_backup(log, original, original.split(b"\n")[0] + b"\n", ".bak")

    assert backup == tmp_path / "abc.jsonl.bak"
    assert backup.read_bytes() == original
    assert log.read_bytes() == original.split(b"\n")[0] + b"\n"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["abc.jsonl", "abc.jsonl.bak"]


def test_log_untouched_when_backup_fails(tmp_path):
    log = tmp_path / "abc.jsonl"
    log.write_bytes(b"line\n")
    calls = []

    def failing_replace(path, data):
        calls.append(path)
        raise OSError("disk full")

    with patch("chatrelay.shared.services.durable_write.replace_file", side_effect=failing_replace):
        with pytest.raises(OSError):
            rewrite_with_backup(log, b"line\n", b"", ".bak")
    assert calls == [tmp_path / "abc.jsonl.bak"]
    assert log.read_bytes() == b"line\n"
