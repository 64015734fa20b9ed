from __future__ import annotations

import signal
import sys
from unittest.mock import MagicMock, patch

import pytest

from chatrelay.engine import process_tree
from chatrelay.engine.process_tree import group_id, spawn_options, terminate_tree

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")


def _proc(pid: int = 4242, returncode=None):
    proc = MagicMock()
    proc.pid = pid
    proc.returncode = returncode
    return proc


def test_exited_process_is_left_alone():
    proc = _proc(returncode=0)
    with patch("chatrelay.engine.process_tree.os.killpg", create=True) as killpg:
        assert terminate_tree(proc) is False
    killpg.assert_not_called()


@posix_only
def test_posix_signals_process_group():
    proc = _proc()
    with patch.object(process_tree, "IS_WINDOWS", False), \
            patch("chatrelay.engine.process_tree.os.killpg") as killpg:
        assert terminate_tree(proc) is True
        killpg.assert_called_once_with(4242, signal.SIGTERM)

        assert terminate_tree(proc, force=True) is True
        killpg.assert_called_with(4242, signal.SIGKILL)


@posix_only
def test_posix_vanished_group_is_not_an_error():
    proc = _proc()
    with patch.object(process_tree, "IS_WINDOWS", False), \
            patch("chatrelay.engine.process_tree.os.killpg", side_effect=ProcessLookupError):
        assert terminate_tree(proc) is False


@posix_only
def test_posix_foreign_group_falls_back_to_child_signal():
    proc = _proc()
    with patch.object(process_tree, "IS_WINDOWS", False), \
            patch("chatrelay.engine.process_tree.os.killpg", side_effect=PermissionError):
        assert terminate_tree(proc) is True
    proc.send_signal.assert_called_once_with(signal.SIGTERM)


def test_windows_uses_taskkill_tree():
    proc = _proc(pid=77)
    completed = MagicMock(returncode=0, stderr=b"")
    with patch.object(process_tree, "IS_WINDOWS", True), \
            patch("chatrelay.engine.process_tree.subprocess.run", return_value=completed) as run:
        assert terminate_tree(proc) is True
    args = run.call_args[0][0]
    assert args == ["taskkill", "/pid", "77", "/T", "/F"]


def test_windows_taskkill_failure_reported():
    proc = _proc(pid=77)
    completed = MagicMock(returncode=128, stderr=b"not found")
    with patch.object(process_tree, "IS_WINDOWS", True), \
            patch("chatrelay.engine.process_tree.subprocess.run", return_value=completed):
        assert terminate_tree(proc) is False


def test_spawn_options_per_platform():
    with patch.object(process_tree, "IS_WINDOWS", False):
        assert spawn_options() == {"start_new_session": True}
    with patch.object(process_tree, "IS_WINDOWS", True):
        assert "creationflags" in spawn_options()


@posix_only
def test_remembered_group_is_killed_after_leader_exit():
    proc = _proc(returncode=-15)
    with patch.object(process_tree, "IS_WINDOWS", False), \
            patch("chatrelay.engine.process_tree.os.killpg") as killpg:
        assert terminate_tree(proc, force=True, pgid=4242) is True
    killpg.assert_called_once_with(4242, signal.SIGKILL)


@posix_only
def test_remembered_group_already_gone():
    proc = _proc(returncode=0)
    with patch.object(process_tree, "IS_WINDOWS", False), \
            patch("chatrelay.engine.process_tree.os.killpg", side_effect=ProcessLookupError):
        assert terminate_tree(proc, force=True, pgid=4242) is False


def test_group_id_per_platform():
    proc = _proc(pid=99)
    with patch.object(process_tree, "IS_WINDOWS", False):
        assert group_id(proc) == 99
    with patch.object(process_tree, "IS_WINDOWS", True):
        assert group_id(proc) is None
