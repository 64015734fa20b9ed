"""Termination of an agent process together with its descendants.

The agent CLI spawns its own tool subprocesses (shells, language
servers), so stopping only the direct child leaves orphans behind.
On POSIX the child is started as a session leader and the whole process
group is signalled; on Windows ``taskkill /T`` walks the tree.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"


def spawn_options() -> dict:
    """Extra create_subprocess_exec kwargs that make tree termination possible."""
    if IS_WINDOWS:
        return {"creationflags": getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)}
    return {"start_new_session": True}


def group_id(proc: asyncio.subprocess.Process) -> int | None:
    """Process group of a child started with spawn_options(); None on Windows."""
    if IS_WINDOWS:
        return None
    # start_new_session makes the child its own group leader.
    return proc.pid


def _signal_process_group(proc: asyncio.subprocess.Process, sig: int) -> bool:
    """Send a signal to the process group when available."""
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, sig)
        else:
            proc.send_signal(sig)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        # Group no longer ours (leader gone, pid reused); signal the child only.
        try:
            proc.send_signal(sig)
            return True
        except ProcessLookupError:
            return False


def _signal_group_id(pgid: int, sig: int) -> bool:
    """Signal a remembered group, whether or not its leader is still alive."""
    try:
        os.killpg(pgid, sig)
    except ProcessLookupError:
        return False
    except PermissionError:
        logger.warning("Not permitted to signal process group %s", pgid)
        return False
    return True


def _taskkill_tree(pid: int) -> bool:
    try:
        result = subprocess.run(
            ["taskkill", "/pid", str(pid), "/T", "/F"],
            capture_output=True,
            timeout=10,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.warning("taskkill failed for pid=%s: %s", pid, exc)
        return False
    if result.returncode != 0:
        logger.debug(
            "taskkill pid=%s exited %s: %s",
            pid, result.returncode,
            result.stderr.decode(errors="replace").strip(),
        )
        return False
    return True


def terminate_tree(
    proc: asyncio.subprocess.Process,
    *,
    force: bool = False,
    pgid: int | None = None,
) -> bool:
    """Stop *proc* and everything it spawned.

    POSIX sends SIGTERM (SIGKILL when *force*) to the process group.
    Windows always force-kills the tree. Returns True when a signal was
    delivered.

    Without *pgid* an already-exited process is a no-op returning False.
    With *pgid* the group is signalled even after its leader exited,
    since descendants that ignored SIGTERM may still hold the pipes.
    """
    if IS_WINDOWS:
        if proc.returncode is not None:
            return False
        sent = _taskkill_tree(proc.pid)
    else:
        sig = signal.SIGKILL if force else signal.SIGTERM
        if pgid is not None:
            sent = _signal_group_id(pgid, sig)
        elif proc.returncode is not None:
            return False
        else:
            sent = _signal_process_group(proc, sig)
    logger.info(
        "terminate_tree pid=%s pgid=%s force=%s sent=%s", proc.pid, pgid, force, sent,
    )
    return sent
