from __future__ import annotations

import asyncio
import atexit
import os
import re
import shutil
import signal
import time
from pathlib import Path
from typing import Dict, List, Set

import structlog

from ..core.errors import ReclaimError

log = structlog.get_logger(__name__)

SCRATCH_PREFIX = "job-"
_SCRATCH_RE = re.compile(rf"^{SCRATCH_PREFIX}(\d+)-")

POLL_S = 0.02


def group_members(pgid: int) -> List[int]:
    """Live (non-zombie) pids whose process group is `pgid`."""
    proc = Path("/proc")
    if not proc.is_dir():
        try:
            os.killpg(pgid, 0)
        except ProcessLookupError:
            return []
        except PermissionError:
            pass
        return [pgid]

    members = []
    for entry in proc.iterdir():
        if not entry.name.isdigit():
            continue
        try:
            stat = (entry / "stat").read_text()
        except OSError:
            continue  # exited while scanning
        # "pid (comm) state ppid pgrp ..." ; comm may contain spaces or ')'
        fields = stat[stat.rfind(")") + 2:].split()
        if len(fields) < 3 or fields[0] in ("Z", "X"):
            continue
        if int(fields[2]) == pgid:
            members.append(int(entry.name))
    return members


def signal_group(pgid: int, sig: int) -> bool:
    try:
        os.killpg(pgid, sig)
        return True
    except ProcessLookupError:
        return False


async def _wait_empty(pgid: int, timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    while group_members(pgid):
        if time.monotonic() >= deadline:
            return False
        await asyncio.sleep(POLL_S)
    return True


async def terminate_group(pgid: int, grace: float) -> None:
    """SIGTERM, give the group `grace` seconds, then SIGKILL."""
    if not signal_group(pgid, signal.SIGTERM):
        return
    if await _wait_empty(pgid, grace):
        return
    log.info("group_sigkill", pgid=pgid)
    signal_group(pgid, signal.SIGKILL)


async def verify_reaped(pgid: int, timeout: float) -> None:
    """Secondary check after termination: SIGKILL stragglers, fail if any survive."""
    if await _wait_empty(pgid, 0):
        return
    survivors = group_members(pgid)
    log.warning("group_stragglers", pgid=pgid, pids=survivors)
    signal_group(pgid, signal.SIGKILL)
    if not await _wait_empty(pgid, timeout):
        raise ReclaimError(f"process group {pgid} survived SIGKILL: {group_members(pgid)}", pgid=pgid)


def remove_scratch(path: Path) -> None:
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        return
    except OSError as e:
        raise ReclaimError(f"failed to remove scratch dir {path}: {e}") from e


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def sweep_stale(jobs_dir: Path) -> int:
    """Remove scratch dirs left behind by a supervisor process that no longer exists."""
    if not jobs_dir.is_dir():
        return 0
    removed = 0
    for entry in jobs_dir.iterdir():
        m = _SCRATCH_RE.match(entry.name)
        if not m or not entry.is_dir():
            continue
        owner = int(m.group(1))
        if owner == os.getpid() or _pid_alive(owner):
            continue
        shutil.rmtree(entry, ignore_errors=True)
        removed += 1
    if removed:
        log.info("stale_scratch_swept", count=removed, jobs_dir=str(jobs_dir))
    return removed


class LiveRegistry:
    """
    Scratch dirs and process groups of sandboxes not yet torn down.
    Flushed synchronously at interpreter exit.
    """

    def __init__(self) -> None:
        self.groups: Set[int] = set()
        self.dirs: Dict[str, Path] = {}
        atexit.register(self.flush)

    def flush(self) -> None:
        for pgid in list(self.groups):
            signal_group(pgid, signal.SIGKILL)
        self.groups.clear()
        for path in list(self.dirs.values()):
            shutil.rmtree(path, ignore_errors=True)
        self.dirs.clear()


live = LiveRegistry()
