from __future__ import annotations

import ctypes
import ctypes.util
import resource
import signal
from typing import Callable, Optional

from ..settings import Limits

PR_SET_PDEATHSIG = 1

# Resolved in the parent; nothing may be loaded after fork().
try:
    _libc: Optional[ctypes.CDLL] = ctypes.CDLL(ctypes.util.find_library("c"), use_errno=True)
except OSError:
    _libc = None


def _cap(which: int, value: int, soft: Optional[int] = None) -> None:
    _, hard = resource.getrlimit(which)
    if hard != resource.RLIM_INFINITY:
        value = min(value, hard)
    resource.setrlimit(which, (min(soft, value) if soft is not None else value, value))


def apply_rlimits(limits: Limits) -> None:
    """
    Process-level caps: CPU time, address space, open files, file size, core dumps.
    The CPU soft limit sits one second under the hard one so SIGXCPU arrives
    before SIGKILL.
    """
    _cap(resource.RLIMIT_CPU, limits.cpu_seconds + 1, soft=limits.cpu_seconds)
    if limits.memory_bytes:
        _cap(resource.RLIMIT_AS, limits.memory_bytes)
    _cap(resource.RLIMIT_NOFILE, limits.nofile)
    _cap(resource.RLIMIT_FSIZE, limits.fsize_bytes)
    _cap(resource.RLIMIT_CORE, 0)
    if limits.nproc:
        _cap(resource.RLIMIT_NPROC, limits.nproc)


def _die_with_parent() -> None:
    if _libc is not None:
        _libc.prctl(PR_SET_PDEATHSIG, signal.SIGKILL, 0, 0, 0)


def make_preexec(limits: Limits) -> Callable[[], None]:
    """Returns the preexec_fn run in the child between fork() and exec()."""

    def _preexec() -> None:
        _die_with_parent()
        apply_rlimits(limits)

    return _preexec
