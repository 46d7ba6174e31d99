from __future__ import annotations
from typing import List
import shutil

from ..settings import Limits


def wrap_with_cgroups(cmd: List[str], limits: Limits, cpu_quota: str = "100%") -> List[str]:
    """
    systemd-run --scope puts the process tree in its own cgroup with MemoryMax/CPUQuota.
    Without systemd-run (minimal containers, WSL...) the command is returned unchanged.
    """
    sdrun = shutil.which("systemd-run")
    if not sdrun:
        return cmd

    props = ["-p", f"CPUQuota={cpu_quota}"]
    if limits.memory_bytes:
        props += ["-p", f"MemoryMax={limits.memory_bytes}"]
    if limits.nproc:
        props += ["-p", f"TasksMax={limits.nproc}"]
    return [sdrun, "--user", "--scope", "--quiet", *props, "--"] + cmd
