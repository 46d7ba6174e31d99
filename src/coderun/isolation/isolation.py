from __future__ import annotations
from typing import Dict, List, Optional, Sequence
from pathlib import Path
import os, shutil, subprocess, tempfile

import structlog

from ..settings import Limits, Settings
from .ns_chroot import wrap_with_ns_chroot
from .cgroups import wrap_with_cgroups

log = structlog.get_logger(__name__)

# Probe result per (hide_paths, allow_network); checked once per process.
_probe_cache: Dict[tuple, bool] = {}


def unshare_works(hide_paths: Sequence[str], allow_network: bool) -> bool:
    key = (tuple(hide_paths), allow_network)
    if key in _probe_cache:
        return _probe_cache[key]

    ok = False
    if shutil.which("unshare"):
        argv = wrap_with_ns_chroot(["true"], hide_paths, allow_network)
        with tempfile.TemporaryDirectory(prefix="coderun_probe_") as tmp:
            try:
                res = subprocess.run(argv, cwd=tmp, capture_output=True, timeout=5)
                ok = res.returncode == 0
                if not ok:
                    log.warning("unshare_probe_failed", rc=res.returncode,
                                stderr=res.stderr.decode(errors="replace").strip())
            except (OSError, subprocess.TimeoutExpired) as e:
                log.warning("unshare_probe_failed", error=str(e))
    _probe_cache[key] = ok
    return ok


class IsolationPipeline:
    """Composes the namespace and cgroup wrappers around a sandboxed command."""

    def __init__(self, settings: Settings):
        self.allow_network = settings.allow_network
        self.use_cgroups = settings.use_cgroups
        self.cpu_quota = settings.cgroup_cpu_quota
        jobs_dir = str(Path(settings.jobs_dir).resolve())
        self.hide_paths: List[str] = list(dict.fromkeys([*settings.hide_paths, jobs_dir]))
        self.strategy = self._resolve(settings.isolation)

    def _resolve(self, requested: str) -> str:
        if requested == "none":
            return "none"
        if unshare_works(self.hide_paths, self.allow_network):
            return "unshare"
        if requested == "unshare":
            # explicitly asked for: refuse to run unisolated
            raise RuntimeError("isolation=unshare requested but user namespaces are unavailable")
        log.warning("isolation_degraded", requested=requested, strategy="none")
        return "none"

    def wrap(self, cmd: List[str], limits: Limits) -> List[str]:
        out = cmd
        if self.strategy == "unshare":
            out = wrap_with_ns_chroot(out, self.hide_paths, self.allow_network)
        if self.use_cgroups:
            out = wrap_with_cgroups(out, limits, self.cpu_quota)
        return out


def probe_capabilities(pipeline: Optional[IsolationPipeline] = None) -> dict:
    """Environment facts for /health and debugging isolation."""
    return {
        "strategy": pipeline.strategy if pipeline else None,
        "allow_network": pipeline.allow_network if pipeline else None,
        "euid": os.geteuid() if hasattr(os, "geteuid") else None,
        "has_unshare": bool(shutil.which("unshare")),
        "has_systemd_run": bool(shutil.which("systemd-run")),
        "has_sh": bool(shutil.which("sh") or shutil.which("bash")),
    }
