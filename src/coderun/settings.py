from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .core.models import Language

MiB = 1024 * 1024


class Limits(BaseModel):
    """Resource caps applied to one sandboxed process before user code runs."""

    model_config = ConfigDict(frozen=True)

    wall_timeout_s: float = 10.0
    cpu_seconds: int = 5
    memory_bytes: Optional[int] = 512 * MiB  # RLIMIT_AS; None = leave unlimited
    nofile: int = 64
    fsize_bytes: int = 16 * MiB
    nproc: Optional[int] = None


class LanguagePolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    run: Limits = Limits()
    compile: Optional[Limits] = None


def _python_policy() -> LanguagePolicy:
    return LanguagePolicy(run=Limits())


def _cpp_policy() -> LanguagePolicy:
    return LanguagePolicy(
        run=Limits(),
        compile=Limits(
            wall_timeout_s=20.0,
            cpu_seconds=15,
            memory_bytes=1024 * MiB,
            nofile=128,
            fsize_bytes=64 * MiB,
        ),
    )


def _javascript_policy() -> LanguagePolicy:
    # V8 reserves far more address space than it uses, so the heap is
    # bounded with --max-old-space-size instead of RLIMIT_AS.
    return LanguagePolicy(run=Limits(memory_bytes=None, nofile=128))


class Settings(BaseSettings):
    # ---- scratch space ----
    jobs_dir: Path = Path(tempfile.gettempdir()) / "coderun"

    # ---- scheduling ----
    worker_slots: int = Field(default_factory=lambda: os.cpu_count() or 2)
    max_queue_depth: int = 32
    max_queue_wait_s: float = 30.0

    # ---- admission caps ----
    max_source_bytes: int = 64 * 1024
    max_stdin_bytes: int = 64 * 1024
    max_output_bytes: int = 64 * 1024

    # ---- teardown ----
    kill_grace_s: float = 0.5
    reap_timeout_s: float = 2.0

    # ---- isolation ----
    isolation: Literal["auto", "unshare", "none"] = "auto"
    allow_network: bool = False
    hide_paths: List[str] = ["/tmp", "/var/tmp", "/dev/shm"]
    use_cgroups: bool = False
    cgroup_cpu_quota: str = "100%"

    # ---- runtimes ----
    python_bin: str = "python3"
    node_bin: str = "node"
    node_heap_mb: int = 256
    cxx_bin: str = "g++"
    cxx_flags: List[str] = ["-std=c++17", "-O2", "-pipe"]
    cpp_fail_on_warnings: bool = True

    # ---- per-language limits ----
    python: LanguagePolicy = Field(default_factory=_python_policy)
    cpp: LanguagePolicy = Field(default_factory=_cpp_policy)
    javascript: LanguagePolicy = Field(default_factory=_javascript_policy)

    # env prefix CODERUN_*
    model_config = SettingsConfigDict(env_prefix="CODERUN_", extra="ignore")

    def policy_for(self, language: Language) -> LanguagePolicy:
        return getattr(self, language.value)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out


def load_settings(path: Optional[Path] = None) -> Settings:
    # 0) base from CODERUN_* env
    s = Settings()

    # 1) conf/coderun.yaml (or CODERUN_CONF) overrides env
    conf = path or Path(os.environ.get("CODERUN_CONF", "conf/coderun.yaml"))
    try:
        with open(conf, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        data = {}
    if not isinstance(data, dict):
        data = {}

    # 2) nested policies merge key by key so a partial block keeps its defaults
    return Settings(**_deep_merge(s.model_dump(), data))
