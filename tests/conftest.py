"""Pytest configuration and fixtures for coderun tests."""

from __future__ import annotations

import asyncio
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Callable

import pytest

from coderun.isolation.isolation import IsolationPipeline
from coderun.services.dispatcher import Dispatcher
from coderun.settings import LanguagePolicy, Limits, Settings

requires_gxx = pytest.mark.skipif(shutil.which("g++") is None, reason="g++ not installed")
requires_node = pytest.mark.skipif(shutil.which("node") is None, reason="node not installed")


def _userns_available() -> bool:
    """Bare unprivileged user+mount+pid+net namespaces, independent of the mask prelude."""
    unshare = shutil.which("unshare")
    if not unshare:
        return False
    argv = [unshare, "--user", "--map-root-user", "--mount", "--pid", "--fork", "--net", "true"]
    try:
        return subprocess.run(argv, capture_output=True, timeout=5).returncode == 0
    except (OSError, subprocess.TimeoutExpired):
        return False


requires_userns = pytest.mark.skipif(not _userns_available(), reason="unprivileged user namespaces unavailable")


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    """Settings factory: small caps and short deadlines, no namespaces."""

    def _make(**overrides) -> Settings:
        values = dict(
            jobs_dir=tmp_path / "jobs",
            worker_slots=2,
            max_queue_depth=4,
            max_queue_wait_s=10.0,
            max_source_bytes=4096,
            max_stdin_bytes=4096,
            max_output_bytes=4096,
            kill_grace_s=0.2,
            reap_timeout_s=2.0,
            isolation="none",
            python_bin=sys.executable,
            python=LanguagePolicy(run=Limits(wall_timeout_s=5.0)),
            javascript=LanguagePolicy(run=Limits(wall_timeout_s=5.0, memory_bytes=None, nofile=128)),
            cpp=LanguagePolicy(
                run=Limits(wall_timeout_s=5.0),
                compile=Limits(wall_timeout_s=30.0, cpu_seconds=25, memory_bytes=None, nofile=128,
                               fsize_bytes=64 * 1024 * 1024),
            ),
        )
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


@pytest.fixture
def pipeline(settings: Settings) -> IsolationPipeline:
    return IsolationPipeline(settings)


@pytest.fixture
def dispatcher(settings: Settings) -> Dispatcher:
    return Dispatcher(settings)


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll `predicate` on the event loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)
