"""
Per-job isolation context: a private scratch directory plus one process group
per command, resource limits applied before exec, teardown registered on entry.
"""

from __future__ import annotations

import asyncio
import os
import signal
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Set

import structlog

from ..core.errors import ReclaimError, SandboxSetupError
from ..core.models import RawOutput
from ..isolation.isolation import IsolationPipeline
from ..runner.rlimits import make_preexec
from ..settings import Limits
from .collector import BoundedBuffer, feed_stdin, pump
from .reaper import SCRATCH_PREFIX, live, remove_scratch, signal_group, terminate_group, verify_reaped

log = structlog.get_logger(__name__)

# Readers still open after the group is gone mean a process escaped it.
_DRAIN_TIMEOUT_S = 1.0

SAFE_PATH = "/usr/local/bin:/usr/bin:/bin"


class Sandbox:
    """
    Async context manager. Entering creates the scratch dir; leaving kills every
    process group the sandbox started, verifies none survived and removes the
    scratch dir, exactly once and on every exit path.

    Example:
        >>> async with Sandbox("job1", settings.jobs_dir, pipeline) as sbx:
        ...     sbx.write_file("main.py", "print('hi')")
        ...     raw = await sbx.run(["python3", "main.py"], limits=Limits())
    """

    def __init__(
        self,
        job_id: str,
        jobs_dir: Path,
        isolation: IsolationPipeline,
        *,
        max_output_bytes: int = 64 * 1024,
        kill_grace_s: float = 0.5,
        reap_timeout_s: float = 2.0,
    ) -> None:
        self.job_id = job_id
        self.jobs_dir = Path(jobs_dir)
        self.isolation = isolation
        self.max_output_bytes = max_output_bytes
        self.kill_grace_s = kill_grace_s
        self.reap_timeout_s = reap_timeout_s

        self.workdir: Optional[Path] = None
        self.pgid: Optional[int] = None
        self._groups: Set[int] = set()
        self._cancel = asyncio.Event()
        self._torn_down = False

    # ------------ lifecycle ------------

    async def __aenter__(self) -> Sandbox:
        try:
            self.jobs_dir.mkdir(parents=True, exist_ok=True)
            self.workdir = Path(tempfile.mkdtemp(
                prefix=f"{SCRATCH_PREFIX}{os.getpid()}-{self.job_id}-", dir=self.jobs_dir,
            ))
        except OSError as e:
            raise SandboxSetupError(f"cannot create scratch dir under {self.jobs_dir}: {e}") from e
        live.dirs[self.job_id] = self.workdir
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.teardown()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Idempotent; the running command (if any) is terminated and reported cancelled."""
        self._cancel.set()

    async def teardown(self) -> None:
        if self._torn_down:
            return
        self._torn_down = True

        errors: List[ReclaimError] = []
        for pgid in list(self._groups):
            signal_group(pgid, signal.SIGKILL)
            try:
                await verify_reaped(pgid, self.reap_timeout_s)
            except ReclaimError as e:
                errors.append(e)
            self._groups.discard(pgid)
            live.groups.discard(pgid)

        if self.workdir is not None:
            try:
                remove_scratch(self.workdir)
            except ReclaimError as e:
                errors.append(e)
            live.dirs.pop(self.job_id, None)

        log.debug("sandbox_torn_down", job_id=self.job_id, errors=len(errors))
        if errors:
            raise errors[0]

    # ------------ files ------------

    def path(self, name: str) -> Path:
        if self.workdir is None:
            raise SandboxSetupError("sandbox not entered")
        p = (self.workdir / name).resolve()
        if p.parent != self.workdir.resolve():
            raise ValueError(f"invalid scratch file name: {name!r}")
        return p

    def write_file(self, name: str, content: str) -> Path:
        p = self.path(name)
        p.write_text(content, encoding="utf-8")
        return p

    def _env(self, extra: Optional[Dict[str, str]]) -> Dict[str, str]:
        env = {"PATH": SAFE_PATH, "HOME": ".", "TMPDIR": ".", "LANG": "C.UTF-8"}
        env.update(extra or {})
        return env

    # ------------ run ------------

    async def run(
        self,
        cmd: List[str],
        *,
        limits: Limits,
        stdin: bytes = b"",
        env: Optional[Dict[str, str]] = None,
    ) -> RawOutput:
        """
        Run `cmd` inside the sandbox under `limits` and its wall deadline.

        Returns:
            RawOutput with bounded stdout/stderr and the exit status. A deadline
            expiry or cancel() terminates the whole process group and is
            reported via timed_out / cancelled rather than raised.
        """
        if self.workdir is None or self._torn_down:
            raise SandboxSetupError("sandbox not active")
        if self.cancelled:
            return RawOutput(b"", b"", None, cancelled=True)

        argv = self.isolation.wrap(cmd, limits)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.workdir),
                env=self._env(env),
                start_new_session=True,
                preexec_fn=make_preexec(limits),
            )
        except (OSError, ValueError) as e:
            raise SandboxSetupError(f"failed to start {cmd[0]}: {e}") from e

        # setsid() in the child: pgid == pid
        self.pgid = proc.pid
        self._groups.add(proc.pid)
        live.groups.add(proc.pid)
        log.debug("sandbox_exec", job_id=self.job_id, pgid=proc.pid, cmd=cmd)

        out = BoundedBuffer(self.max_output_bytes)
        err = BoundedBuffer(self.max_output_bytes)
        io_tasks = [
            asyncio.create_task(pump(proc.stdout, out)),
            asyncio.create_task(pump(proc.stderr, err)),
            asyncio.create_task(feed_stdin(proc.stdin, stdin)),
        ]

        timed_out = cancelled = False
        exited = asyncio.create_task(proc.wait())
        cancel_wait = asyncio.create_task(self._cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {exited, cancel_wait},
                timeout=limits.wall_timeout_s,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if exited not in done:
                timed_out = cancel_wait not in done
                cancelled = not timed_out
                log.info("sandbox_deadline" if timed_out else "sandbox_cancel",
                         job_id=self.job_id, pgid=proc.pid, timeout_s=limits.wall_timeout_s)
                await terminate_group(proc.pid, self.kill_grace_s)
        finally:
            cancel_wait.cancel()
            # Leader gone (or being killed): nothing else in the group may keep running.
            signal_group(proc.pid, signal.SIGKILL)
            if not exited.done():
                await exited
            _, pending = await asyncio.wait(io_tasks, timeout=_DRAIN_TIMEOUT_S)
            for t in pending:
                t.cancel()
            if pending:
                log.warning("sandbox_escaped_output", job_id=self.job_id, pgid=proc.pid)
                await asyncio.gather(*pending, return_exceptions=True)

        await verify_reaped(proc.pid, self.reap_timeout_s)
        self._groups.discard(proc.pid)
        live.groups.discard(proc.pid)

        return RawOutput(
            stdout=out.getvalue(),
            stderr=err.getvalue(),
            returncode=None if (timed_out or cancelled) else proc.returncode,
            stdout_truncated=out.truncated,
            stderr_truncated=err.truncated,
            timed_out=timed_out,
            cancelled=cancelled,
        )
