from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Dict, Optional

import structlog

from ..core.errors import AdmissionError, CompileError, JobCancelled, QueueTimeout, SandboxError
from ..core.models import ExecutionJob, ExecutionRequest, ExecutionResult, JobState, Language, RawOutput
from ..executor.collector import build_result, internal_error_result
from ..executor.reaper import sweep_stale
from ..executor.sandbox import Sandbox
from ..isolation.isolation import IsolationPipeline
from ..runner.base import LanguageAdapter
from ..runner.registry import build_adapters
from ..settings import LanguagePolicy, Settings
from .pool import SlotPool

log = structlog.get_logger(__name__)

# Headroom on top of the per-phase deadlines before the scheduler steps in itself.
_JOB_SLACK_S = 5.0


class Scheduler:
    """
    Admission (slot / FIFO queue / reject), per-job deadlines and cancellation.
    One Sandbox per admitted job, created once a slot is granted.
    """

    def __init__(
        self,
        settings: Settings,
        isolation: Optional[IsolationPipeline] = None,
        adapters: Optional[Dict[Language, LanguageAdapter]] = None,
    ):
        self.settings = settings
        self.isolation = isolation or IsolationPipeline(settings)
        self.adapters = adapters or build_adapters(settings)
        self.pool = SlotPool(settings.worker_slots, settings.max_queue_depth)
        self._jobs: Dict[str, ExecutionJob] = {}
        self._waiting: Dict[str, asyncio.Future] = {}
        sweep_stale(Path(settings.jobs_dir))

    # ------------ public ------------

    def submit(self, request: ExecutionRequest) -> ExecutionJob:
        """Create the job. It becomes visible to cancel() and get() once execute() starts."""
        return ExecutionJob(request)

    async def run(self, request: ExecutionRequest) -> ExecutionResult:
        return await self.execute(self.submit(request))

    async def execute(self, job: ExecutionJob) -> ExecutionResult:
        """
        Admit `job`, run it and return its result.

        Raises:
            QueueFull: no free slot and the wait queue is at depth.
            QueueTimeout: waited longer than max_queue_wait_s for a slot.
            JobCancelled: cancelled while still queued.
        """
        self._jobs[job.job_id] = job
        try:
            try:
                await self._admit(job)
            except AdmissionError as e:
                job.transition(JobState.REJECTED)
                log.info("job_rejected", job_id=job.job_id, reason=e.code)
                raise
            try:
                job.transition(JobState.RUNNING)
                log.info("job_started", job_id=job.job_id, language=job.request.language.value)
                result = await self._run_with_deadline(job)
            finally:
                self.pool.release()
            log.info("job_finished", job_id=job.job_id, state=job.state.value,
                     exit_code=result.exit_code, duration_s=result.duration_s)
            return result
        finally:
            self._jobs.pop(job.job_id, None)

    def cancel(self, job_id: str) -> bool:
        """Idempotent. False when the job is unknown or already terminal."""
        job = self._jobs.get(job_id)
        if job is None or job.state.terminal:
            return False
        job.cancel_requested = True
        waiter = self._waiting.get(job_id)
        if waiter is not None and not waiter.done():
            waiter.set_exception(JobCancelled(f"job {job_id} cancelled while queued"))
        elif job.sandbox is not None:
            job.sandbox.cancel()
        log.info("job_cancel_requested", job_id=job_id, state=job.state.value)
        return True

    def get(self, job_id: str) -> Optional[ExecutionJob]:
        return self._jobs.get(job_id)

    def stats(self) -> dict:
        return {"slots": self.pool.size, "in_use": self.pool.in_use, "queued": self.pool.queued}

    # ------------ admission ------------

    async def _admit(self, job: ExecutionJob) -> None:
        waiter = self.pool.reserve()
        if waiter is None:
            return
        log.info("job_queued", job_id=job.job_id, queued=self.pool.queued)
        self._waiting[job.job_id] = waiter
        try:
            await asyncio.wait_for(asyncio.shield(waiter), self.settings.max_queue_wait_s)
        except asyncio.TimeoutError:
            if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                return  # slot handed over as the wait expired
            self.pool.withdraw(waiter)
            raise QueueTimeout(f"no worker slot within {self.settings.max_queue_wait_s:g}s")
        except BaseException:
            self.pool.withdraw(waiter)
            raise
        finally:
            self._waiting.pop(job.job_id, None)

    # ------------ execution ------------

    def job_deadline(self, policy: LanguagePolicy) -> float:
        phases = [p for p in (policy.compile, policy.run) if p is not None]
        per_phase = self.settings.kill_grace_s + 2 * self.settings.reap_timeout_s + 1.0
        return sum(p.wall_timeout_s + per_phase for p in phases) + _JOB_SLACK_S

    async def _run_with_deadline(self, job: ExecutionJob) -> ExecutionResult:
        policy = self.settings.policy_for(job.request.language)
        deadline = self.job_deadline(policy)
        try:
            return await asyncio.wait_for(self._run_job(job, policy), deadline)
        except asyncio.TimeoutError:
            # per-phase deadlines should always fire first
            log.error("job_deadline_exceeded", job_id=job.job_id, deadline_s=deadline)
            if not job.state.terminal:
                job.transition(JobState.TIMED_OUT)
            return build_result(job, RawOutput(b"", b"", None, timed_out=True), deadline,
                                self.settings.max_output_bytes)
        except Exception:
            log.exception("job_internal_error", job_id=job.job_id)
            if not job.state.terminal:
                job.transition(JobState.INTERNAL_ERROR)
            return internal_error_result(job)

    async def _run_job(self, job: ExecutionJob, policy: LanguagePolicy) -> ExecutionResult:
        adapter = self.adapters[job.request.language]
        raw: Optional[RawOutput] = None
        state = JobState.INTERNAL_ERROR
        timeout_s: Optional[float] = None

        sandbox = Sandbox(
            job.job_id,
            Path(self.settings.jobs_dir),
            self.isolation,
            max_output_bytes=self.settings.max_output_bytes,
            kill_grace_s=self.settings.kill_grace_s,
            reap_timeout_s=self.settings.reap_timeout_s,
        )
        try:
            async with sandbox:
                job.sandbox = sandbox
                if job.cancel_requested:
                    sandbox.cancel()
                target = adapter.prepare(sandbox, job.request.source)
                try:
                    target = await adapter.compile(sandbox, target)
                except CompileError as e:
                    raw = e.output
                    if raw.timed_out:
                        state = JobState.TIMED_OUT
                        timeout_s = (policy.compile or policy.run).wall_timeout_s
                    elif raw.cancelled:
                        state = JobState.KILLED
                    else:
                        state = JobState.COMPILE_FAILED
                else:
                    job.execute_entered = True
                    raw = await adapter.execute(sandbox, target, job.request.stdin, policy.run)
                    timeout_s = policy.run.wall_timeout_s
                    if raw.timed_out:
                        state = JobState.TIMED_OUT
                    elif raw.killed:
                        state = JobState.KILLED
                    else:
                        state = JobState.COMPLETED
        except SandboxError as e:
            # setup or reclaim failure: possibly leaked resources, never user-facing detail
            log.error("sandbox_failure", job_id=job.job_id, error=str(e), exc_info=True)
            job.transition(JobState.INTERNAL_ERROR)
            return internal_error_result(job)

        job.transition(state)
        if raw is None:
            return internal_error_result(job)
        return build_result(job, raw, timeout_s, self.settings.max_output_bytes)
