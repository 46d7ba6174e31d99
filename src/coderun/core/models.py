from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional

from .errors import InvalidTransition
from .utils import new_job_id

if TYPE_CHECKING:
    from ..executor.sandbox import Sandbox


class Language(str, Enum):
    PYTHON = "python"
    CPP = "cpp"
    JAVASCRIPT = "javascript"

    @property
    def compiled(self) -> bool:
        return self is Language.CPP


class JobState(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    COMPILE_FAILED = "COMPILE_FAILED"
    TIMED_OUT = "TIMED_OUT"
    KILLED = "KILLED"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    REJECTED = "REJECTED"

    @property
    def terminal(self) -> bool:
        return self not in (JobState.QUEUED, JobState.RUNNING)


_TRANSITIONS = {
    JobState.QUEUED: {JobState.RUNNING, JobState.REJECTED},
    JobState.RUNNING: {
        JobState.COMPLETED,
        JobState.COMPILE_FAILED,
        JobState.TIMED_OUT,
        JobState.KILLED,
        JobState.INTERNAL_ERROR,
    },
}


@dataclass(frozen=True)
class ExecutionRequest:
    language: Language
    source: str
    stdin: str = ""
    submitted_at: float = field(default_factory=time.time)


@dataclass
class ExecutionJob:
    """One request's lifecycle, Queued through a terminal state."""

    request: ExecutionRequest
    job_id: str = field(default_factory=new_job_id)
    state: JobState = JobState.QUEUED
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    cancel_requested: bool = False
    execute_entered: bool = False
    sandbox: Optional["Sandbox"] = field(default=None, repr=False)

    def transition(self, new: JobState) -> None:
        if new not in _TRANSITIONS.get(self.state, set()):
            raise InvalidTransition(f"{self.job_id}: {self.state.value} -> {new.value}")
        self.state = new
        if new is JobState.RUNNING:
            self.started_at = time.time()
        elif new.terminal:
            self.finished_at = time.time()
            self.sandbox = None

    @property
    def duration_s(self) -> float:
        if self.started_at is None:
            return 0.0
        return (self.finished_at or time.time()) - self.started_at


@dataclass
class RawOutput:
    """What one sandboxed process produced, before decoding."""

    stdout: bytes
    stderr: bytes
    returncode: Optional[int]
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    timed_out: bool = False
    cancelled: bool = False

    @property
    def signal(self) -> Optional[int]:
        if self.returncode is not None and self.returncode < 0:
            return -self.returncode
        return None

    @property
    def killed(self) -> bool:
        return self.cancelled or self.signal is not None

    @property
    def truncated(self) -> bool:
        return self.stdout_truncated or self.stderr_truncated


@dataclass(frozen=True)
class ExecutionResult:
    stdout: str
    stderr: str
    exit_code: Optional[int]
    timed_out: bool = False
    truncated: bool = False
    killed: bool = False
    status: JobState = JobState.COMPLETED
    duration_s: float = 0.0
    job_id: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status is JobState.COMPLETED and self.exit_code == 0
