from __future__ import annotations

from typing import Optional

import structlog

from ..core.errors import SourceTooLarge, StdinTooLarge, UnsupportedLanguage
from ..core.models import ExecutionJob, ExecutionRequest, ExecutionResult, Language
from ..settings import Settings, load_settings
from .scheduler import Scheduler

log = structlog.get_logger(__name__)


class Dispatcher:
    """
    The one entry point the surrounding application calls.

    Validation happens before anything is allocated. Past admission every
    outcome, compile errors and timeouts included, comes back as an
    ExecutionResult; only AdmissionError subclasses are raised.
    """

    def __init__(self, settings: Optional[Settings] = None, scheduler: Optional[Scheduler] = None):
        self.settings = settings or load_settings()
        self.scheduler = scheduler or Scheduler(self.settings)

    def validate(self, language: str, source: str, stdin: Optional[str] = None) -> ExecutionRequest:
        try:
            lang = Language(language)
        except ValueError:
            raise UnsupportedLanguage(str(language)) from None

        size = len(source.encode("utf-8"))
        if size > self.settings.max_source_bytes:
            raise SourceTooLarge(size, self.settings.max_source_bytes)

        stdin = stdin or ""
        stdin_size = len(stdin.encode("utf-8"))
        if stdin_size > self.settings.max_stdin_bytes:
            raise StdinTooLarge(stdin_size, self.settings.max_stdin_bytes)

        return ExecutionRequest(language=lang, source=source, stdin=stdin)

    def submit(self, language: str, source: str, stdin: Optional[str] = None) -> ExecutionJob:
        """Validate and create a job without waiting; pair with result()."""
        job = self.scheduler.submit(self.validate(language, source, stdin))
        log.debug("job_submitted", job_id=job.job_id, language=job.request.language.value)
        return job

    async def result(self, job: ExecutionJob) -> ExecutionResult:
        return await self.scheduler.execute(job)

    async def run(self, language: str, source: str, stdin: Optional[str] = None) -> ExecutionResult:
        return await self.result(self.submit(language, source, stdin))

    def cancel(self, job_id: str) -> bool:
        return self.scheduler.cancel(job_id)
