from __future__ import annotations

from typing import TYPE_CHECKING, List

import structlog

from ..core.errors import CompileError
from ..core.models import Language, RawOutput
from ..settings import Limits
from .base import LanguageAdapter

if TYPE_CHECKING:
    from ..executor.sandbox import Sandbox

log = structlog.get_logger(__name__)


class CppAdapter(LanguageAdapter):
    """
    Two phases. The compiler runs under the policy's compile limits and
    deadline; any failure raises CompileError and execute() is never reached.
    """

    language = Language.CPP
    source_name = "main.cpp"
    binary_name = "program"

    def compile_command(self, source_file: str) -> List[str]:
        return [
            self.resolve(self.settings.cxx_bin),
            *self.settings.cxx_flags,
            source_file,
            "-o",
            self.binary_name,
        ]

    def _failed(self, raw: RawOutput) -> bool:
        if raw.timed_out or raw.cancelled or raw.returncode != 0:
            return True
        # warnings count as diagnostics unless configured otherwise
        return self.settings.cpp_fail_on_warnings and bool(raw.stderr.strip())

    async def compile(self, sandbox: Sandbox, source_file: str) -> str:
        limits = self.settings.cpp.compile or self.settings.cpp.run
        raw = await sandbox.run(self.compile_command(source_file), limits=limits)
        if self._failed(raw):
            log.info("compile_failed", job_id=sandbox.job_id, rc=raw.returncode, timed_out=raw.timed_out)
            raise CompileError(raw)
        return self.binary_name

    def command(self, target: str) -> List[str]:
        return [f"./{target}"]

    async def execute(self, sandbox: Sandbox, target: str, stdin: str, limits: Limits) -> RawOutput:
        try:
            return await super().execute(sandbox, target, stdin, limits)
        finally:
            sandbox.path(target).unlink(missing_ok=True)
