"""
Error taxonomy.

Only ``AdmissionError`` subclasses ever reach the caller of
``Dispatcher.run``; every other failure is folded into an ``ExecutionResult``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import RawOutput


class CoderunError(Exception):
    pass


class InvalidTransition(CoderunError):
    """A job was asked to move backwards or skip a state."""


# ---- admission (pre-execution, no sandbox allocated) ----

class AdmissionError(CoderunError):
    code = "admission_error"
    status = 400


class ValidationError(AdmissionError):
    code = "validation_error"


class UnsupportedLanguage(ValidationError):
    code = "unsupported_language"

    def __init__(self, language: str):
        super().__init__(f"unsupported language: {language!r}")
        self.language = language


class SourceTooLarge(ValidationError):
    code = "source_too_large"
    status = 413

    def __init__(self, size: int, limit: int):
        super().__init__(f"source is {size} bytes, limit is {limit}")
        self.size = size
        self.limit = limit


class StdinTooLarge(SourceTooLarge):
    code = "stdin_too_large"

    def __init__(self, size: int, limit: int):
        super().__init__(size, limit)
        self.args = (f"stdin is {size} bytes, limit is {limit}",)


class QueueFull(AdmissionError):
    code = "queue_full"
    status = 503


class QueueTimeout(AdmissionError):
    code = "queue_timeout"
    status = 503


class JobCancelled(AdmissionError):
    code = "cancelled"
    status = 409


# ---- execution ----

class CompileError(CoderunError):
    """Compiler rejected the source; carries the compiler's own output."""

    def __init__(self, output: "RawOutput"):
        super().__init__("compilation failed")
        self.output = output


class SandboxError(CoderunError):
    pass


class SandboxSetupError(SandboxError):
    pass


class ReclaimError(SandboxError):
    """Processes of a job survived forced termination, or scratch removal failed."""

    def __init__(self, message: str, pgid: Optional[int] = None):
        super().__init__(message)
        self.pgid = pgid
