"""
Result collection: bounded, concurrent capture of a child's output streams
and assembly of the caller-facing ``ExecutionResult``.
"""

from __future__ import annotations

import asyncio
import codecs
import signal
from typing import Optional, Tuple

import structlog

from ..core.models import ExecutionJob, ExecutionResult, JobState, RawOutput

log = structlog.get_logger(__name__)

CHUNK = 64 * 1024

# Appended to stderr when a deadline kills the job. Occurrences in user
# output are defused (see _decode) so the marker only ever comes from us.
TIMEOUT_MARKER = "[coderun] TIMEOUT"
_DEFUSED = "[coderun]\u200b TIMEOUT"

INTERNAL_ERROR_MESSAGE = "[coderun] internal error: execution environment failure"


class BoundedBuffer:
    """Keeps the first `cap` bytes fed to it and counts the rest."""

    def __init__(self, cap: int):
        self.cap = cap
        self._buf = bytearray()
        self.dropped = 0

    def feed(self, chunk: bytes) -> None:
        room = self.cap - len(self._buf)
        if room > 0:
            self._buf += chunk[:room]
        self.dropped += max(0, len(chunk) - max(room, 0))

    @property
    def truncated(self) -> bool:
        return self.dropped > 0

    def getvalue(self) -> bytes:
        return bytes(self._buf)


async def pump(stream: Optional[asyncio.StreamReader], buf: BoundedBuffer) -> None:
    """Drain `stream` to EOF. Past the cap bytes are discarded, never left in the pipe."""
    if stream is None:
        return
    while True:
        chunk = await stream.read(CHUNK)
        if not chunk:
            return
        buf.feed(chunk)


async def feed_stdin(writer: Optional[asyncio.StreamWriter], data: bytes) -> None:
    if writer is None:
        return
    try:
        if data:
            writer.write(data)
            await writer.drain()
    except (BrokenPipeError, ConnectionResetError):
        # child exited or closed stdin without reading everything
        log.debug("stdin_closed_early", pending=len(data))
    finally:
        writer.close()


def _decode(data: bytes, truncated: bool = False) -> str:
    if truncated:
        # a cut mid-character leaves a partial sequence at the end; drop it
        text = codecs.getincrementaldecoder("utf-8")(errors="replace").decode(data, final=False)
    else:
        text = data.decode("utf-8", errors="replace")
    return text.replace(TIMEOUT_MARKER, _DEFUSED)


def _fit(text: str, limit: Optional[int]) -> Tuple[str, bool]:
    """Cut `text` to at most `limit` UTF-8 bytes on a character boundary."""
    if limit is None:
        return text, False
    data = text.encode("utf-8")
    if len(data) <= limit:
        return text, False
    return data[:max(limit, 0)].decode("utf-8", errors="ignore"), True


def _signame(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"signal {signum}"


def _timeout_note(timeout_s: Optional[float]) -> str:
    if timeout_s is None:
        return f"\n{TIMEOUT_MARKER}: execution exceeded its time limit\n"
    return f"\n{TIMEOUT_MARKER}: execution exceeded {timeout_s:g}s limit\n"


def build_result(
    job: ExecutionJob,
    raw: RawOutput,
    timeout_s: Optional[float] = None,
    max_bytes: Optional[int] = None,
) -> ExecutionResult:
    """
    Map a terminal job and its final process output to the boundary result.

    With `max_bytes` set, each decoded stream stays within that many UTF-8
    bytes. Status notes appended to stderr (timeout marker, signal) count
    against the cap: user stderr is cut to leave room for them.
    """
    timed_out = job.state is JobState.TIMED_OUT
    killed = job.state is JobState.KILLED or (raw.killed and not timed_out)
    note = ""
    if timed_out:
        note = _timeout_note(timeout_s)
    elif raw.cancelled:
        note = "\n[coderun] execution cancelled\n"
    elif raw.signal is not None:
        note = f"\n[coderun] process terminated by {_signame(raw.signal)}\n"

    stdout, out_cut = _fit(_decode(raw.stdout, raw.stdout_truncated), max_bytes)
    room = None if max_bytes is None else max_bytes - len(note.encode("utf-8"))
    stderr, err_cut = _fit(_decode(raw.stderr, raw.stderr_truncated), room)
    stderr += note

    exit_code = raw.returncode
    if timed_out or killed or (exit_code is not None and exit_code < 0):
        exit_code = None

    return ExecutionResult(
        stdout=stdout,
        stderr=stderr,
        exit_code=exit_code,
        timed_out=timed_out,
        truncated=raw.truncated or out_cut or err_cut,
        killed=killed,
        status=job.state,
        duration_s=round(job.duration_s, 4),
        job_id=job.job_id,
    )


def internal_error_result(job: ExecutionJob) -> ExecutionResult:
    return ExecutionResult(
        stdout="",
        stderr=INTERNAL_ERROR_MESSAGE,
        exit_code=None,
        status=JobState.INTERNAL_ERROR,
        duration_s=round(job.duration_s, 4),
        job_id=job.job_id,
    )
