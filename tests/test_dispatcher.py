"""End-to-end tests through the Dispatcher with real interpreters and compilers."""

from __future__ import annotations

import asyncio
import time

import pytest

from conftest import requires_gxx, requires_node, wait_until
from coderun.core.errors import SourceTooLarge, StdinTooLarge, UnsupportedLanguage
from coderun.core.models import JobState
from coderun.executor.collector import TIMEOUT_MARKER
from coderun.runner.cpp_runner import CppAdapter
from coderun.services.dispatcher import Dispatcher
from coderun.settings import LanguagePolicy, Limits


class TestPython:
    async def test_hello(self, dispatcher: Dispatcher) -> None:
        res = await dispatcher.run("python", 'print("ok")')
        assert res.stdout == "ok\n"
        assert res.stderr == ""
        assert res.exit_code == 0
        assert res.status is JobState.COMPLETED
        assert res.success
        assert res.job_id

    async def test_runtime_error_is_a_result(self, dispatcher: Dispatcher) -> None:
        res = await dispatcher.run("python", "raise ValueError('nope')")
        assert res.exit_code == 1
        assert res.status is JobState.COMPLETED
        assert "Traceback" in res.stderr
        assert "ValueError: nope" in res.stderr

    async def test_stdin_round_trip(self, dispatcher: Dispatcher) -> None:
        code = "import sys\nfor line in sys.stdin: print(int(line) * 2)"
        res = await dispatcher.run("python", code, "1\n2\n3\n")
        assert res.stdout == "2\n4\n6\n"

    async def test_identical_runs_give_identical_output(self, dispatcher: Dispatcher) -> None:
        code = "print(sum(i * i for i in range(1000)))"
        first = await dispatcher.run("python", code)
        second = await dispatcher.run("python", code)
        assert first.stdout == second.stdout == "332833500\n"

    async def test_timeout(self, make_settings) -> None:
        settings = make_settings(python=LanguagePolicy(run=Limits(wall_timeout_s=1.0)))
        dispatcher = Dispatcher(settings)
        code = "import time\nprint('started', flush=True)\nwhile True: time.sleep(0.1)"

        start = time.monotonic()
        res = await dispatcher.run("python", code)
        elapsed = time.monotonic() - start

        assert res.timed_out
        assert res.status is JobState.TIMED_OUT
        assert res.exit_code is None
        assert res.stdout == "started\n"
        assert TIMEOUT_MARKER in res.stderr
        assert elapsed < 1.0 + settings.kill_grace_s + 2.0

    async def test_output_is_truncated_at_cap(self, dispatcher: Dispatcher, settings) -> None:
        res = await dispatcher.run("python", "print('y' * 100000)")
        assert res.truncated
        assert len(res.stdout.encode()) == settings.max_output_bytes
        assert res.status is JobState.COMPLETED

    async def test_signal_death_is_killed(self, dispatcher: Dispatcher) -> None:
        res = await dispatcher.run("python", "import os, signal\nos.kill(os.getpid(), signal.SIGKILL)")
        assert res.killed
        assert res.status is JobState.KILLED
        assert res.exit_code is None
        assert "SIGKILL" in res.stderr

    async def test_scratch_is_empty_afterwards(self, dispatcher: Dispatcher, settings) -> None:
        await dispatcher.run("python", "open('leftover.txt', 'w').write('x')")
        assert list(settings.jobs_dir.iterdir()) == []


class TestValidation:
    async def test_unsupported_language(self, dispatcher: Dispatcher) -> None:
        with pytest.raises(UnsupportedLanguage):
            await dispatcher.run("cobol", "DISPLAY 'HI'.")

    async def test_source_too_large(self, dispatcher: Dispatcher, settings) -> None:
        with pytest.raises(SourceTooLarge):
            await dispatcher.run("python", "#" * (settings.max_source_bytes + 1))

    async def test_source_size_counts_bytes(self, dispatcher: Dispatcher, settings) -> None:
        """Multi-byte characters count by their UTF-8 length."""
        with pytest.raises(SourceTooLarge):
            dispatcher.validate("python", "é" * (settings.max_source_bytes // 2 + 1))

    async def test_stdin_too_large(self, dispatcher: Dispatcher, settings) -> None:
        with pytest.raises(StdinTooLarge):
            await dispatcher.run("python", "pass", "x" * (settings.max_stdin_bytes + 1))

    async def test_rejection_allocates_nothing(self, dispatcher: Dispatcher, settings) -> None:
        with pytest.raises(UnsupportedLanguage):
            dispatcher.submit("brainfuck", "+")
        assert dispatcher.scheduler.pool.in_use == 0
        assert not settings.jobs_dir.exists() or list(settings.jobs_dir.iterdir()) == []


class TestCancel:
    async def test_cancel_running_job(self, dispatcher: Dispatcher) -> None:
        job = dispatcher.submit("python", "import time\nprint('up', flush=True)\ntime.sleep(30)")
        task = asyncio.create_task(dispatcher.result(job))
        await wait_until(lambda: job.sandbox is not None and job.sandbox.pgid is not None)

        assert dispatcher.cancel(job.job_id)
        res = await task
        assert res.status is JobState.KILLED
        assert res.killed
        assert not res.timed_out
        assert not dispatcher.cancel(job.job_id)


@requires_gxx
class TestCpp:
    async def test_hello(self, dispatcher: Dispatcher) -> None:
        code = '#include <iostream>\nint main() { std::cout << "hi" << std::endl; return 0; }\n'
        res = await dispatcher.run("cpp", code)
        assert res.stdout == "hi\n"
        assert res.exit_code == 0
        assert res.status is JobState.COMPLETED

    async def test_reads_stdin(self, dispatcher: Dispatcher) -> None:
        code = "#include <cstdio>\nint main() { int a, b; scanf(\"%d %d\", &a, &b); printf(\"%d\\n\", a + b); }\n"
        res = await dispatcher.run("cpp", code, "2 40\n")
        assert res.stdout == "42\n"

    async def test_compile_error_never_executes(self, dispatcher: Dispatcher, monkeypatch) -> None:
        calls = []

        async def spy(self, *args, **kwargs):
            calls.append(args)
            raise AssertionError("execute must not run after a failed compile")

        monkeypatch.setattr(CppAdapter, "execute", spy)
        job = dispatcher.submit("cpp", "int main() { return }\n")
        res = await dispatcher.result(job)

        assert res.status is JobState.COMPILE_FAILED
        assert res.stderr.strip()
        assert res.stdout == ""
        assert not job.execute_entered
        assert calls == []

    async def test_warning_fails_compile(self, make_settings) -> None:
        settings = make_settings(cxx_flags=["-std=c++17", "-Wall"])
        res = await Dispatcher(settings).run("cpp", "int main() { int unused; return 0; }\n")
        assert res.status is JobState.COMPILE_FAILED
        assert "unused" in res.stderr

    async def test_warnings_tolerated_when_configured(self, make_settings) -> None:
        settings = make_settings(cxx_flags=["-std=c++17", "-Wall"], cpp_fail_on_warnings=False)
        res = await Dispatcher(settings).run("cpp", "int main() { int unused; return 0; }\n")
        assert res.status is JobState.COMPLETED

    async def test_abort_is_killed(self, dispatcher: Dispatcher) -> None:
        code = "#include <cstdlib>\nint main() { std::abort(); }\n"
        res = await dispatcher.run("cpp", code)
        assert res.killed
        assert res.status is JobState.KILLED
        assert "SIGABRT" in res.stderr


@requires_node
class TestJavaScript:
    async def test_hello(self, dispatcher: Dispatcher) -> None:
        res = await dispatcher.run("javascript", "console.log('hello')")
        assert res.stdout == "hello\n"
        assert res.status is JobState.COMPLETED

    async def test_uncaught_error(self, dispatcher: Dispatcher) -> None:
        res = await dispatcher.run("javascript", "throw new Error('bad')")
        assert res.exit_code == 1
        assert "Error: bad" in res.stderr

    async def test_stdin(self, dispatcher: Dispatcher) -> None:
        code = "const d = require('fs').readFileSync(0, 'utf8'); console.log(d.trim().split(' ').reverse().join(' '))"
        res = await dispatcher.run("javascript", code, "a b c")
        assert res.stdout == "c b a\n"
