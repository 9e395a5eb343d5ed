#!/usr/bin/env python3
"""Tests for common.py - process runner and log buffer.

Tests verify:
1. run_process streams stdout/stderr lines as they arrive
2. Exit codes outside ok_codes raise ProcessExitError
3. Missing executables raise ProcessSpawnError
4. LogBuffer sequence numbers and since() queries
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from common import (
    DRIVER,
    STDERR,
    STDOUT,
    ActionResult,
    LogBuffer,
    ProcessExitError,
    ProcessSpawnError,
    run_process,
)


def _python(code: str) -> list[str]:
    return ['-c', code]


class TestRunProcess:
    """Test run_process."""

    def test_captures_stdout(self):
        result = asyncio.run(run_process(sys.executable, _python("print('hello')")))
        assert result.exit_code == 0
        assert result.stdout == 'hello\n'

    def test_streams_tagged_lines(self):
        seen = []
        code = "import sys; print('out1'); print('err1', file=sys.stderr); print('out2')"
        asyncio.run(run_process(
            sys.executable, _python(code),
            on_output=lambda stream, text: seen.append((stream, text)),
        ))
        assert [t for s, t in seen if s == STDOUT] == ['out1', 'out2']
        assert [t for s, t in seen if s == STDERR] == ['err1']

    def test_respects_cwd(self, tmp_path):
        result = asyncio.run(run_process(
            sys.executable, _python("import os; print(os.getcwd())"), cwd=tmp_path))
        assert Path(result.stdout.strip()).resolve() == tmp_path.resolve()

    def test_passes_env(self):
        result = asyncio.run(run_process(
            sys.executable, _python("import os; print(os.environ['DRIVER_TEST'])"),
            env={'DRIVER_TEST': 'value'},
        ))
        assert result.stdout.strip() == 'value'

    def test_nonzero_exit_raises(self):
        code = "import sys; print('boom', file=sys.stderr); sys.exit(3)"
        with pytest.raises(ProcessExitError) as exc_info:
            asyncio.run(run_process(sys.executable, _python(code)))
        assert exc_info.value.code == 3
        assert 'boom' in exc_info.value.stderr

    def test_ok_codes_accept_nonzero(self):
        result = asyncio.run(run_process(
            sys.executable, _python("import sys; sys.exit(2)"), ok_codes=(0, 2)))
        assert result.exit_code == 2

    def test_missing_executable_raises_spawn_error(self, tmp_path):
        with pytest.raises(ProcessSpawnError) as exc_info:
            asyncio.run(run_process(str(tmp_path / 'no-such-tool'), ['version']))
        assert 'no-such-tool' in str(exc_info.value)

    def test_long_lines_are_not_truncated(self):
        result = asyncio.run(run_process(sys.executable, _python("print('x' * 200000)")))
        assert len(result.stdout.strip()) == 200000


class TestLogBuffer:
    """Test LogBuffer."""

    def test_sequence_starts_at_one(self):
        buf = LogBuffer()
        first = buf.append('a')
        second = buf.append('b', STDOUT)
        assert (first.seq, second.seq) == (1, 2)
        assert first.stream == DRIVER
        assert buf.last_seq == 2

    def test_since_returns_newer_lines(self):
        buf = LogBuffer(['a', 'b', 'c'])
        assert [line.text for line in buf.since(0)] == ['a', 'b', 'c']
        assert [line.text for line in buf.since(1)] == ['b', 'c']
        assert buf.since(3) == []
        assert buf.since(10) == []

    def test_listener_receives_lines(self):
        buf = LogBuffer()
        seen = []
        buf.add_listener(seen.append)
        buf.append('hello')
        assert [line.text for line in seen] == ['hello']

    def test_failing_listener_does_not_break_append(self):
        buf = LogBuffer()

        def broken(_line):
            raise RuntimeError("listener bug")

        buf.add_listener(broken)
        buf.append('still recorded')
        assert buf.texts() == ['still recorded']

    def test_to_dict(self):
        line = LogBuffer().append('x', STDERR)
        d = line.to_dict()
        assert d['seq'] == 1
        assert d['stream'] == 'stderr'
        assert d['text'] == 'x'
        assert 'timestamp' in d


class TestActionResult:
    """Test ActionResult defaults."""

    def test_mutable_context_updates(self):
        first = ActionResult(success=True)
        second = ActionResult(success=True)
        first.context_updates['key'] = 'value'
        assert second.context_updates == {}
