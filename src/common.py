"""Common utilities and types for tool orchestration.

Provides the process runner used for every tool invocation and the
append-only log buffer each operation streams into.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)

# Streams tagged on every log line
STDOUT = 'stdout'
STDERR = 'stderr'
DRIVER = 'driver'

# asyncio's default 64 KiB line limit is too small for `show -json` output
STREAM_LIMIT = 16 * 1024 * 1024


class ProcessSpawnError(Exception):
    """The executable could not be started."""

    def __init__(self, executable: str, reason: str):
        self.executable = executable
        self.reason = reason
        super().__init__(f"Cannot start {executable}: {reason}")


class ProcessExitError(Exception):
    """The process exited with a code the caller did not accept."""

    def __init__(self, command: list[str], code: int, stderr: str = ''):
        self.command = command
        self.code = code
        self.stderr = stderr
        super().__init__(f"{' '.join(command)} failed with exit code {code}")


@dataclass
class ActionResult:
    """Result returned by an action."""
    success: bool
    message: str = ''
    duration: float = 0.0
    context_updates: dict = field(default_factory=dict)


@dataclass
class ProcessResult:
    """Captured outcome of one child process."""
    exit_code: int
    stdout: str = ''
    stderr: str = ''
    duration: float = 0.0


async def _pump(reader: asyncio.StreamReader, stream: str, sink: list[str],
                on_output: Optional[Callable[[str, str], None]]) -> None:
    while True:
        raw = await reader.readline()
        if not raw:
            return
        text = raw.decode('utf-8', errors='replace')
        sink.append(text)
        if on_output is not None:
            on_output(stream, text.rstrip('\r\n'))


async def run_process(
    executable: str,
    args: list[str],
    cwd: Optional[Path] = None,
    env: Optional[dict] = None,
    on_output: Optional[Callable[[str, str], None]] = None,
    ok_codes: tuple[int, ...] = (0,),
) -> ProcessResult:
    """Run one child process, streaming its output line by line.

    stdout and stderr are read concurrently; each line is handed to
    ``on_output(stream, text)`` as soon as it arrives.

    Raises:
        ProcessSpawnError: If the executable cannot be started
        ProcessExitError: If the exit code is not in ok_codes
    """
    cmd = [executable, *args]
    logger.debug(f"Running: {' '.join(cmd)}")
    start = time.time()
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd) if cwd is not None else None,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STREAM_LIMIT,
        )
    except OSError as e:
        raise ProcessSpawnError(executable, e.strerror or str(e)) from e

    out: list[str] = []
    err: list[str] = []
    await asyncio.gather(
        _pump(proc.stdout, STDOUT, out, on_output),
        _pump(proc.stderr, STDERR, err, on_output),
    )
    code = await proc.wait()
    result = ProcessResult(
        exit_code=code,
        stdout=''.join(out),
        stderr=''.join(err),
        duration=time.time() - start,
    )
    logger.debug(f"{cmd[0]} {args[0] if args else ''} exited {code} after {result.duration:.1f}s")
    if code not in ok_codes:
        raise ProcessExitError(cmd, code, result.stderr)
    return result


@dataclass(frozen=True)
class LogLine:
    """One line of operation output."""
    seq: int
    stream: str
    text: str
    timestamp: str

    def to_dict(self) -> dict:
        return {
            'seq': self.seq,
            'stream': self.stream,
            'text': self.text,
            'timestamp': self.timestamp,
        }


class LogBuffer:
    """Append-only, sequence-numbered log of one operation.

    Sequence numbers start at 1 and increase by one per line, so a reader
    that saw line N can ask for everything after it with since(N).
    """

    def __init__(self, lines: Optional[list[str]] = None):
        self._lines: list[LogLine] = []
        self._listeners: list[Callable[[LogLine], None]] = []
        for text in lines or []:
            self.append(text)

    def __len__(self) -> int:
        return len(self._lines)

    @property
    def last_seq(self) -> int:
        return self._lines[-1].seq if self._lines else 0

    def add_listener(self, listener: Callable[[LogLine], None]) -> None:
        self._listeners.append(listener)

    def append(self, text: str, stream: str = DRIVER) -> LogLine:
        line = LogLine(
            seq=self.last_seq + 1,
            stream=stream,
            text=text,
            timestamp=utc_now(),
        )
        self._lines.append(line)
        for listener in self._listeners:
            try:
                listener(line)
            except Exception as e:
                logger.error(f"Log listener failed: {e}")
        return line

    def since(self, seq: int = 0) -> list[LogLine]:
        """Return lines with a sequence number greater than seq."""
        if seq <= 0:
            return list(self._lines)
        # seq N lives at index N-1
        return self._lines[seq:]

    def texts(self) -> list[str]:
        return [line.text for line in self._lines]


def utc_now() -> str:
    """Current time as an ISO-8601 UTC string."""
    return datetime.now(timezone.utc).isoformat()
