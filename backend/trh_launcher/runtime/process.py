"""
Subprocess execution for the container runtime.

Provides:
- A registry of in-flight subprocesses so shutdown can terminate them all
- The process-wide log sink that receives every raw output line
- run_command() for captured invocations
- stream_command() for line-by-line streamed invocations
"""

import asyncio
import inspect
import logging
import os
import re
from typing import Any, Awaitable, Callable

from trh_launcher.core.exceptions import TransientInfraError
from trh_launcher.runtime.docker import CREATION_FLAGS
from trh_launcher.runtime.models import CommandResult

logger = logging.getLogger(__name__)

LogSink = Callable[[str], None]
LineCallback = Callable[[str], Awaitable[None] | None]

# Per-operation buffer between the pipe reader and the line callback
STREAM_QUEUE_SIZE = 256

READ_CHUNK_SIZE = 8192
# Longer lines (e.g. \r-less progress bars) are split into pieces of this size
MAX_LINE_LENGTH = 4096
LINE_SEPARATORS = re.compile(rb"[\r\n]")

_EOF = object()

_log_sink: LogSink | None = None


def set_log_sink(sink: LogSink | None) -> None:
    """Register (or clear with None) the process-wide log sink"""
    global _log_sink
    _log_sink = sink


def emit_log_line(line: str) -> None:
    """Forward one raw output line to the log sink, if one is registered"""
    sink = _log_sink
    if sink is None:
        return
    try:
        sink(line)
    except Exception as e:
        logger.warning(f"Log sink rejected line: {e}")


async def maybe_await(result: Any) -> None:
    """Await callback results that are awaitable, ignore plain values"""
    if inspect.isawaitable(result):
        await result


class ProcessRegistry:
    """
    Tracks in-flight subprocesses.

    The registry exists solely so that a shutdown request can terminate
    every running subprocess (graceful signal first, kill after a grace period).
    """

    def __init__(self):
        self._processes: set[asyncio.subprocess.Process] = set()

    def register(self, process: asyncio.subprocess.Process) -> None:
        self._processes.add(process)

    def unregister(self, process: asyncio.subprocess.Process) -> None:
        self._processes.discard(process)

    @property
    def active(self) -> list[asyncio.subprocess.Process]:
        return [p for p in self._processes if p.returncode is None]

    async def terminate_all(self, grace_period: float = 5.0) -> int:
        """
        Terminate every in-flight subprocess.

        Args:
            grace_period: Seconds to wait after SIGTERM before SIGKILL

        Returns:
            Number of processes that were still running
        """
        processes = self.active
        if not processes:
            return 0

        logger.info(f"Terminating {len(processes)} in-flight subprocess(es)")
        await asyncio.gather(
            *(terminate_process(p, grace_period) for p in processes),
            return_exceptions=True,
        )
        self._processes.clear()
        return len(processes)


_registry = ProcessRegistry()


def get_process_registry() -> ProcessRegistry:
    """Get the shared process registry (singleton)"""
    return _registry


async def terminate_process(process: asyncio.subprocess.Process, grace_period: float = 5.0) -> None:
    """Send SIGTERM, then SIGKILL if the process outlives the grace period"""
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return

    try:
        await asyncio.wait_for(process.wait(), timeout=grace_period)
    except asyncio.TimeoutError:
        logger.warning(f"Process {process.pid} ignored SIGTERM, killing")
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()


async def _reap(process: asyncio.subprocess.Process) -> None:
    """Terminate a still-running process and drop it from the registry"""
    try:
        if process.returncode is None:
            await asyncio.shield(terminate_process(process))
    finally:
        _registry.unregister(process)


def _decode(data: bytes | None) -> str:
    if not data:
        return ""
    return data.decode("utf-8", errors="replace")


async def iter_lines(stream: asyncio.StreamReader):
    """
    Yield raw lines from a pipe, splitting on both \\n and \\r.

    Unlike StreamReader.readline() there is no line length limit; an
    over-long line is yielded in MAX_LINE_LENGTH pieces.
    """
    buffer = b""
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        buffer += chunk
        *lines, buffer = LINE_SEPARATORS.split(buffer)
        for line in lines:
            yield line
        while len(buffer) > MAX_LINE_LENGTH:
            yield buffer[:MAX_LINE_LENGTH]
            buffer = buffer[MAX_LINE_LENGTH:]
    if buffer:
        yield buffer


async def _spawn(
    args: list[str], env: dict[str, str] | None, merge_stderr: bool
) -> asyncio.subprocess.Process:
    process = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT if merge_stderr else asyncio.subprocess.PIPE,
        env=env if env is not None else os.environ.copy(),
        creationflags=CREATION_FLAGS,
    )
    _registry.register(process)
    return process


async def run_command(
    args: list[str],
    timeout: float,
    env: dict[str, str] | None = None,
    log_output: bool = True,
) -> CommandResult:
    """
    Run a short command and capture its output.

    Output lines (stdout, then stderr) are forwarded to the log sink once the
    command exits, unless log_output is False. Long-running commands whose
    output should reach the sink live go through stream_command().

    Raises:
        TransientInfraError: If the command outlives the timeout
        OSError: If the executable cannot be started (FileNotFoundError etc.)
    """
    logger.debug(f"Running: {' '.join(args)}")
    process = await _spawn(args, env, merge_stderr=False)
    try:
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await terminate_process(process)
            raise TransientInfraError(
                f"Command timed out after {timeout:.0f}s: {' '.join(args[1:3])}"
            )
    finally:
        # A cancelled caller must not leave the child running
        await _reap(process)

    result = CommandResult(
        args=list(args),
        returncode=process.returncode,
        stdout=_decode(stdout),
        stderr=_decode(stderr),
    )
    if log_output:
        for line in result.stdout.splitlines() + result.stderr.splitlines():
            if line.strip():
                emit_log_line(line.rstrip())
    return result


async def stream_command(
    args: list[str],
    on_line: LineCallback | None,
    timeout: float,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """
    Run a command, delivering merged stdout/stderr line by line.

    The pipe reader pushes lines into a bounded queue and never waits on the
    callback; when the queue is full the line still reaches the log sink but
    its callback delivery is dropped. Lines are delivered in stream order.

    Raises:
        TransientInfraError: If the command outlives the timeout or its output
            cannot be read (the process is terminated in both cases)
        OSError: If the executable cannot be started
    """
    logger.debug(f"Streaming: {' '.join(args)}")
    process = await _spawn(args, env, merge_stderr=True)
    queue: asyncio.Queue = asyncio.Queue(maxsize=STREAM_QUEUE_SIZE)
    collected: list[str] = []
    dropped = 0

    async def produce() -> None:
        nonlocal dropped
        assert process.stdout is not None
        async for raw in iter_lines(process.stdout):
            line = _decode(raw).rstrip()
            if not line.strip():
                continue
            collected.append(line)
            emit_log_line(line)
            try:
                queue.put_nowait(line)
            except asyncio.QueueFull:
                dropped += 1

    async def consume() -> None:
        while True:
            item = await queue.get()
            if item is _EOF:
                return
            if on_line is not None:
                try:
                    await maybe_await(on_line(item))
                except Exception as e:
                    logger.warning(f"Progress callback failed: {e}")

    consumer = asyncio.create_task(consume())
    try:
        try:
            await asyncio.wait_for(asyncio.gather(produce(), process.wait()), timeout=timeout)
        except asyncio.TimeoutError:
            consumer.cancel()
            await terminate_process(process)
            raise TransientInfraError(
                f"Command timed out after {timeout:.0f}s: {' '.join(args[1:3])}"
            )
        except (OSError, ValueError) as e:
            consumer.cancel()
            await terminate_process(process)
            raise TransientInfraError(
                f"Could not read output of {' '.join(args[1:3])}: {e}"
            )
        await queue.put(_EOF)
        await consumer
    finally:
        if not consumer.done():
            consumer.cancel()
        await _reap(process)

    if dropped:
        logger.debug(f"Dropped {dropped} progress line(s) for a slow consumer")

    return CommandResult(
        args=list(args),
        returncode=process.returncode,
        stdout="\n".join(collected),
    )
