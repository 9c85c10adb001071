"""
ShellSession: the one long-lived privileged shell every root caller shares.
Jobs are serialized through a single worker thread, so output never interleaves.
"""
import asyncio
import logging
import subprocess
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import AsyncIterator, Callable, List, Optional, Sequence, Union

import pexpect
from pexpect import fdpexpect

from . import config
from .errors import BackendUnavailable, ShellIOError
from .models import JobResult, SessionState
from ..utils.shell_text import filter_output, is_blank, is_valid_output

logger = logging.getLogger("privbroker.shell")

# Printed on both streams after every job; the exit code follows on stdout.
END_UUID = str(uuid.uuid4())
END_CMD = f"__RET=$?;echo {END_UUID};echo {END_UUID} >&2;echo $__RET;unset __RET\n"

# Exit code reported when the code line is missing or garbled
NO_RESULT_CODE = 1

Commands = Union[str, Sequence[str]]

_END = object()


def _as_list(commands: Commands) -> List[str]:
    if isinstance(commands, str):
        commands = [commands]
    commands = [c for c in commands if c is not None]
    if not commands:
        raise ValueError("A job needs at least one command")
    return list(commands)


class _StreamReader:
    """Splits one shell stream into lines until the end marker shows up."""

    def __init__(self, spawn: fdpexpect.fdspawn, on_line: Optional[Callable[[str], None]] = None,
                 wants_exit_code: bool = False):
        self.spawn = spawn
        self.lines: List[str] = []
        self.exit_code: Optional[int] = None
        self.done = False
        self._on_line = on_line
        self._wants_exit_code = wants_exit_code
        self._saw_marker = False
        self._buffer = ""

    def pump(self, timeout: float) -> None:
        """Read what is available within timeout. pexpect.EOF propagates."""
        try:
            chunk = self.spawn.read_nonblocking(size=65536, timeout=timeout)
        except pexpect.TIMEOUT:
            return
        self._buffer += chunk
        while not self.done and "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            self._feed(line)

    def _feed(self, line: str) -> None:
        if self._saw_marker:
            try:
                self.exit_code = int(line.strip())
            except ValueError:
                self.exit_code = NO_RESULT_CODE
            self.done = True
            return

        if line.endswith(END_UUID):
            prefix = line[:-len(END_UUID)]
            if prefix:
                self._add(prefix)
            if self._wants_exit_code:
                self._saw_marker = True
            else:
                self.done = True
            return

        self._add(line)

    def _add(self, line: str) -> None:
        self.lines.append(line)
        if self._on_line is not None:
            self._on_line(line)


class ShellSession:
    """
    A lazily started privileged shell process.

    Lifecycle: UNINITIALIZED -> STARTING -> READY -> DEAD, and back to STARTING
    on the next job after a death. At most one OS process is live per session.
    """

    def __init__(
        self,
        command: Optional[Sequence[str]] = None,
        start_timeout: float = config.SHELL_START_TIMEOUT,
        job_timeout: Optional[float] = config.JOB_TIMEOUT,
    ):
        self._command = list(command or config.SHELL_COMMAND)
        self._start_timeout = start_timeout
        self._job_timeout = job_timeout
        self._process: Optional[subprocess.Popen] = None
        self._stdout: Optional[fdpexpect.fdspawn] = None
        self._stderr: Optional[fdpexpect.fdspawn] = None
        self._is_root: Optional[bool] = None
        self._state = SessionState.UNINITIALIZED
        # The single point of serialization: one worker, FIFO queue
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="shell-session")

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_alive(self) -> bool:
        process = self._process
        return self._state == SessionState.READY and process is not None and process.poll() is None

    # ============= Public async API =============

    async def is_root_available(self) -> bool:
        """True if the shell runs as uid 0. Starts the shell on first use."""
        if self.is_alive and self._is_root is not None:
            return self._is_root
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, self._root_check)
        except BackendUnavailable as e:
            logger.debug("Root check failed: %s", e)
            return False

    async def run(self, commands: Commands) -> JobResult:
        """
        Run commands as one job and wait for it without blocking the event loop.

        Raises:
            BackendUnavailable: the shell could not be started
            ShellIOError: the shell died while the job was running
        """
        commands = _as_list(commands)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self._exec_job, commands, None, None)

    async def stream(self, commands: Commands) -> AsyncIterator[str]:
        """
        Yield stdout lines of one job as they are produced.

        Closing the iterator early (aclose, cancellation) only stops delivery;
        the job drains in the background and the shell stays up.
        """
        commands = _as_list(commands)
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        cancelled = threading.Event()

        def on_line(line: str) -> None:
            if cancelled.is_set():
                return
            try:
                loop.call_soon_threadsafe(queue.put_nowait, line)
            except RuntimeError:
                # loop already closed
                cancelled.set()

        def on_done(fut: asyncio.Future) -> None:
            if not fut.cancelled():
                fut.exception()
            queue.put_nowait(_END)

        job = loop.run_in_executor(self._executor, self._exec_job, commands, on_line, cancelled)
        job.add_done_callback(on_done)
        try:
            while True:
                line = await queue.get()
                if line is _END:
                    break
                if not is_blank(line):
                    yield line
            await job
        finally:
            cancelled.set()

    async def fast_cmd(self, *commands: str) -> str:
        """Last non-blank stdout line of the job, or empty string."""
        result = await self.run(list(commands))
        return result.stdout[-1] if is_valid_output(result.stdout) else ""

    async def fast_cmd_result(self, *commands: str) -> bool:
        """Whether the job exits with 0."""
        result = await self.run(list(commands))
        return result.is_success

    async def close(self) -> None:
        """Stop the shell after queued jobs finish. The next job starts a new one."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._executor, self._close)

    # ============= Worker-thread side =============

    def _root_check(self) -> bool:
        self._ensure_ready()
        return bool(self._is_root)

    def _ensure_ready(self) -> None:
        if self._state == SessionState.READY:
            if self._process is not None and self._process.poll() is None:
                return
            logger.warning("Shell process exited (code %s), restarting",
                           self._process.returncode if self._process else None)
            self._mark_dead()
        self._start()

    def _start(self) -> None:
        self._state = SessionState.STARTING
        logger.debug("Starting shell: %s", " ".join(self._command))
        try:
            process = subprocess.Popen(
                self._command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            self._state = SessionState.DEAD
            raise BackendUnavailable(f"Cannot start {self._command[0]}: {e}") from e

        self._process = process
        self._stdout = fdpexpect.fdspawn(
            process.stdout, encoding="utf-8", codec_errors="replace",
            timeout=self._start_timeout, use_poll=True,
        )
        self._stderr = fdpexpect.fdspawn(
            process.stderr, encoding="utf-8", codec_errors="replace",
            timeout=self._start_timeout, use_poll=True,
        )

        try:
            self._is_root = self._shell_check()
        except pexpect.TIMEOUT as e:
            self._mark_dead()
            raise BackendUnavailable(
                f"{self._command[0]} did not answer within {self._start_timeout}s "
                f"(waiting for a root grant?)"
            ) from e
        except (pexpect.EOF, OSError) as e:
            self._mark_dead()
            raise BackendUnavailable(f"{self._command[0]} exited before it became a shell "
                                     f"(root denied or not a shell)") from e

        self._state = SessionState.READY
        logger.info("Shell ready: %s (root=%s)", " ".join(self._command), self._is_root)

    def _shell_check(self) -> bool:
        """Probe the fresh process: it must echo back, and `id` tells us if we are root."""
        self._write("echo SHELL_TEST\n")
        self._stdout.expect_exact("SHELL_TEST", timeout=self._start_timeout)
        self._stdout.expect("\n", timeout=self._start_timeout)
        self._write("id\n")
        self._stdout.expect("\n", timeout=self._start_timeout)
        return "uid=0" in self._stdout.before

    def _write(self, text: str) -> None:
        self._process.stdin.write(text.encode("utf-8"))
        self._process.stdin.flush()

    def _drain(self) -> None:
        """Throw away anything left over from before this job."""
        for spawn in (self._stdout, self._stderr):
            spawn.buffer = ""
            while True:
                try:
                    leftover = spawn.read_nonblocking(size=65536, timeout=0)
                except pexpect.TIMEOUT:
                    break
                logger.debug("Discarding stray shell output: %r", leftover[:200])

    def _exec_job(self, commands: List[str], on_line: Optional[Callable[[str], None]],
                  cancelled: Optional[threading.Event]) -> JobResult:
        self._ensure_ready()
        logger.debug("Job: %s", " ; ".join(commands)[:300])

        # the job gets its own stdin so nothing it reads can swallow the end marker
        script = "{\n" + "".join(f"{cmd}\n" for cmd in commands) + "} </dev/null\n" + END_CMD
        try:
            self._drain()
            self._write(script)
        except pexpect.EOF as e:
            self._mark_dead()
            raise ShellIOError("Shell closed its output before the job started") from e
        except OSError as e:
            self._mark_dead()
            raise ShellIOError(f"Shell closed its input: {e}") from e

        def emit(line: str) -> None:
            if on_line is not None and not (cancelled is not None and cancelled.is_set()):
                on_line(line)

        out = _StreamReader(self._stdout, emit, wants_exit_code=True)
        err = _StreamReader(self._stderr)
        deadline = time.monotonic() + self._job_timeout if self._job_timeout else None

        try:
            while not (out.done and err.done):
                if deadline is not None and time.monotonic() > deadline:
                    self._mark_dead()
                    raise ShellIOError(f"Job did not finish within {self._job_timeout}s")
                if not out.done:
                    out.pump(config.SHELL_POLL_INTERVAL)
                if not err.done:
                    err.pump(0 if not out.done else config.SHELL_POLL_INTERVAL)
        except pexpect.EOF as e:
            code = self._process.poll() if self._process else None
            self._mark_dead()
            raise ShellIOError(f"Shell process died during job (exit code {code})") from e

        return JobResult(
            exit_code=out.exit_code if out.exit_code is not None else NO_RESULT_CODE,
            stdout=filter_output(out.lines),
            stderr=filter_output(err.lines),
        )

    def _mark_dead(self) -> None:
        self._release()
        self._state = SessionState.DEAD

    def _close(self) -> None:
        self._release()
        self._state = SessionState.UNINITIALIZED

    def _release(self) -> None:
        process = self._process
        self._process = None
        self._stdout = None
        self._stderr = None
        self._is_root = None
        if process is None:
            return
        for stream in (process.stdin, process.stdout, process.stderr):
            try:
                stream.close()
            except OSError as e:
                logger.debug("Closing shell pipe: %s", e)
        if process.poll() is None:
            process.kill()
        process.wait()


_default_session: Optional[ShellSession] = None
_default_lock = threading.Lock()


def default_session() -> ShellSession:
    """The process-wide session, created on first call and shared by every root backend."""
    global _default_session
    with _default_lock:
        if _default_session is None:
            _default_session = ShellSession()
        return _default_session
