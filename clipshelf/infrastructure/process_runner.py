"""Async lifecycle wrapper for external tools (ffmpeg, ffprobe, yt-dlp).

Every pipeline stage goes through `ProcessRunner`: it spawns the executable,
feeds stdout and stderr line by line to the caller's parsers, and turns the
exit status into either a `ProcessResult` or one of the `ProcessError`
subclasses. Cancellation (explicit via `ProcessHandle.cancel()` or implicit via
asyncio task cancellation) always terminates the child: SIGTERM first, SIGKILL
after `terminate_timeout` seconds.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Deque, List, Optional, Sequence, Union
from clipshelf.domain.errors import ProcessCancelled, ProcessFailure, ProcessSpawnError

logger = logging.getLogger(__name__)

LineCallback = Callable[[str], None]

# yt-dlp --dump-json prints a single JSON line that easily exceeds asyncio's 64 KiB default
STREAM_LIMIT = 16 * 1024 * 1024
STDERR_TAIL_LINES = 200


@dataclass
class ProcessResult:
    exit_code: int
    stderr: str = ""


class ProcessHandle:
    """A running child process with its output pumps."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        executable: str,
        on_stdout: Optional[LineCallback] = None,
        on_stderr: Optional[LineCallback] = None,
        terminate_timeout: float = 3.0,
    ):
        self._process = process
        self.executable = executable
        self.name = Path(executable).name
        self._terminate_timeout = terminate_timeout
        self._stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._cancelled = False
        self._loop = asyncio.get_running_loop()
        self._kill_timer: Optional[asyncio.TimerHandle] = None
        self._pumps: List[asyncio.Future] = [
            asyncio.ensure_future(self._pump(process.stdout, on_stdout)),
            asyncio.ensure_future(self._pump(process.stderr, on_stderr, self._stderr_tail)),
        ]

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def stderr(self) -> str:
        return "\n".join(self._stderr_tail)

    async def _pump(self, stream: Optional[asyncio.StreamReader], callback: Optional[LineCallback], tail: Optional[Deque[str]] = None):
        if stream is None:
            return
        while True:
            raw = await stream.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if tail is not None:
                tail.append(line)
            if callback is not None:
                callback(line)

    def cancel(self):
        """Requests termination; `wait()` then raises ProcessCancelled."""
        if self._cancelled:
            return
        self._cancelled = True
        if self._process.returncode is None:
            logger.info(f"PROCESS_CANCEL: {self.name} pid={self.pid}")
            self._signal_terminate()

    def _signal_terminate(self):
        try:
            self._process.terminate()
        except ProcessLookupError:
            return
        self._kill_timer = self._loop.call_later(self._terminate_timeout, self._kill)

    def _kill(self):
        if self._process.returncode is None:
            logger.warning(f"PROCESS_KILL: {self.name} pid={self.pid} (no exit after {self._terminate_timeout}s)")
            try:
                self._process.kill()
            except ProcessLookupError:
                pass

    async def _shutdown(self):
        for pump in self._pumps:
            pump.cancel()
        if self._process.returncode is not None:
            return
        try:
            self._process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(self._process.wait(), timeout=self._terminate_timeout)
        except asyncio.TimeoutError:
            try:
                self._process.kill()
            except ProcessLookupError:
                pass
            await self._process.wait()

    async def wait(self) -> ProcessResult:
        try:
            await asyncio.gather(*self._pumps)
            exit_code = await self._process.wait()
        except asyncio.CancelledError:
            logger.info(f"PROCESS_INTERRUPTED: {self.name} pid={self.pid} (task cancelled)")
            self._cancelled = True
            await self._shutdown()
            raise
        except Exception:
            await self._shutdown()
            raise
        finally:
            if self._kill_timer is not None:
                self._kill_timer.cancel()

        if self._cancelled:
            raise ProcessCancelled(f"{self.name} (pid {self.pid}) was cancelled")
        if exit_code != 0:
            raise ProcessFailure(exit_code, self.stderr, executable=self.name)
        return ProcessResult(exit_code=exit_code, stderr=self.stderr)


class ProcessRunner:
    """Spawns external executables as cancellable, line-streaming handles."""

    def __init__(self, terminate_timeout: float = 3.0, stream_limit: int = STREAM_LIMIT):
        self.terminate_timeout = terminate_timeout
        self.stream_limit = stream_limit

    async def start(
        self,
        executable: Union[str, Path],
        args: Sequence[Union[str, Path, int, float]],
        on_stdout: Optional[LineCallback] = None,
        on_stderr: Optional[LineCallback] = None,
    ) -> ProcessHandle:
        cmd = [str(executable), *(str(a) for a in args)]
        logger.debug(f"PROCESS_CMD: {' '.join(cmd)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self.stream_limit,
            )
        except OSError as e:
            raise ProcessSpawnError(str(executable), e.strerror or str(e)) from e

        return ProcessHandle(
            process,
            str(executable),
            on_stdout=on_stdout,
            on_stderr=on_stderr,
            terminate_timeout=self.terminate_timeout,
        )

    async def run(
        self,
        executable: Union[str, Path],
        args: Sequence[Union[str, Path, int, float]],
        on_stdout: Optional[LineCallback] = None,
        on_stderr: Optional[LineCallback] = None,
    ) -> ProcessResult:
        handle = await self.start(executable, args, on_stdout=on_stdout, on_stderr=on_stderr)
        return await handle.wait()
