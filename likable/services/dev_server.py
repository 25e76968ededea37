"""The dev server as a supervised background task.

The child process writes straight into a persistent log file, so the log
keeps growing even if this CLI exits and leaves the server running.  While
the supervisor is watching, a tail task follows that file and surfaces only
lines that look like real errors; routine bundler chatter stays in the log.
"""

from __future__ import annotations

import asyncio
import os
import signal
from pathlib import Path

from likable.services.handle import ServiceHandle, ServiceStatus
from likable.utils import print_error

ERROR_KEYWORDS: tuple[str, ...] = ("error", "eaddrinuse")
FATAL_MARKERS: tuple[str, ...] = ("eaddrinuse", "address already in use")


class DevServerError(RuntimeError):
    """Raised when the dev server cannot be spawned or dies while settling."""


def default_dev_command(port: int) -> list[str]:
    """``npm run dev`` pinned to *port*; ``--strictPort`` fails rather than drift."""
    return ["npm", "run", "dev", "--", "--port", str(port), "--strictPort"]


def is_error_line(line: str) -> bool:
    lowered = line.lower()
    return any(keyword in lowered for keyword in ERROR_KEYWORDS)


def is_fatal_line(line: str) -> bool:
    lowered = line.lower()
    return any(marker in lowered for marker in FATAL_MARKERS)


class DevServer:
    """One dev server process, its log sink and its watcher tasks.

    ``start`` returns once the settle delay has passed with the process still
    alive; there is no structured "ready" signal to wait for.  Setting the
    stop event (via ``stop``) is the cancellation token for the watchers.
    """

    def __init__(
        self,
        handle: ServiceHandle,
        command: list[str],
        log_path: str | Path,
        port: int,
        settle_seconds: float = 2.0,
        poll_interval: float = 0.25,
    ) -> None:
        self.handle = handle
        self.command = command
        self.log_path = Path(log_path)
        self.port = port
        self.settle_seconds = settle_seconds
        self.poll_interval = poll_interval
        self.process: asyncio.subprocess.Process | None = None
        self._stop_requested = asyncio.Event()
        self._failed = asyncio.Event()
        self._watch_task: asyncio.Task | None = None
        self._tail_task: asyncio.Task | None = None

    @property
    def url(self) -> str:
        return f"http://localhost:{self.port}"

    # -- Lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Spawn the server and wait out the settle delay.

        Raises:
            DevServerError: Spawning failed, or the process exited or logged a
                fatal marker before the settle delay ran out.
        """
        self.handle.transition(ServiceStatus.STARTING)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            with open(self.log_path, "wb") as log_sink:
                self.process = await asyncio.create_subprocess_exec(
                    *self.command,
                    cwd=str(self.handle.cwd),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=log_sink,
                    stderr=asyncio.subprocess.STDOUT,
                    start_new_session=os.name == "posix",
                )
        except OSError as exc:
            self.handle.transition(ServiceStatus.FAILED, str(exc))
            raise DevServerError(f"Could not start dev server: {exc}") from exc

        self.handle.pid = self.process.pid
        self._watch_task = asyncio.create_task(self._watch_exit())
        self._tail_task = asyncio.create_task(self._tail_log())

        try:
            await asyncio.wait_for(self._failed.wait(), timeout=self.settle_seconds)
        except asyncio.TimeoutError:
            pass

        if self.handle.status is ServiceStatus.STARTING:
            self.handle.transition(ServiceStatus.RUNNING)
            return

        await self.stop()
        raise DevServerError(
            f"Dev server failed to start: {self.handle.detail or self.handle.status.value}"
        )

    async def stop(self, grace_seconds: float = 1.0) -> None:
        """Terminate the server, escalating to SIGKILL after *grace_seconds*."""
        self._stop_requested.set()
        process = self.process
        if process is not None and process.returncode is None:
            self._send(signal.SIGTERM)
            try:
                await asyncio.wait_for(process.wait(), timeout=grace_seconds)
            except asyncio.TimeoutError:
                self._send(signal.SIGKILL)
                try:
                    await asyncio.wait_for(process.wait(), timeout=grace_seconds)
                except asyncio.TimeoutError:
                    pass

        await self._drain()
        if self.handle.is_active:
            self.handle.transition(ServiceStatus.STOPPED)

    def detach(self) -> int | None:
        """Stop watching and leave the process running on its own."""
        self._stop_requested.set()
        for task in (self._watch_task, self._tail_task):
            if task is not None and not task.done():
                task.cancel()
        pid = self.process.pid if self.process else None
        self.process = None
        return pid

    # -- Internals ---------------------------------------------------------

    def _send(self, sig: signal.Signals) -> None:
        assert self.process is not None
        try:
            if os.name == "posix":
                os.killpg(self.process.pid, sig)
            elif sig == signal.SIGTERM:
                self.process.terminate()
            else:
                self.process.kill()
        except ProcessLookupError:
            pass

    def _fail(self, detail: str) -> None:
        if self.handle.is_active:
            self.handle.transition(ServiceStatus.FAILED, detail)
            print_error(f"Dev server failed: {detail}")
        self._failed.set()

    async def _watch_exit(self) -> None:
        assert self.process is not None
        returncode = await self.process.wait()
        if self._stop_requested.is_set():
            return
        if returncode != 0:
            self._fail(f"exited with code {returncode}")
        elif self.handle.is_active:
            self.handle.transition(ServiceStatus.STOPPED, "exited")
            self._failed.set()

    async def _tail_log(self) -> None:
        buffer = ""
        with open(self.log_path, "r", encoding="utf-8", errors="replace") as log:
            while True:
                chunk = log.read()
                if chunk:
                    buffer += chunk
                    *lines, buffer = buffer.split("\n")
                    for line in lines:
                        self._inspect(line)
                    await asyncio.sleep(0)
                    continue
                exited = self.process is None or self.process.returncode is not None
                if self._stop_requested.is_set() or exited:
                    buffer += log.read()
                    for line in buffer.split("\n"):
                        self._inspect(line)
                    return
                await asyncio.sleep(self.poll_interval)

    def _inspect(self, line: str) -> None:
        line = line.rstrip("\r")
        if not line.strip():
            return
        if is_error_line(line):
            print_error(f"Dev server error: {line}")
        if is_fatal_line(line) and not self._stop_requested.is_set():
            self._fail(line.strip())

    async def _drain(self) -> None:
        """Let the tail task read what is left, then reap the watcher."""
        for task in (self._tail_task, self._watch_task):
            if task is None or task.done():
                continue
            try:
                await asyncio.wait_for(task, timeout=max(self.poll_interval * 4, 1.0))
            except asyncio.TimeoutError:
                pass
