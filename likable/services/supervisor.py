"""Supervision of the background services that run under the agent session.

``ProcessSupervisor`` owns one ``ServiceHandle`` per service role, routes
start and stop requests to the backend stack and the dev server, never lets
two operations on the same service overlap, and tears everything down when
the CLI receives SIGINT or SIGTERM.
"""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

from likable.services.backend import BackendStack, BackendStartError, BackendStartResult, StartOutcome
from likable.services.dev_server import DevServer, default_dev_command
from likable.services.handle import ServiceHandle, ServiceRole, ServiceStatus
from likable.utils import print_info, print_warning


class ProcessSupervisor:
    """Starts, tracks and stops the backend stack and the dev server.

    Attributes:
        project_dir: Working directory of every supervised service.
        backend: Driver for the backend CLI.
        handles: Latest handle per role.
    """

    def __init__(
        self,
        project_dir: str | Path,
        backend: BackendStack | None = None,
        dev_log_path: str | Path | None = None,
        dev_command: Callable[[int], list[str]] | None = None,
        dev_settle_seconds: float = 2.0,
    ) -> None:
        self.project_dir = Path(project_dir)
        self.backend = backend or BackendStack(self.project_dir)
        self.dev_log_path = Path(dev_log_path) if dev_log_path else self.project_dir / "dev-server.log"
        self.dev_command = dev_command or default_dev_command
        self.dev_settle_seconds = dev_settle_seconds
        self.dev_server: DevServer | None = None
        self.handles: dict[ServiceRole, ServiceHandle] = {}
        self._locks: dict[ServiceRole, asyncio.Lock] = {role: asyncio.Lock() for role in ServiceRole}
        self._foreground_depth = 0
        self._shutdown_task: asyncio.Task | None = None
        self._signals_installed: list[signal.Signals] = []
        self._main_task: asyncio.Task | None = None

    def _new_handle(self, role: ServiceRole) -> ServiceHandle:
        handle = ServiceHandle(role=role, cwd=self.project_dir)
        self.handles[role] = handle
        return handle

    def status(self, role: ServiceRole) -> ServiceStatus:
        handle = self.handles.get(role)
        return handle.status if handle else ServiceStatus.NOT_STARTED

    # ------------------------------------------------------------------
    # Backend stack
    # ------------------------------------------------------------------

    async def start_backend(self, check_existing: bool = True) -> BackendStartResult:
        """Run the backend start protocol under this supervisor's handle.

        A ``CONFLICT`` result marks the handle failed and is returned, not
        raised.

        Raises:
            BackendStartError: Propagated from the backend driver.
        """
        async with self._locks[ServiceRole.BACKEND_STACK]:
            handle = self._new_handle(ServiceRole.BACKEND_STACK)
            handle.transition(ServiceStatus.STARTING)
            try:
                result = await self.backend.start(check_existing=check_existing)
            except BackendStartError as exc:
                handle.transition(ServiceStatus.FAILED, str(exc))
                raise

            if result.outcome is StartOutcome.CONFLICT:
                handle.transition(ServiceStatus.FAILED, "port already allocated")
            else:
                handle.transition(ServiceStatus.RUNNING)
            return result

    async def stop_conflicting_backend(self, project_id: str | None) -> bool:
        async with self._locks[ServiceRole.BACKEND_STACK]:
            return await self.backend.stop_project(project_id)

    async def stop_backend(self) -> bool:
        """Stop the backend stack; safe to call any number of times."""
        async with self._locks[ServiceRole.BACKEND_STACK]:
            stopped = await self.backend.stop()
            handle = self.handles.get(ServiceRole.BACKEND_STACK)
            if handle is not None and handle.is_active:
                handle.transition(ServiceStatus.STOPPED)
            return stopped

    # ------------------------------------------------------------------
    # Dev server
    # ------------------------------------------------------------------

    async def start_dev_server(self, port: int) -> DevServer:
        """Launch the dev server in the background on *port*.

        Returns:
            The running ``DevServer`` task object.

        Raises:
            DevServerError: The process could not be spawned or failed
                during its settle delay.
        """
        async with self._locks[ServiceRole.DEV_SERVER]:
            handle = self._new_handle(ServiceRole.DEV_SERVER)
            server = DevServer(
                handle=handle,
                command=self.dev_command(port),
                log_path=self.dev_log_path,
                port=port,
                settle_seconds=self.dev_settle_seconds,
            )
            self.dev_server = server
            await server.start()
            return server

    async def stop_dev_server(self, grace_seconds: float = 1.0) -> None:
        async with self._locks[ServiceRole.DEV_SERVER]:
            if self.dev_server is not None:
                await self.dev_server.stop(grace_seconds=grace_seconds)

    def detach_dev_server(self) -> int | None:
        """Stop watching the dev server and leave it running; returns its pid."""
        if self.dev_server is None:
            return None
        pid = self.dev_server.detach()
        self.dev_server = None
        return pid

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def stop_all(self) -> None:
        """Stop every service this supervisor started, dev server first."""
        try:
            await self.stop_dev_server()
        except Exception as exc:
            print_warning(f"Dev server did not stop cleanly: {exc}")

        backend = self.handles.get(ServiceRole.BACKEND_STACK)
        if backend is not None and backend.status is not ServiceStatus.STOPPED:
            await self.stop_backend()

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    @contextmanager
    def foreground(self) -> Iterator[None]:
        """Mark a foreground child as owning the terminal.

        While active, SIGINT belongs to that child (the terminal delivers it
        there too) and does not tear the services down.  SIGTERM still does.
        """
        self._foreground_depth += 1
        try:
            yield
        finally:
            self._foreground_depth -= 1

    @contextmanager
    def interactive_prompt(self) -> Iterator[None]:
        """Hand SIGINT back to Python while the loop blocks on a terminal prompt.

        Ctrl+C then raises ``KeyboardInterrupt`` out of the prompt itself, and
        the caller's ``finally`` blocks run the teardown.
        """
        loop = asyncio.get_running_loop()
        installed = signal.SIGINT in self._signals_installed
        if installed:
            loop.remove_signal_handler(signal.SIGINT)
        try:
            yield
        finally:
            if installed:
                loop.add_signal_handler(signal.SIGINT, self._on_signal, signal.SIGINT, self._main_task)

    def install_signal_handlers(self, main_task: asyncio.Task | None = None) -> None:
        """Run :meth:`stop_all` on SIGINT/SIGTERM, then cancel *main_task*."""
        loop = asyncio.get_running_loop()
        self._main_task = main_task
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig, main_task)
            except (NotImplementedError, RuntimeError):
                # Windows event loops have no add_signal_handler.
                continue
            self._signals_installed.append(sig)

    def remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._signals_installed:
            loop.remove_signal_handler(sig)
        self._signals_installed.clear()

    def _on_signal(self, sig: signal.Signals, main_task: asyncio.Task | None) -> None:
        if sig == signal.SIGINT and self._foreground_depth > 0:
            return
        if self._shutdown_task is not None:
            return
        self._shutdown_task = asyncio.get_running_loop().create_task(
            self._shutdown(sig, main_task)
        )

    async def _shutdown(self, sig: signal.Signals, main_task: asyncio.Task | None) -> None:
        print_info(f"Received {sig.name}, shutting down gracefully...")
        await self.stop_all()
        if main_task is not None and not main_task.done():
            main_task.cancel()
