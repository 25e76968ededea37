"""Likable session orchestrator.

Runs one development session inside an already-scaffolded project:

Step 1: PREFLIGHT -- Check the container runtime, backend CLI and agent CLI.
Step 2: PORTS     -- Allocate backend ports and a dev port, patch config files.
Step 3: BACKEND   -- Start the backend stack (with conflict remediation).
Step 4: DEV       -- Start the dev server in the background.
Step 5: AGENT     -- Hand the terminal to the AI coding agent.
Step 6: TEARDOWN  -- Stop every background service when the agent exits.

Every step after preflight degrades instead of aborting: a failed step
prints its captured output and the command to run by hand, and the session
carries on without that service.

Usage::

    python -m likable ./my-app
    python -m likable ./my-app --agent gemini --review --dev-port-min 20000
"""

from __future__ import annotations

import asyncio
import shlex
import sys
import time
import traceback
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from rich.panel import Panel
from rich.prompt import Prompt

from likable.agents import AGENT_LABELS, install_command, is_agent_installed, launch_agent
from likable.config import (
    DEFAULT_PORTS,
    AgentKind,
    ComponentLibrary,
    Config,
    PortSet,
    ProjectConfig,
    SessionOptions,
)
from likable.services.backend import (
    BACKEND_START_COMMAND,
    BackendStartError,
    BackendStartResult,
    StartOutcome,
    check_backend_cli,
    check_docker,
    stop_project_command,
)
from likable.services.config_patch import (
    ConfigPatchError,
    patch_backend_ports,
    remove_deprecated_keys,
    update_dev_server_port,
    update_env_file,
)
from likable.services.credentials import Credentials
from likable.services.dev_server import DevServerError
from likable.services.handle import ServiceRole, ServiceStatus
from likable.services.ports import NoAvailablePortRangeError, allocate_backend_ports, allocate_dev_port
from likable.services.supervisor import ProcessSupervisor
from likable.utils import (
    console,
    format_duration,
    print_code,
    print_error,
    print_info,
    print_section,
    print_success,
    print_summary_table,
    print_warning,
    slugify,
    wait_for_health,
)

DEV_SERVER_COMMAND = "npm run dev"


class SessionAborted(Exception):
    """Raised when the user chooses to abort setup."""


class ConflictAction(str, Enum):
    """What to do when another backend stack holds our ports."""
    STOP_AND_RETRY = "stop"
    SKIP = "skip"
    ABORT = "abort"


CONFLICT_CHOICES: tuple[ConflictAction, ...] = (
    ConflictAction.STOP_AND_RETRY,
    ConflictAction.SKIP,
    ConflictAction.ABORT,
)

_CHOICE_LABELS: dict[ConflictAction, str] = {
    ConflictAction.STOP_AND_RETRY: "Stop the other project and retry",
    ConflictAction.SKIP: "Skip the backend stack and continue without it",
    ConflictAction.ABORT: "Abort setup",
}

ConflictChooser = Callable[[BackendStartResult, Sequence[ConflictAction]], Awaitable[ConflictAction]]


async def prompt_conflict_action(
    result: BackendStartResult, choices: Sequence[ConflictAction]
) -> ConflictAction:
    """Ask the user how to resolve a backend port conflict.

    Blocks the event loop while waiting, so Ctrl+C reaches ``input()`` as
    ``KeyboardInterrupt``.  Call it inside
    ``ProcessSupervisor.interactive_prompt``.
    """
    console.print()
    print_warning("Backend ports are already allocated by another project.")
    if result.conflicting_project_id:
        print_info(f"Conflicting project: {result.conflicting_project_id}")
    for choice in choices:
        console.print(f"  [cyan]{choice.value}[/cyan]  {_CHOICE_LABELS[choice]}")
    answer = Prompt.ask(
        "What would you like to do?",
        choices=[choice.value for choice in choices],
        default=choices[0].value,
        console=console,
    )
    return ConflictAction(answer)


@dataclass
class SessionResult:
    """What one session started and how it ended."""

    ports: PortSet | None = None
    dev_port: int | None = None
    credentials: Credentials | None = None
    backend_status: ServiceStatus = ServiceStatus.NOT_STARTED
    dev_status: ServiceStatus = ServiceStatus.NOT_STARTED
    agent_exit_code: int | None = None
    failures: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failures


class ServiceOrchestrator:
    """Sequences port allocation, config patching and service startup.

    The orchestrator is the only writer of the project's config and env
    files during a session, and it runs each step strictly after the one
    before it.

    Args:
        config: Session configuration.
        supervisor: Process supervisor; one is built from *config* if omitted.
        chooser: Resolves backend port conflicts; prompts on the terminal by
            default.
        initial_prompt: First instruction handed to the agent.
        detach: Leave the services running when the session ends.
        readiness_timeout: Seconds to wait for the dev server to answer HTTP
            before warning that it is still compiling; ``0`` skips the probe.
    """

    def __init__(
        self,
        config: Config,
        supervisor: ProcessSupervisor | None = None,
        chooser: ConflictChooser | None = None,
        initial_prompt: str | None = None,
        detach: bool = False,
        readiness_timeout: float = 10.0,
    ) -> None:
        self.config = config
        self.options: SessionOptions = config.options
        self.supervisor = supervisor or ProcessSupervisor(
            config.project_dir,
            dev_log_path=config.dev_log_path,
            dev_settle_seconds=config.options.dev_settle_seconds,
        )
        self.chooser = chooser or prompt_conflict_action
        self.initial_prompt = initial_prompt
        self.detach = detach
        self.readiness_timeout = readiness_timeout
        self.result = SessionResult()
        self._backend_enabled = config.project.needs_backend and config.options.start_backend

    # ------------------------------------------------------------------
    # Top level
    # ------------------------------------------------------------------

    async def run(self) -> SessionResult:
        """Run the whole session and tear down afterwards.

        Raises:
            SessionAborted: The user chose to abort on a port conflict.
        """
        started = time.monotonic()
        console.print(
            Panel(
                f"[bold bright_cyan]Likable[/bold bright_cyan]\n"
                f"Project : {self.config.project.name}\n"
                f"Path    : {self.config.project_dir}\n"
                f"Agent   : {AGENT_LABELS[self.options.agent]}",
                title="[bold]Session Start[/bold]",
                border_style="bright_cyan",
            )
        )

        self.supervisor.install_signal_handlers(asyncio.current_task())
        try:
            await self.preflight()
            if self._backend_enabled:
                await self.prepare_backend_config()
            await self.prepare_dev_port()
            if self._backend_enabled:
                await self.start_backend()
            await self.start_dev_server()
            self._print_summary(time.monotonic() - started)

            if self.options.launch_agent:
                await self.run_agent()
            elif not self.detach:
                await self.wait_until_interrupted()
        finally:
            await self.teardown()
            self.supervisor.remove_signal_handlers()

        return self.result

    async def preflight(self) -> None:
        """Probe external tools; a missing backend prerequisite disables the backend."""
        console.print(Panel("[bold]Running pre-flight checks...[/bold]", style="cyan"))

        if self._backend_enabled:
            if not await check_docker():
                print_warning("  Docker is not running -- the backend stack will be skipped.")
                print_info("Start Docker Desktop (or the Docker daemon), then run:")
                print_code(f"cd {self.config.project_dir}")
                print_code(BACKEND_START_COMMAND)
                self._backend_enabled = False
            elif not await check_backend_cli():
                print_warning("  Supabase CLI not found -- the backend stack will be skipped.")
                print_info("Install it: https://supabase.com/docs/guides/cli")
                self._backend_enabled = False
            else:
                console.print("  [green]+[/green] Docker and Supabase CLI available")

        if self.options.launch_agent:
            kind = self.options.agent
            if await is_agent_installed(kind):
                console.print(f"  [green]+[/green] {AGENT_LABELS[kind]} installed")
            else:
                print_warning(f"  {AGENT_LABELS[kind]} is not installed. Install it with:")
                print_code(install_command(kind))

        console.print()

    # ------------------------------------------------------------------
    # Ports and config files
    # ------------------------------------------------------------------

    async def prepare_backend_config(self) -> PortSet:
        """Allocate backend ports and write them into ``supabase/config.toml``.

        Falls back to the default ports when no range is free or the config
        file cannot be patched; the backend start then reports the problem.
        """
        print_section("Allocating ports")
        try:
            ports = await allocate_backend_ports()
        except NoAvailablePortRangeError as exc:
            print_warning(str(exc))
            ports = DEFAULT_PORTS

        if ports != DEFAULT_PORTS:
            print_info(f"Default backend ports are busy, using API port {ports.api}")

        config_path = self.config.backend_config_path
        try:
            patched = await patch_backend_ports(config_path, ports)
        except ConfigPatchError as exc:
            print_warning(f"{exc}. Continuing with default ports.")
            ports = DEFAULT_PORTS
        else:
            if not patched:
                if ports != DEFAULT_PORTS:
                    print_warning(f"{config_path} not found; the backend stack will use its default ports")
                ports = DEFAULT_PORTS
        await remove_deprecated_keys(config_path)

        # The app must reach the API on the port the stack will actually bind.
        await self._write_env({"VITE_SUPABASE_URL": ports.api_url})
        self.supervisor.backend.default_url = ports.api_url
        self.result.ports = ports
        return ports

    async def prepare_dev_port(self) -> int:
        """Pick the dev port and write it to the dev server config and env file."""
        port = await allocate_dev_port(self.options.dev_port_min, self.options.dev_port_max)
        if not await update_dev_server_port(self.config.dev_server_config_path, port):
            print_info(f"No port setting in {self.config.dev_server_config_path.name}; passing --port {port}")
        await self._write_env({"VITE_DEV_PORT": str(port)})
        self.result.dev_port = port
        return port

    async def _write_env(self, values: dict[str, str]) -> None:
        try:
            written = await update_env_file(self.config.env_path, values)
        except OSError as exc:
            print_warning(f"Could not update {self.config.env_path.name}: {exc}")
            return
        if not written:
            print_info(f"{self.config.env_path.name} not found; skipping {', '.join(values)}")

    # ------------------------------------------------------------------
    # Backend stack
    # ------------------------------------------------------------------

    async def start_backend(self) -> Credentials | None:
        """Start the backend stack, resolving port conflicts with the user.

        Returns:
            The extracted credentials, or ``None`` when the backend was
            skipped or failed to start.

        Raises:
            SessionAborted: The user chose to abort on a port conflict.
        """
        print_section("Starting backend stack")
        check_existing = not self.options.fresh_project

        while True:
            try:
                result = await self.supervisor.start_backend(check_existing=check_existing)
            except BackendStartError as exc:
                self._report_backend_failure(exc)
                return None

            if result.outcome is not StartOutcome.CONFLICT:
                break

            if not await self._resolve_conflict(result):
                print_warning("Continuing without the backend stack")
                print_info("Start it later with:")
                print_code(f"cd {self.config.project_dir}")
                print_code(BACKEND_START_COMMAND)
                self.result.backend_status = self.supervisor.status(ServiceRole.BACKEND_STACK)
                return None

        self.result.backend_status = self.supervisor.status(ServiceRole.BACKEND_STACK)
        credentials = result.credentials
        if credentials is None:
            return None

        if result.outcome is StartOutcome.ALREADY_RUNNING:
            print_success("Backend stack is already running")
        else:
            print_success("Backend stack started")
        await self._write_credentials(credentials)
        self.result.credentials = credentials
        return credentials

    async def _resolve_conflict(self, result: BackendStartResult) -> bool:
        """Ask until the conflicting stack is stopped (``True``) or skipped (``False``).

        Raises:
            SessionAborted: The user chose to abort.
        """
        project_id = result.conflicting_project_id
        while True:
            with self.supervisor.interactive_prompt():
                action = await self.chooser(result, CONFLICT_CHOICES)
            if action is ConflictAction.ABORT:
                raise SessionAborted("Setup cancelled")
            if action is ConflictAction.SKIP:
                return False

            print_info("Stopping the conflicting project...")
            if await self.supervisor.stop_conflicting_backend(project_id):
                return True
            print_error("Could not stop the conflicting backend project")
            print_info("Stop it manually, then choose again:")
            print_code(shlex.join(stop_project_command(project_id)))

    async def _write_credentials(self, credentials: Credentials) -> None:
        values = {"VITE_SUPABASE_URL": credentials.url}
        if credentials.has_key:
            values["VITE_SUPABASE_ANON_KEY"] = credentials.anon_key
        await self._write_env(values)

        print_info(f"API URL: {credentials.url}")
        if credentials.has_key:
            print_info(f"Anon key: {credentials.masked_key()}")
        else:
            print_warning("Could not extract the anon key from the backend status.")
            print_info(f"Copy it into {self.config.env_path.name} as VITE_SUPABASE_ANON_KEY:")
            print_code("supabase status")

    def _report_backend_failure(self, exc: BackendStartError) -> None:
        self.result.backend_status = self.supervisor.status(ServiceRole.BACKEND_STACK)
        self.result.failures.append(f"backend: {exc}")
        print_error(str(exc))
        if exc.output:
            console.print(exc.output, markup=False, highlight=False)
        print_info("Start it manually:")
        print_code(f"cd {self.config.project_dir}")
        print_code(exc.remediation)

    # ------------------------------------------------------------------
    # Dev server
    # ------------------------------------------------------------------

    async def start_dev_server(self) -> bool:
        """Start the dev server on the allocated port; ``False`` if it failed."""
        print_section("Starting dev server")
        port = self.result.dev_port
        if port is None:
            port = await self.prepare_dev_port()

        try:
            server = await self.supervisor.start_dev_server(port)
        except DevServerError as exc:
            self.result.dev_status = self.supervisor.status(ServiceRole.DEV_SERVER)
            self.result.failures.append(f"dev server: {exc}")
            print_error(str(exc))
            print_info(f"Logs: {self.config.dev_log_path}")
            print_info("Start it manually:")
            print_code(f"cd {self.config.project_dir}")
            print_code(DEV_SERVER_COMMAND)
            return False

        self.result.dev_status = self.supervisor.status(ServiceRole.DEV_SERVER)
        print_success(f"Dev server running at {server.url}")
        print_info(f"Logs: {self.config.dev_log_path}")

        if self.readiness_timeout > 0:
            if not await wait_for_health(server.url, timeout=self.readiness_timeout, interval=1):
                print_warning("Dev server is still compiling; the page may take a moment to load")
        return True

    # ------------------------------------------------------------------
    # Agent and teardown
    # ------------------------------------------------------------------

    async def run_agent(self) -> int:
        dev_url = None
        if self.supervisor.dev_server is not None:
            dev_url = self.supervisor.dev_server.url
        with self.supervisor.foreground():
            exit_code = await launch_agent(
                self.options.agent,
                self.config.project_dir,
                initial_prompt=self.initial_prompt,
                auto_accept=self.options.auto_accept,
                needs_backend=self._backend_enabled,
                dev_url=dev_url,
            )
        self.result.agent_exit_code = exit_code
        return exit_code

    async def wait_until_interrupted(self) -> None:
        """Keep the services up until a signal cancels this task."""
        print_info("Services are running. Press Ctrl+C to stop them.")
        await asyncio.Event().wait()

    async def teardown(self) -> None:
        if self.detach:
            pid = self.supervisor.detach_dev_server()
            if pid is not None:
                print_info(f"Dev server left running (pid {pid})")
            if self._backend_enabled:
                print_info("Backend stack left running. Stop it with:")
                print_code(f"cd {self.config.project_dir} && supabase stop")
            return

        print_section("Stopping services")
        await self.supervisor.stop_all()
        self.result.backend_status = self.supervisor.status(ServiceRole.BACKEND_STACK)
        self.result.dev_status = self.supervisor.status(ServiceRole.DEV_SERVER)
        print_success("All services stopped")

    def _print_summary(self, elapsed: float) -> None:
        rows = {"Project": str(self.config.project_dir)}
        if self.result.ports is not None:
            ports = self.result.ports
            rows["Backend ports"] = f"{ports.api} (api), {ports.db} (db), {ports.studio} (studio)"
        rows["Backend"] = self.result.backend_status.value
        if self.result.credentials is not None:
            rows["API URL"] = self.result.credentials.url
            rows["Anon key"] = self.result.credentials.masked_key()
        rows["Dev server"] = self.result.dev_status.value
        if self.result.dev_port is not None:
            rows["Dev URL"] = f"http://localhost:{self.result.dev_port}"
        rows["Dev log"] = str(self.config.dev_log_path)
        rows["Setup time"] = format_duration(elapsed)
        print_summary_table(rows, title="Session")


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def _session_options(base: SessionOptions, overrides: dict[str, object]) -> SessionOptions:
    merged = base.model_dump()
    merged.update({key: value for key, value in overrides.items() if value is not None})
    return SessionOptions(**merged)


def main() -> None:
    """CLI entry point for ``python -m likable``."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Likable -- run the dev services and an AI agent for a scaffolded app",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  likable ./my-app\n"
            "  likable ./my-app --features database,auth-email --agent gemini\n"
            "  likable ./my-app --no-agent --detach\n"
        ),
    )

    parser.add_argument("project_dir", help="Path to the scaffolded project")
    parser.add_argument("--name", default=None, help="Project name (default: directory name)")
    parser.add_argument("--description", default="", help="Short project description")
    parser.add_argument(
        "--features",
        default="",
        help="Comma-separated features (e.g. database,auth-email,uploads)",
    )
    parser.add_argument(
        "--component-library",
        choices=[library.value for library in ComponentLibrary],
        default=ComponentLibrary.SHADCN.value,
    )
    parser.add_argument(
        "--agent",
        choices=[kind.value for kind in AgentKind],
        default=None,
        help="AI agent CLI to launch (default: claude)",
    )
    parser.add_argument("--prompt", default=None, help="Initial instruction for the agent")
    parser.add_argument("--review", action="store_true", help="Confirm each agent edit")
    parser.add_argument("--no-backend", action="store_true", help="Do not start the backend stack")
    parser.add_argument(
        "--fresh",
        action="store_true",
        help="Brand-new project: skip the already-running backend check",
    )
    parser.add_argument("--no-agent", action="store_true", help="Only run the services")
    parser.add_argument(
        "--detach",
        action="store_true",
        help="Leave the services running when the session ends",
    )
    parser.add_argument("--dev-port-min", type=int, default=None)
    parser.add_argument("--dev-port-max", type=int, default=None)

    args = parser.parse_args()

    project_dir = Path(args.project_dir).resolve()
    if not project_dir.is_dir():
        console.print(f"[bold red]Error:[/bold red] Project directory not found: {project_dir}")
        sys.exit(1)

    try:
        project = ProjectConfig(
            name=args.name or slugify(project_dir.name) or "my-app",
            description=args.description,
            features=[f.strip() for f in args.features.split(",") if f.strip()],
            component_library=ComponentLibrary(args.component_library),
            target_dir=project_dir,
        )
        config = Config.from_env(project)
        config.options = _session_options(
            config.options,
            {
                "agent": AgentKind(args.agent) if args.agent else None,
                "auto_accept": False if args.review else None,
                "start_backend": False if args.no_backend else None,
                "fresh_project": True if args.fresh else None,
                "launch_agent": False if args.no_agent else None,
                "dev_port_min": args.dev_port_min,
                "dev_port_max": args.dev_port_max,
            },
        )
    except ValueError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)

    config.save()
    orchestrator = ServiceOrchestrator(config, initial_prompt=args.prompt, detach=args.detach)

    try:
        result = asyncio.run(orchestrator.run())
    except SessionAborted:
        console.print("[yellow]Setup cancelled[/yellow]")
        sys.exit(0)
    except (KeyboardInterrupt, asyncio.CancelledError):
        console.print("[yellow]Interrupted[/yellow]")
        sys.exit(130)
    except Exception as exc:
        print_error(f"Session failed: {exc}")
        console.print(traceback.format_exc(), style="dim", markup=False, highlight=False)
        sys.exit(1)

    if result.success:
        console.print("[bold green]Session finished.[/bold green]")
    else:
        console.print("[bold red]Session finished with errors:[/bold red]")
        for failure in result.failures:
            console.print(f"  - {failure}", markup=False)
        sys.exit(1)


if __name__ == "__main__":
    main()
