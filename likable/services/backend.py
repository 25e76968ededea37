"""Backend stack (local Supabase) start / status / stop protocol.

``BackendStack`` only drives the backend CLI and reports what happened.  A
port conflict comes back as a ``BackendStartResult`` with outcome
``CONFLICT`` instead of prompting; deciding what to do about it is the
orchestrator's job.  Any other start failure raises ``BackendStartError``
carrying the captured output and the command the user can run by hand.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from rich.markup import escape

from likable.services.credentials import (
    DEFAULT_API_URL,
    Credentials,
    extract_credentials,
    structured_api_url,
)
from likable.utils import console, print_info, print_warning, run_command, stream_command

BACKEND_BINARY = "supabase"
BACKEND_START_COMMAND = "supabase start"

PORT_CONFLICT_MARKERS: tuple[str, ...] = (
    "port is already allocated",
    "address already in use",
)
_PROJECT_ID_RE = re.compile(r"supabase stop --project-id (\S+)")
_NOT_RUNNING_RE = re.compile(r"not running|no such container", re.IGNORECASE)


class StartOutcome(str, Enum):
    """How a backend start request ended."""
    ALREADY_RUNNING = "already_running"
    STARTED = "started"
    CONFLICT = "conflict"


@dataclass
class BackendStartResult:
    """Structured result of ``BackendStack.start``."""

    outcome: StartOutcome
    credentials: Credentials | None = None
    output: str = ""
    conflicting_project_id: str | None = None

    @property
    def is_running(self) -> bool:
        return self.outcome in (StartOutcome.ALREADY_RUNNING, StartOutcome.STARTED)


class BackendStartError(Exception):
    """Raised when the backend stack fails to start for a non-conflict reason."""

    def __init__(self, message: str, output: str = "", remediation: str = BACKEND_START_COMMAND):
        self.output = output
        self.remediation = remediation
        super().__init__(message)


def is_port_conflict(output: str) -> bool:
    """Return ``True`` if *output* reports a port already bound by another stack."""
    lowered = output.lower()
    return any(marker in lowered for marker in PORT_CONFLICT_MARKERS)


def conflicting_project_id(output: str) -> str | None:
    """Pull the other project's id out of the CLI's suggested stop command."""
    match = _PROJECT_ID_RE.search(output)
    return match.group(1) if match else None


def stop_project_command(project_id: str | None, binary: str = BACKEND_BINARY) -> list[str]:
    """Argv that stops the stack holding our ports; every local stack without an id."""
    if project_id:
        return [binary, "stop", "--project-id", project_id, "--no-backup"]
    return [binary, "stop", "--all", "--no-backup"]


def _echo(line: str) -> None:
    console.print(f"  [dim]{escape(line)}[/dim]", highlight=False)


class BackendStack:
    """Drives the backend CLI for one project directory.

    Args:
        project_dir: Directory containing ``supabase/config.toml``.
        default_url: URL reported when status output carries none; normally
            the allocated API port's URL.
        binary: Backend CLI executable.
    """

    def __init__(
        self,
        project_dir: str | Path,
        default_url: str = DEFAULT_API_URL,
        binary: str = BACKEND_BINARY,
    ) -> None:
        self.project_dir = Path(project_dir)
        self.default_url = default_url
        self.binary = binary

    # -- Status ------------------------------------------------------------

    async def status(self) -> tuple[int, str, str]:
        """Query status in JSON mode; returns ``(returncode, stdout, stderr)``."""
        return await run_command(
            [self.binary, "status", "-o", "json"],
            cwd=self.project_dir,
            timeout=60,
        )

    async def running_credentials(self) -> Credentials | None:
        """Credentials of an already-running stack, or ``None``.

        The stack only counts as running when the structured status carries
        the API URL; a status that reports nothing but a database
        connection string is treated as not up.
        """
        try:
            returncode, stdout, _ = await self.status()
        except FileNotFoundError:
            return None
        if returncode != 0 or structured_api_url(stdout) is None:
            return None
        return extract_credentials(stdout, default_url=self.default_url)

    # -- Start -------------------------------------------------------------

    async def start(self, check_existing: bool = True) -> BackendStartResult:
        """Bring the backend stack up.

        Args:
            check_existing: Probe for an already-running stack first.  Pass
                ``False`` for a brand-new project, where the probe is slow
                and can only say "no".

        Returns:
            ``ALREADY_RUNNING`` or ``STARTED`` with credentials, or
            ``CONFLICT`` with the other project's id when the CLI reports
            its ports as taken.

        Raises:
            BackendStartError: The CLI is missing, the start command failed
                for another reason, or status could not be read afterwards.
        """
        if check_existing:
            credentials = await self.running_credentials()
            if credentials is not None:
                return BackendStartResult(
                    outcome=StartOutcome.ALREADY_RUNNING, credentials=credentials
                )

        print_info("This may take a minute on first run (downloading Docker images)...")
        try:
            returncode, output = await stream_command(
                [self.binary, "start"], cwd=self.project_dir, on_line=_echo
            )
        except FileNotFoundError as exc:
            raise BackendStartError(
                f"Backend CLI '{self.binary}' not found. Install it: "
                "https://supabase.com/docs/guides/cli"
            ) from exc

        if returncode != 0:
            if is_port_conflict(output):
                return BackendStartResult(
                    outcome=StartOutcome.CONFLICT,
                    output=output,
                    conflicting_project_id=conflicting_project_id(output),
                )
            raise BackendStartError(
                f"Backend stack failed to start (exit code {returncode})", output=output
            )

        returncode, stdout, stderr = await self.status()
        if returncode != 0:
            raise BackendStartError(
                "Backend stack started but its status could not be read",
                output="\n".join(part for part in (stdout, stderr) if part),
            )

        return BackendStartResult(
            outcome=StartOutcome.STARTED,
            credentials=extract_credentials(stdout, default_url=self.default_url),
            output=output,
        )

    # -- Stop --------------------------------------------------------------

    async def stop(self) -> bool:
        """Stop this project's stack.

        Never raises: stopping a stack that was never started or is already
        down is reported informationally.

        Returns:
            ``True`` if the CLI reported a successful stop.
        """
        try:
            returncode, stdout, stderr = await run_command(
                [self.binary, "stop"], cwd=self.project_dir, timeout=120
            )
        except FileNotFoundError:
            print_info("Backend CLI not installed; nothing to stop")
            return False

        combined = "\n".join(part for part in (stdout, stderr) if part)
        if returncode != 0 or _NOT_RUNNING_RE.search(combined):
            print_info("Backend stack was not running")
            return False
        return True

    async def stop_project(self, project_id: str | None) -> bool:
        """Stop another project's stack that holds our ports.

        Without a known project id every local stack is stopped.
        """
        cmd = stop_project_command(project_id, self.binary)
        try:
            returncode, _, stderr = await run_command(cmd, cwd=self.project_dir, timeout=120)
        except FileNotFoundError:
            return False
        if returncode != 0:
            print_warning(f"Could not stop the conflicting project: {stderr or 'unknown error'}")
            return False
        return True


# ---------------------------------------------------------------------------
# Prerequisites
# ---------------------------------------------------------------------------


async def check_docker() -> bool:
    """Return ``True`` if Docker is installed and its daemon answers."""
    try:
        returncode, _, _ = await run_command(["docker", "--version"], timeout=15)
        if returncode != 0:
            return False
        returncode, stdout, _ = await run_command(["docker", "info"], timeout=30)
    except FileNotFoundError:
        return False
    return returncode == 0 and "Server Version" in stdout


async def check_backend_cli(binary: str = BACKEND_BINARY) -> bool:
    """Return ``True`` if the backend CLI is on PATH."""
    try:
        returncode, _, _ = await run_command([binary, "--version"], timeout=15)
    except FileNotFoundError:
        return False
    return returncode == 0
