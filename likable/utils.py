"""Shared utility functions for Likable.

Provides async command execution (captured and line-streamed), Rich-based
console output helpers, input sanitising for text handed to external CLIs,
and HTTP readiness polling.
"""

from __future__ import annotations

import asyncio
import os
import re
import time
from collections.abc import Callable
from pathlib import Path

import httpx
from rich.console import Console
from rich.markup import escape
from rich.table import Table

console = Console()

# ---------------------------------------------------------------------------
# Async command execution
# ---------------------------------------------------------------------------


async def run_command(
    cmd: list[str],
    cwd: str | Path | None = None,
    timeout: float | None = 120,
    env: dict[str, str] | None = None,
    input_text: str | None = None,
) -> tuple[int, str, str]:
    """Run a command asynchronously and capture its output.

    Args:
        cmd: Argument list; the first element is the executable.
        cwd: Working directory for the child process.
        timeout: Maximum wall-clock seconds before the process is killed.
            ``None`` waits for as long as the command takes.
        env: Optional extra environment variables merged on top of ``os.environ``.
        input_text: Optional text written to the child's stdin.

    Returns:
        A ``(returncode, stdout, stderr)`` tuple.

    Raises:
        FileNotFoundError: If the executable is not installed.
    """
    merged_env: dict[str, str] | None = None
    if env:
        merged_env = {**os.environ, **env}

    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.PIPE if input_text is not None else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(cwd) if cwd else None,
        env=merged_env,
    )

    payload = input_text.encode("utf-8") if input_text is not None else None
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(payload), timeout=timeout
        )
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return (-1, "", f"Command timed out after {timeout}s: {' '.join(cmd)}")

    stdout_str = (stdout_bytes or b"").decode("utf-8", errors="replace").strip()
    stderr_str = (stderr_bytes or b"").decode("utf-8", errors="replace").strip()
    return (process.returncode or 0, stdout_str, stderr_str)


async def stream_command(
    cmd: list[str],
    cwd: str | Path | None = None,
    on_line: Callable[[str], None] | None = None,
    env: dict[str, str] | None = None,
) -> tuple[int, str]:
    """Run a command, handing each output line to *on_line* as it arrives.

    Stdout and stderr are merged so progress and errors interleave the way
    the user would see them in a terminal.  There is no timeout: the command
    runs until it exits on its own.

    Returns:
        A ``(returncode, combined_output)`` tuple.

    Raises:
        FileNotFoundError: If the executable is not installed.
    """
    merged_env: dict[str, str] | None = None
    if env:
        merged_env = {**os.environ, **env}

    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        cwd=str(cwd) if cwd else None,
        env=merged_env,
    )

    assert process.stdout is not None  # guaranteed by PIPE
    lines: list[str] = []
    try:
        while True:
            line_bytes = await process.stdout.readline()
            if not line_bytes:
                # EOF -- process has closed stdout.
                break
            line = line_bytes.decode("utf-8", errors="replace").rstrip("\r\n")
            lines.append(line)
            if on_line is not None:
                on_line(line)
    except asyncio.CancelledError:
        if process.returncode is None:
            process.kill()
        raise

    await process.wait()
    return (process.returncode or 0, "\n".join(lines))


# ---------------------------------------------------------------------------
# String helpers
# ---------------------------------------------------------------------------


_CSI_RE = re.compile(r"\x1B\[[0-9;]*[a-zA-Z]")
_ESC_RE = re.compile(r"\x1B[()#;?]*(?:[0-9]{1,4}(?:;[0-9]{0,4})*)?[0-9A-ORZcf-nqry=><]")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F\x80-\x9F]")
_ZERO_WIDTH_RE = re.compile("[\u200B-\u200D\uFEFF]")


def sanitize_user_input(text: str) -> str:
    """Strip terminal escape sequences and control characters from *text*.

    Tabs and newlines survive; runs of spaces collapse to one and more than
    two consecutive newlines collapse to a blank line.

    Examples::

        sanitize_user_input("Build a \\x1b[31mred\\x1b[0m app") -> "Build a red app"
    """
    if not text:
        return ""
    result = _CSI_RE.sub("", text)
    result = _ESC_RE.sub("", result)
    result = _CONTROL_RE.sub("", result)
    result = _ZERO_WIDTH_RE.sub("", result)
    result = re.sub(r"[ \t]+", " ", result)
    result = re.sub(r"\n{3,}", "\n\n", result)
    return result.strip()


def sanitize_for_cli(text: str) -> str:
    """Sanitise *text* for use as a single command-line argument.

    Same as :func:`sanitize_user_input` but newlines become spaces.
    """
    result = sanitize_user_input(text)
    result = re.sub(r"[\r\n]+", " ", result)
    result = re.sub(r"\s{2,}", " ", result)
    return result.strip()


def slugify(text: str, max_length: int = 30) -> str:
    """Convert free text into a project directory name.

    Examples::

        slugify("My Todo App!") -> "my-todo-app"
        slugify("   ") -> ""
    """
    result = re.sub(r"[^a-z0-9]+", "-", text.lower())
    result = result.strip("-")[:max_length]
    return result.strip("-")


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples::

        format_duration(3.7)    -> "3.7s"
        format_duration(65.2)   -> "1m 5s"
        format_duration(3661.0) -> "1h 1m 1s"
    """
    if seconds < 0:
        return "0.0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = seconds % 60

    parts: list[str] = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")

    if hours > 0 or minutes > 0:
        parts.append(f"{int(secs)}s")
    else:
        parts.append(f"{secs:.1f}s")

    return " ".join(parts)


# ---------------------------------------------------------------------------
# Rich output helpers
# ---------------------------------------------------------------------------


def print_section(title: str) -> None:
    """Print a bold section title preceded by a blank line."""
    console.print()
    console.print(f"[bold white]{title}[/bold white]")


def print_summary_table(data: dict[str, str], title: str = "Summary") -> None:
    """Print a two-column key/value summary table.

    Args:
        data: Mapping of label -> value.
        title: Table title.
    """
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Item", style="dim", no_wrap=True)
    table.add_column("Value")

    for key, value in data.items():
        table.add_row(key, str(value))

    console.print(table)
    console.print()


def print_info(message: str) -> None:
    """Print a blue informational message."""
    console.print(f"[blue]i[/blue] {message}", highlight=False)


def print_success(message: str) -> None:
    """Print a green success message."""
    console.print(f"[bold green]{message}[/bold green]")


def print_error(message: str) -> None:
    """Print a red error message."""
    console.print(f"[bold red]{message}[/bold red]")


def print_warning(message: str) -> None:
    """Print a yellow warning message."""
    console.print(f"[bold yellow]{message}[/bold yellow]")


def print_code(command: str) -> None:
    """Print a command the user can copy and run themselves."""
    console.print(f"  [dim]{escape(command)}[/dim]", highlight=False)


# ---------------------------------------------------------------------------
# Health-check polling
# ---------------------------------------------------------------------------


async def wait_for_health(
    url: str,
    timeout: float = 60,
    interval: float = 2,
) -> bool:
    """Poll *url* until it answers with any non-5xx status or *timeout* passes.

    Args:
        url: Fully-qualified URL (e.g. ``http://localhost:13337``).
        timeout: Maximum seconds to wait.
        interval: Seconds between probes.

    Returns:
        ``True`` if the server answered within the timeout window,
        ``False`` otherwise.
    """
    deadline = time.monotonic() + timeout

    async with httpx.AsyncClient(timeout=httpx.Timeout(5.0, connect=3.0)) as client:
        while time.monotonic() < deadline:
            try:
                response = await client.get(url)
                if response.status_code < 500:
                    return True
            except httpx.HTTPError:
                pass

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(interval, remaining))

    return False
