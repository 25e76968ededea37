"""AI coding agent CLIs: detection, launch and one-shot generation.

The agent is the last thing a session starts.  It takes over the terminal
(inherited stdio) while the backend stack and the dev server keep running
underneath it, and the session ends when the agent exits.

The two one-shot generators ask the agent for project names and a project
specification in non-interactive mode.  Both are bounded by a timeout and
fall back to deterministic output, so a slow or missing agent never blocks
project setup.
"""

from __future__ import annotations

import asyncio
import re
import shlex
from pathlib import Path

from likable.config import AgentKind
from likable.utils import (
    console,
    print_code,
    print_error,
    print_info,
    print_success,
    print_warning,
    run_command,
    sanitize_for_cli,
    slugify,
)

AGENT_BINARIES: dict[AgentKind, str] = {
    AgentKind.CLAUDE: "claude",
    AgentKind.GEMINI: "gemini",
}

AGENT_PACKAGES: dict[AgentKind, str] = {
    AgentKind.CLAUDE: "@anthropic-ai/claude-code",
    AgentKind.GEMINI: "@google/gemini-cli",
}

AGENT_LABELS: dict[AgentKind, str] = {
    AgentKind.CLAUDE: "Claude Code",
    AgentKind.GEMINI: "Gemini CLI",
}

GEMINI_MODEL = "gemini-2.5-flash"

NAME_TIMEOUT = 30
SPEC_TIMEOUTS: dict[AgentKind, int] = {
    AgentKind.CLAUDE: 30,
    AgentKind.GEMINI: 45,
}
MIN_SPEC_LENGTH = 100
MAX_NAME_SUGGESTIONS = 3

_NAME_RE = re.compile(r"^[a-z-]{3,30}$")


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


async def is_agent_installed(kind: AgentKind) -> bool:
    """Return ``True`` if the agent's CLI answers ``--version``."""
    try:
        returncode, _, _ = await run_command([AGENT_BINARIES[kind], "--version"], timeout=10)
    except FileNotFoundError:
        return False
    return returncode == 0


async def detect_installed_agents() -> list[AgentKind]:
    """Probe every known agent CLI concurrently; returns the installed ones."""
    kinds = list(AgentKind)
    results = await asyncio.gather(*(is_agent_installed(kind) for kind in kinds))
    return [kind for kind, installed in zip(kinds, results) if installed]


def install_command(kind: AgentKind) -> str:
    return f"npm install -g {AGENT_PACKAGES[kind]}"


# ---------------------------------------------------------------------------
# Launch
# ---------------------------------------------------------------------------


def _claude_allowed_tools(needs_backend: bool) -> str:
    tools = ["Bash(npm:*)", "Bash(npx:*)"]
    if needs_backend:
        tools.append("Bash(supabase:*)")
    tools += ["Bash(git:*)", "Bash(node:*)", "Bash(open:*)", "Read", "Glob", "Grep"]
    # One argument, space separated.
    return " ".join(tools)


def _gemini_allowed_tools(needs_backend: bool) -> str:
    tools = ["bash", "read", "write", "edit", "glob", "grep"]
    if needs_backend:
        tools.append("supabase")
    return ",".join(tools)


def build_agent_args(
    kind: AgentKind,
    initial_prompt: str | None = None,
    auto_accept: bool = True,
    needs_backend: bool = False,
) -> list[str]:
    """Build the full argv that launches *kind* in interactive mode.

    With *auto_accept* the agent applies edits without asking, restricted to
    a whitelist of development tools; the backend CLI is only whitelisted
    when the project uses the backend.  The initial prompt is sanitised into
    a single line and always comes last.

    Examples::

        build_agent_args(AgentKind.CLAUDE, "hi", auto_accept=False)
        -> ["claude", "hi"]
    """
    args = [AGENT_BINARIES[kind]]
    prompt = sanitize_for_cli(initial_prompt) if initial_prompt else ""

    if kind is AgentKind.CLAUDE:
        if auto_accept:
            args += ["--permission-mode", "acceptEdits"]
            args += ["--allowedTools", _claude_allowed_tools(needs_backend)]
            # Ends option parsing so the prompt is never read as a flag.
            args.append("--")
        if prompt:
            args.append(prompt)
    else:
        args += ["--model", GEMINI_MODEL]
        if auto_accept:
            args.append("--yolo")
            args += ["--allowed-tools", _gemini_allowed_tools(needs_backend)]
        if prompt:
            args += ["--prompt-interactive", prompt]

    return args


def manual_launch_command(kind: AgentKind, auto_accept: bool, needs_backend: bool) -> str:
    """The launch command, shell-quoted, without the initial prompt."""
    return shlex.join(build_agent_args(kind, None, auto_accept, needs_backend))


async def launch_agent(
    kind: AgentKind,
    project_dir: str | Path,
    initial_prompt: str | None = None,
    auto_accept: bool = True,
    needs_backend: bool = False,
    dev_url: str | None = None,
) -> int:
    """Run the agent in the foreground until the user exits it.

    The child inherits this process's stdin, stdout and stderr and stays in
    the terminal's foreground process group, so Ctrl-C reaches the agent.

    Returns:
        The agent's exit code; 127 when the CLI is not installed.
    """
    label = AGENT_LABELS[kind]
    console.print()
    print_success(f"Launching {label} in your project...")
    if dev_url:
        print_info(f"Your dev server is running at {dev_url}")
    if auto_accept:
        print_info("Auto-accept mode: edits are applied without confirmation")
    else:
        print_info("Review mode: you'll confirm each change")
    console.print()

    args = build_agent_args(kind, initial_prompt, auto_accept, needs_backend)
    try:
        process = await asyncio.create_subprocess_exec(*args, cwd=str(project_dir))
    except FileNotFoundError:
        print_error(f"Failed to launch {label}: '{args[0]}' is not installed")
        print_info("Install it, then launch it manually:")
        print_code(install_command(kind))
        print_code(f"cd {project_dir}")
        print_code(manual_launch_command(kind, auto_accept, needs_backend))
        return 127

    try:
        return await process.wait()
    except asyncio.CancelledError:
        if process.returncode is None:
            process.terminate()
            await process.wait()
        raise


# ---------------------------------------------------------------------------
# One-shot generation
# ---------------------------------------------------------------------------


async def _ask_agent(kind: AgentKind, prompt: str, timeout: float) -> str | None:
    """Run the agent non-interactively; ``None`` on any failure or timeout."""
    if kind is AgentKind.CLAUDE:
        cmd = [AGENT_BINARIES[kind], "--print"]
        input_text: str | None = prompt
    else:
        cmd = [AGENT_BINARIES[kind], prompt]
        input_text = None

    try:
        returncode, stdout, stderr = await run_command(cmd, timeout=timeout, input_text=input_text)
    except FileNotFoundError:
        print_warning(f"{AGENT_LABELS[kind]} is not installed")
        return None

    if returncode != 0:
        print_error(f"Error: {stderr or f'exit code {returncode}'}")
        return None
    return stdout


async def generate_project_names(
    kind: AgentKind,
    description: str,
    timeout: float = NAME_TIMEOUT,
) -> list[str]:
    """Ask the agent for up to three project directory names.

    Only lines that are valid names (lowercase letters and dashes, 3-30
    characters) are kept.  Falls back to a slug of *description*, or
    ``"my-app"`` when that slug is empty.
    """
    prompt = (
        f"Generate 3 project directory names for: {sanitize_for_cli(description)}. "
        "Requirements: lowercase, a-z and dash only, 3-30 chars. "
        "Respond with one name per line, no other text."
    )

    output = await _ask_agent(kind, prompt, timeout)
    if output is not None:
        names = [
            line.strip() for line in output.splitlines() if _NAME_RE.match(line.strip())
        ][:MAX_NAME_SUGGESTIONS]
        if names:
            return names
    print_warning("AI name generation failed, using fallback")
    return [slugify(description) or "my-app"]


def fallback_specification(description: str, user_story: str | None = None) -> str:
    sections = [f"## Project Overview\n\n{description}"]
    if user_story:
        sections.append(f"## Additional Requirements\n\n{user_story}")
    sections.append("## Next Steps\n\nThe AI will help you build this project step by step.")
    return "\n\n".join(sections)


async def generate_project_specification(
    kind: AgentKind,
    description: str,
    user_story: str | None = None,
    timeout: float | None = None,
) -> str:
    """Ask the agent for a markdown MVP specification of the project.

    Output of 100 characters or less is treated as a failure.  The fallback
    is a short markdown outline built from *description* and *user_story*.
    """
    story = sanitize_for_cli(user_story) if user_story else ""
    # Single line: some agents take the prompt as an argument.
    prompt = (
        "Generate a detailed technical specification for this project: "
        f"Description: {sanitize_for_cli(description)}"
        f"{f' Additional Requirements: {story}' if story else ''} "
        "Create a structured specification including: "
        "1. MVP Core Features (3-5 essential features for initial release) "
        "2. Key User Flows (main user interactions and journeys) "
        "3. UI/UX Guidelines (ensure the product is stylish, modern, and appealing) "
        "4. Technical Considerations (architecture patterns, data model, key dependencies) "
        "Format as clear markdown with sections. Be concise but comprehensive. "
        "Focus on MVP scope."
    )

    output = await _ask_agent(kind, prompt, timeout or SPEC_TIMEOUTS[kind])
    if output is not None and len(output.strip()) > MIN_SPEC_LENGTH:
        return output.strip()
    print_warning("AI specification generation failed, using fallback")
    return fallback_specification(description, user_story)
