"""Tests for agent CLI detection, argv building, launch and generators."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from likable.agents import (
    build_agent_args,
    detect_installed_agents,
    fallback_specification,
    generate_project_names,
    generate_project_specification,
    is_agent_installed,
    launch_agent,
    manual_launch_command,
)
from likable.config import AgentKind


def _patch_run(*results):
    return patch("likable.agents.run_command", AsyncMock(side_effect=list(results)))


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


class TestDetection:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_installed(self):
        with _patch_run((0, "1.0.0 (Claude Code)", "")) as mock_run:
            assert await is_agent_installed(AgentKind.CLAUDE) is True
        assert mock_run.await_args.args[0] == ["claude", "--version"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing(self):
        with _patch_run(FileNotFoundError("gemini")):
            assert await is_agent_installed(AgentKind.GEMINI) is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_detect_installed_agents(self):
        async def fake_installed(kind: AgentKind) -> bool:
            return kind is AgentKind.GEMINI

        with patch("likable.agents.is_agent_installed", side_effect=fake_installed):
            assert await detect_installed_agents() == [AgentKind.GEMINI]


# ---------------------------------------------------------------------------
# Argv building
# ---------------------------------------------------------------------------


class TestBuildAgentArgs:
    @pytest.mark.unit
    def test_claude_auto_accept(self):
        args = build_agent_args(AgentKind.CLAUDE, "Build the app", auto_accept=True, needs_backend=False)
        assert args[:3] == ["claude", "--permission-mode", "acceptEdits"]
        tools = args[args.index("--allowedTools") + 1]
        assert "Bash(npm:*)" in tools.split(" ")
        assert "Bash(supabase:*)" not in tools
        assert args[-2:] == ["--", "Build the app"]

    @pytest.mark.unit
    def test_claude_backend_tools(self):
        args = build_agent_args(AgentKind.CLAUDE, None, auto_accept=True, needs_backend=True)
        tools = args[args.index("--allowedTools") + 1].split(" ")
        assert tools.index("Bash(supabase:*)") == 2
        assert args[-1] == "--"

    @pytest.mark.unit
    def test_claude_review_mode(self):
        assert build_agent_args(AgentKind.CLAUDE, "hi", auto_accept=False) == ["claude", "hi"]

    @pytest.mark.unit
    def test_gemini_auto_accept(self):
        args = build_agent_args(AgentKind.GEMINI, "Build it", auto_accept=True, needs_backend=True)
        assert args[:3] == ["gemini", "--model", "gemini-2.5-flash"]
        assert "--yolo" in args
        assert args[args.index("--allowed-tools") + 1] == "bash,read,write,edit,glob,grep,supabase"
        assert args[-2:] == ["--prompt-interactive", "Build it"]

    @pytest.mark.unit
    def test_gemini_review_mode(self):
        assert build_agent_args(AgentKind.GEMINI, None, auto_accept=False) == [
            "gemini", "--model", "gemini-2.5-flash",
        ]

    @pytest.mark.unit
    def test_prompt_sanitised(self):
        args = build_agent_args(AgentKind.CLAUDE, "Build\x1b[2J a\nmulti-line\tprompt", auto_accept=False)
        assert args[-1] == "Build a multi-line prompt"

    @pytest.mark.unit
    def test_manual_command_quoted(self):
        command = manual_launch_command(AgentKind.CLAUDE, auto_accept=True, needs_backend=False)
        assert command.startswith("claude --permission-mode acceptEdits --allowedTools '")


# ---------------------------------------------------------------------------
# Launch
# ---------------------------------------------------------------------------


class TestLaunchAgent:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_returns_exit_code(self, tmp_project_dir: Path):
        process = AsyncMock()
        process.wait.return_value = 0
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)) as mock_exec:
            code = await launch_agent(AgentKind.CLAUDE, tmp_project_dir, "Build it", needs_backend=True)

        assert code == 0
        argv = mock_exec.await_args.args
        assert argv[0] == "claude"
        assert argv[-1] == "Build it"
        assert mock_exec.await_args.kwargs["cwd"] == str(tmp_project_dir)
        # Inherits the terminal.
        assert "stdin" not in mock_exec.await_args.kwargs

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_cli_prints_manual_commands(self, tmp_project_dir: Path):
        with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError("claude"))), \
                patch("likable.agents.print_code") as mock_code, \
                patch("likable.agents.print_error") as mock_error:
            code = await launch_agent(AgentKind.CLAUDE, tmp_project_dir)

        assert code == 127
        mock_error.assert_called_once()
        printed = [call.args[0] for call in mock_code.call_args_list]
        assert "npm install -g @anthropic-ai/claude-code" in printed
        assert f"cd {tmp_project_dir}" in printed


# ---------------------------------------------------------------------------
# Generators
# ---------------------------------------------------------------------------


class TestGenerateProjectNames:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_valid_names_kept(self):
        output = "Here you go:\ntodo-tracker\ntask-flow\nTaskFlow\nx\nlist-master\nextra-one\n"
        with _patch_run((0, output, "")) as mock_run:
            names = await generate_project_names(AgentKind.CLAUDE, "A todo app")

        assert names == ["todo-tracker", "task-flow", "list-master"]
        cmd = mock_run.await_args.args[0]
        assert cmd == ["claude", "--print"]
        assert "A todo app" in mock_run.await_args.kwargs["input_text"]
        assert mock_run.await_args.kwargs["timeout"] == 30

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gemini_prompt_as_argument(self):
        with _patch_run((0, "recipe-box\n", "")) as mock_run:
            names = await generate_project_names(AgentKind.GEMINI, "Recipes")
        assert names == ["recipe-box"]
        cmd = mock_run.await_args.args[0]
        assert cmd[0] == "gemini"
        assert "Recipes" in cmd[1]
        assert mock_run.await_args.kwargs["input_text"] is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_falls_back_to_slug(self):
        with _patch_run((-1, "", "Command timed out after 30s: claude --print")):
            names = await generate_project_names(AgentKind.CLAUDE, "My Recipe Box!")
        assert names == ["my-recipe-box"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_valid_lines_falls_back(self):
        with _patch_run((0, "Sure! Here are some names.", "")):
            names = await generate_project_names(AgentKind.CLAUDE, "!!!")
        assert names == ["my-app"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_cli_falls_back(self):
        with _patch_run(FileNotFoundError("claude")):
            names = await generate_project_names(AgentKind.CLAUDE, "Weather dashboard")
        assert names == ["weather-dashboard"]


class TestGenerateProjectSpecification:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_long_output_accepted(self):
        outline = "## MVP Core Features\n\n" + "- feature\n" * 20
        with _patch_run((0, outline, "")):
            result = await generate_project_specification(AgentKind.CLAUDE, "A todo app")
        assert result == outline.strip()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeouts_per_agent(self):
        long_text = "x" * 200
        with _patch_run((0, long_text, ""), (0, long_text, "")) as mock_run:
            await generate_project_specification(AgentKind.CLAUDE, "app")
            await generate_project_specification(AgentKind.GEMINI, "app")
        timeouts = [call.kwargs["timeout"] for call in mock_run.await_args_list]
        assert timeouts == [30, 45]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_short_output_falls_back(self):
        with _patch_run((0, "OK", "")):
            result = await generate_project_specification(
                AgentKind.GEMINI, "A todo app", user_story="Share lists with friends"
            )
        assert result == fallback_specification("A todo app", "Share lists with friends")
        assert "## Additional Requirements\n\nShare lists with friends" in result

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_prompt_is_single_line(self):
        with _patch_run((0, "", "")) as mock_run:
            await generate_project_specification(AgentKind.GEMINI, "line one\nline two", "story\nmore")
        prompt = mock_run.await_args.args[0][1]
        assert "\n" not in prompt
        assert "Additional Requirements: story more" in prompt

    @pytest.mark.unit
    def test_fallback_without_story(self):
        result = fallback_specification("A todo app")
        assert result.startswith("## Project Overview\n\nA todo app")
        assert "Additional Requirements" not in result
