"""Tests for the command executor (real subprocesses via /bin/sh)."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from realm.errors import CommandTimeoutError, ExternalToolError, ToolNotFoundError
from realm.executor import (
    CommandResult,
    StdioMode,
    format_command,
    require_success,
    run_command,
)


class TestRunCommand:
    @pytest.mark.asyncio
    async def test_captures_output_and_exit_code(self):
        result = await run_command("sh", ["-c", "echo out; echo err >&2; exit 3"])
        assert result.exit_code == 3
        assert result.stdout.strip() == "out"
        assert result.stderr.strip() == "err"
        assert not result.ok

    @pytest.mark.asyncio
    async def test_env_is_layered_over_os_environ(self, monkeypatch):
        monkeypatch.setenv("REALM_TEST_BASE", "base")
        result = await run_command(
            "sh", ["-c", 'echo "$REALM_TEST_BASE $REALM_TEST_EXTRA"'], env={"REALM_TEST_EXTRA": "extra"}
        )
        assert result.stdout.strip() == "base extra"

    @pytest.mark.asyncio
    async def test_cwd(self, tmp_path):
        result = await run_command("pwd", cwd=tmp_path)
        assert result.stdout.strip() == str(tmp_path.resolve())

    @pytest.mark.asyncio
    async def test_missing_program_is_fatal(self):
        with pytest.raises(ToolNotFoundError) as exc_info:
            await run_command("realm-definitely-not-installed-xyz")
        assert exc_info.value.fatal

    @pytest.mark.asyncio
    async def test_timeout_kills_and_raises(self):
        with pytest.raises(CommandTimeoutError) as exc_info:
            await run_command("sh", ["-c", "sleep 5"], timeout=0.2)
        assert "timed out" in str(exc_info.value)
        assert isinstance(exc_info.value, ExternalToolError)

    @pytest.mark.asyncio
    async def test_interactive_restores_terminal(self):
        with patch("realm.executor.restore_terminal") as restore:
            result = await run_command("sh", ["-c", "exit 4"], mode=StdioMode.INTERACTIVE)
        assert result.exit_code == 4
        restore.assert_called_once()


class TestHelpers:
    def test_format_command_quotes(self):
        assert format_command("git", ["commit", "-m", "two words"]) == "git commit -m 'two words'"

    def test_diagnostic_prefers_stderr(self):
        assert CommandResult(1, stdout="out", stderr=" err\n").diagnostic == "err"
        assert CommandResult(1, stdout="out\n").diagnostic == "out"

    def test_require_success_returns_stripped_stdout(self):
        assert require_success(CommandResult(0, stdout="abc\n"), "docker", ["create"]) == "abc"

    def test_require_success_raises_with_diagnostic(self):
        with pytest.raises(ExternalToolError) as exc_info:
            require_success(CommandResult(125, stderr="bad flag"), "docker", ["create", "x"])
        err = exc_info.value
        assert err.returncode == 125
        assert err.output == "bad flag"
        assert err.command == "docker create x"
