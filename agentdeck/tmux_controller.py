"""tmux and git subprocess gateway for managed Claude sessions."""

import asyncio
import os
import re
import secrets
import shlex
import tempfile
from pathlib import Path
from typing import Optional, List
import logging

logger = logging.getLogger(__name__)

# tmux session names we are willing to pass to process-control commands
SESSION_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")

# Directory paths containing any of these are rejected, never escaped
SHELL_METACHARACTERS = re.compile(r"[;&|`$(){}\[\]<>\\'\"!#*?]")


class ValidationError(ValueError):
    """Malformed caller input rejected before any command runs."""


class TmuxError(RuntimeError):
    """An external command failed, timed out or could not be started."""


def validate_tmux_session(name: str) -> str:
    """
    Check a tmux session name against the allow-list.

    Raises:
        ValidationError: if the name is empty or contains other characters
    """
    if not isinstance(name, str) or not SESSION_NAME_PATTERN.match(name):
        raise ValidationError(f"Invalid tmux session name: {name!r}")
    return name


def validate_directory_path(path: str) -> str:
    """
    Expand, resolve and check a working directory.

    Args:
        path: Directory as given by the caller (may start with ~)

    Returns:
        Absolute resolved path

    Raises:
        ValidationError: if the path is empty, has shell metacharacters,
            does not exist or is not a directory
    """
    if not isinstance(path, str) or not path.strip():
        raise ValidationError("Directory path is required")

    resolved = Path(path.strip()).expanduser().resolve()
    resolved_str = str(resolved)

    if SHELL_METACHARACTERS.search(resolved_str):
        raise ValidationError(f"Directory path contains invalid characters: {path}")
    if not resolved.exists():
        raise ValidationError(f"Directory does not exist: {resolved_str}")
    if not resolved.is_dir():
        raise ValidationError(f"Path is not a directory: {resolved_str}")
    return resolved_str


def validate_display_name(name: str) -> str:
    """
    Validate a user-facing session name. Spaces are allowed.

    Returns:
        The stripped name

    Raises:
        ValidationError: if empty, longer than 100 chars or containing control characters
    """
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Name cannot be empty")
    name = name.strip()
    if len(name) > 100:
        raise ValidationError("Name too long (max 100 chars)")
    if any(ord(c) < 32 or ord(c) == 127 for c in name):
        raise ValidationError("Name contains control characters")
    return name


class TmuxController:
    """Runs tmux and git commands with timeouts and output caps."""

    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}

        # Load timeout configuration with fallbacks
        timeouts = self.config.get("timeouts", {})
        tmux_timeouts = timeouts.get("tmux", {})

        self.command_timeout_seconds = tmux_timeouts.get("command_timeout_seconds", 5)
        self.paste_settle_seconds = tmux_timeouts.get("paste_settle_seconds", 0.1)
        self.max_output_bytes = tmux_timeouts.get("max_output_bytes", 1024 * 1024)

        git_config = self.config.get("git", {})
        self.git_timeout_seconds = git_config.get("command_timeout_seconds", 5)

    async def _exec(
        self,
        cmd: List[str],
        timeout: float,
        cwd: Optional[str] = None,
    ) -> tuple[int, str, str]:
        """
        Run a command as an argument array and collect its output.

        Returns:
            (returncode, stdout, stderr)

        Raises:
            TmuxError: if the command cannot be started or exceeds the timeout
        """
        logger.debug(f"Running command: {' '.join(cmd)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
            raise TmuxError(f"Failed to start {cmd[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise TmuxError(f"Timeout after {timeout}s: {' '.join(cmd[:3])}")

        if len(stdout) > self.max_output_bytes:
            logger.debug(f"Truncating {len(stdout)} bytes of output from {cmd[0]}")
            stdout = stdout[-self.max_output_bytes:]

        return (
            proc.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def _run_tmux(self, *args: str, check: bool = True) -> tuple[int, str]:
        """
        Run a tmux command.

        Raises:
            TmuxError: on timeout, or non-zero exit when check is set
        """
        returncode, stdout, stderr = await self._exec(
            ["tmux"] + list(args), timeout=self.command_timeout_seconds
        )
        if check and returncode != 0:
            raise TmuxError(f"tmux {args[0]} failed: {stderr.strip()}")
        return returncode, stdout

    async def session_exists(self, session_name: str) -> bool:
        """Check if a tmux session exists."""
        returncode, _ = await self._run_tmux("has-session", "-t", session_name, check=False)
        return returncode == 0

    async def spawn_session(self, session_name: str, cwd: str, command: str) -> None:
        """
        Start a detached tmux session running command in cwd.

        Args:
            session_name: Pre-validated tmux session name
            cwd: Pre-validated working directory
            command: Command line for tmux to run in the new pane

        Raises:
            TmuxError: if tmux fails to create the session
        """
        await self._run_tmux("new-session", "-d", "-s", session_name, "-c", cwd, command)
        logger.info(f"Spawned tmux session {session_name} in {cwd}")

    async def kill_session(self, session_name: str) -> None:
        """
        Kill a tmux session.

        Raises:
            TmuxError: if tmux reports a failure (including an already-gone session)
        """
        await self._run_tmux("kill-session", "-t", session_name)
        logger.info(f"Killed session {session_name}")

    async def send_keys(self, session_name: str, *keys: str) -> None:
        """Send key names (e.g. 'Enter', 'C-c', '2') to a session."""
        await self._run_tmux("send-keys", "-t", session_name, *keys)
        logger.debug(f"Sent keys to {session_name}: {keys}")

    async def load_and_paste_buffer(self, session_name: str, text: str) -> None:
        """
        Inject text through a tmux paste buffer, then press Enter.

        The text goes through a private temp file and a per-call named buffer
        so tmux never interprets it as key names.

        Raises:
            TmuxError: if any tmux step fails
        """
        buffer_name = f"agentdeck-{secrets.token_hex(4)}"
        fd, temp_path = tempfile.mkstemp(prefix="agentdeck-prompt-", suffix=".txt")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(text)

            await self._run_tmux("load-buffer", "-b", buffer_name, temp_path)
            await self._run_tmux("paste-buffer", "-b", buffer_name, "-d", "-t", session_name)
            await asyncio.sleep(self.paste_settle_seconds)
            await self._run_tmux("send-keys", "-t", session_name, "Enter")
            logger.info(f"Pasted {len(text)} chars into {session_name}")
        finally:
            try:
                os.unlink(temp_path)
            except FileNotFoundError:
                pass

    async def capture_output(self, session_name: str, lines: int = 50) -> str:
        """
        Capture recent output from a session's pane.

        Args:
            session_name: Session to capture from
            lines: Number of history lines to include

        Returns:
            Captured text

        Raises:
            TmuxError: if the pane cannot be captured
        """
        _, stdout = await self._run_tmux(
            "capture-pane",
            "-t", session_name,
            "-p",  # Print to stdout
            "-S", f"-{lines}",  # Start from N lines back
        )
        return stdout

    async def list_live_session_names(self) -> List[str]:
        """
        List all tmux session names.

        A non-zero exit means no tmux server is running, so no sessions.

        Raises:
            TmuxError: on timeout or if tmux cannot be started
        """
        returncode, stdout = await self._run_tmux(
            "list-sessions", "-F", "#{session_name}", check=False
        )
        if returncode != 0:
            return []
        return [s.strip() for s in stdout.strip().split("\n") if s.strip()]

    async def run_git(self, cwd: str, *args: str) -> Optional[str]:
        """
        Run a read-only git query in cwd.

        Returns:
            stdout, or None if git exits non-zero, times out or is missing
        """
        try:
            returncode, stdout, _ = await self._exec(
                ["git"] + list(args), timeout=self.git_timeout_seconds, cwd=cwd
            )
        except TmuxError as e:
            logger.debug(f"git {args[0]} in {cwd} failed: {e}")
            return None
        if returncode != 0:
            return None
        return stdout


def build_claude_command(
    continue_conversation: bool = True,
    skip_permissions: bool = True,
    chrome: bool = False,
    binary: str = "claude",
    extra_path: Optional[str] = None,
) -> str:
    """
    Build the command line tmux runs for a new Claude session.

    Args:
        continue_conversation: Resume the last conversation in the directory (-c)
        skip_permissions: Start in bypass-permissions mode
        chrome: Enable the browser integration
        binary: claude executable
        extra_path: Directories to prepend to PATH inside the pane

    Returns:
        Command string
    """
    parts = [shlex.quote(binary)]
    if continue_conversation:
        parts.append("-c")
    if skip_permissions:
        parts.append("--permission-mode=bypassPermissions")
        parts.append("--dangerously-skip-permissions")
    if chrome:
        parts.append("--chrome")

    command = " ".join(parts)
    if extra_path:
        command = f"PATH={shlex.quote(extra_path)}:\"$PATH\" {command}"
    return command
