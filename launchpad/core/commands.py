"""
Safe subprocess execution for external CLIs (git, docker, build commands).

- No shell=True anywhere
- Every call bounded by a timeout
- Minimal environment; only the variables the CLIs need are passed through
- Output truncated to keep logs bounded
"""
import logging
import os
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

MAX_OUTPUT_SIZE = 512 * 1024  # per stream

# Variables the docker and git CLIs rely on
PASSTHROUGH_ENV = (
    "HOME",
    "DOCKER_HOST",
    "DOCKER_CONFIG",
    "DOCKER_CERT_PATH",
    "DOCKER_TLS_VERIFY",
    "DOCKER_CONTEXT",
    "DOCKER_BUILDKIT",
    "SSL_CERT_FILE",
    "HTTPS_PROXY",
    "HTTP_PROXY",
    "NO_PROXY",
)


class CommandError(Exception):
    """Command could not be started."""
    pass


@dataclass
class CommandResult:
    """Result of a subprocess command."""
    command: list[str]
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def transcript(self) -> str:
        """Human-readable log block for this command."""
        lines = [f"$ {' '.join(self.command)}"]
        if self.stdout:
            lines.append(self.stdout.rstrip("\n"))
        if self.stderr:
            lines.append(self.stderr.rstrip("\n"))
        if self.timed_out:
            lines.append("TIMED OUT")
        lines.append(f"[exit code {self.exit_code}, {self.duration_ms}ms]")
        return "\n".join(lines) + "\n"


def _sanitize_env() -> dict:
    """Create a minimal environment for subprocess execution."""
    safe_env = {
        "PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"),
        "LANG": "C.UTF-8",
        "LC_ALL": "C.UTF-8",
        # Never block on credential prompts
        "GIT_TERMINAL_PROMPT": "0",
        "CI": "true",
    }
    for name in PASSTHROUGH_ENV:
        if name in os.environ:
            safe_env[name] = os.environ[name]
    safe_env.setdefault("HOME", "/tmp")
    return safe_env


def resolve_binary(name: str, override: Optional[str] = None) -> str:
    """Find a CLI binary. Raises CommandError if it is not installed."""
    binary = override or shutil.which(name)
    if not binary:
        raise CommandError(f"{name} CLI not found on PATH")
    return binary


def _decode(stream) -> str:
    if stream is None:
        return ""
    if isinstance(stream, bytes):
        return stream.decode("utf-8", errors="replace")
    return stream


def _truncate(text: str) -> str:
    if len(text) > MAX_OUTPUT_SIZE:
        return text[:MAX_OUTPUT_SIZE] + f"\n... (truncated, {len(text)} total chars)"
    return text


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 300,
    env_override: Optional[dict] = None,
) -> CommandResult:
    """
    Execute a command safely with no shell.

    Args:
        cmd: Command as list of strings
        cwd: Working directory
        timeout: Timeout in seconds
        env_override: Additional environment variables

    Returns:
        CommandResult with output and status

    Raises:
        CommandError: If the command is malformed or cannot be started
    """
    if not isinstance(cmd, list):
        raise CommandError("Command must be a list, not a string")
    if len(cmd) == 0:
        raise CommandError("Command cannot be empty")

    env = _sanitize_env()
    if env_override:
        env.update(env_override)

    start = time.perf_counter()
    timed_out = False

    try:
        result = subprocess.run(
            cmd,
            cwd=str(cwd) if cwd else None,
            env=env,
            capture_output=True,
            timeout=timeout,
            encoding="utf-8",
            errors="replace",
        )
        stdout = result.stdout or ""
        stderr = result.stderr or ""
        exit_code = result.returncode
    except subprocess.TimeoutExpired as e:
        stdout = _decode(e.stdout)
        stderr = _decode(e.stderr)
        exit_code = -1
        timed_out = True
        logger.warning(f"command_timeout cmd={cmd[0]} timeout={timeout}")
    except (OSError, subprocess.SubprocessError) as e:
        raise CommandError(f"Failed to run {cmd[0]}: {e}") from e

    duration_ms = int((time.perf_counter() - start) * 1000)

    return CommandResult(
        command=cmd,
        exit_code=exit_code,
        stdout=_truncate(stdout),
        stderr=_truncate(stderr),
        duration_ms=duration_ms,
        timed_out=timed_out,
    )
