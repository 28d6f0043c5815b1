"""
Thin wrapper around the ``docker`` CLI.

Used by the image builder, registry publisher and container launcher.
Works with any runtime exposing a docker-compatible CLI.
"""
import json
import logging
from pathlib import Path
from typing import Any, Optional

from launchpad.core.commands import CommandResult, resolve_binary, run_command

logger = logging.getLogger(__name__)


class DockerCommandError(Exception):
    """A docker CLI call failed or timed out."""

    def __init__(self, message: str, result: Optional[CommandResult] = None):
        super().__init__(message)
        self.result = result


class DockerCLI:
    """Runs docker commands with bounded timeouts."""

    def __init__(self, binary: Optional[str] = None):
        self._binary = binary

    @property
    def binary(self) -> str:
        # Resolved lazily so the service starts on hosts without docker
        if self._binary is None:
            self._binary = resolve_binary("docker")
        return self._binary

    def run(
        self,
        args: list[str],
        timeout: int = 60,
        cwd: Optional[Path] = None,
        check: bool = True,
    ) -> CommandResult:
        """Run a docker CLI command."""
        logger.debug(f"docker_exec args={' '.join(args[:2])}")
        result = run_command([self.binary, *args], cwd=cwd, timeout=timeout)
        if check and not result.ok:
            if result.timed_out:
                message = f"docker {args[0]} timed out after {timeout}s"
            else:
                stderr = result.stderr.strip().splitlines()
                reason = stderr[-1] if stderr else f"exit {result.exit_code}"
                message = f"docker {args[0]} failed: {reason}"
            raise DockerCommandError(message, result)
        return result

    def inspect(self, name: str, timeout: int = 30, kind: str = "container") -> dict[str, Any]:
        """Inspect a container or image and return its JSON document."""
        result = self.run([kind, "inspect", name], timeout=timeout)
        try:
            documents = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise DockerCommandError(f"docker {kind} inspect returned invalid JSON", result) from e
        if not documents:
            raise DockerCommandError(f"docker {kind} inspect returned nothing for {name}", result)
        return documents[0]

    def image_exists(self, ref: str, timeout: int = 30) -> bool:
        result = self.run(["image", "inspect", ref], timeout=timeout, check=False)
        return result.ok

    def remove_image(self, ref: str, timeout: int = 60) -> bool:
        result = self.run(["image", "rm", "--force", ref], timeout=timeout, check=False)
        return result.ok

    def remove_container(self, name: str, timeout: int = 60) -> bool:
        result = self.run(["rm", "--force", name], timeout=timeout, check=False)
        return result.ok
