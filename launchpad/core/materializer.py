"""
Source materializer: obtains a working copy of a repository.
"""
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from launchpad.core.commands import CommandError, resolve_binary, run_command
from launchpad.core.errors import SourceUnavailable
from launchpad.core.workspace import WorkspaceManager

logger = logging.getLogger(__name__)


class SourceMaterializer(ABC):
    """Capability: materialize repository contents at a local path."""

    @abstractmethod
    def materialize(self, source_location: str, build_id: str) -> Path:
        """
        Retrieve the repository into a fresh build-scoped directory.

        Raises:
            SourceUnavailable: If the location cannot be reached or is not
                a retrievable repository
        """

    def release(self, build_id: str) -> None:
        """Remove the local copy for a build. Default: nothing to release."""
        return None


def validate_source_location(
    source_location: str,
    allowed_schemes: tuple[str, ...],
    allowed_hosts: tuple[str, ...] = (),
) -> None:
    """
    Check a repository URL against the scheme and host allow-lists.

    Raises:
        SourceUnavailable: If the URL is malformed or not allowed
    """
    try:
        parsed = urlparse(source_location)
    except ValueError:
        raise SourceUnavailable(f"Invalid repository URL: {source_location}")

    scheme = (parsed.scheme or "").lower()
    if scheme not in allowed_schemes:
        raise SourceUnavailable(
            f"Repository URL scheme not allowed: {scheme or '(none)'}. "
            f"Allowed: {', '.join(sorted(allowed_schemes))}"
        )
    if scheme != "file" and not parsed.hostname:
        raise SourceUnavailable(f"Invalid repository URL: {source_location}")
    if allowed_hosts and (parsed.hostname or "").lower() not in allowed_hosts:
        raise SourceUnavailable(f"Repository host not allowed: {parsed.hostname}")
    if parsed.path.strip("/") == "" and scheme != "file":
        raise SourceUnavailable("Repository URL must include a repository path")


class GitMaterializer(SourceMaterializer):
    """Shallow-clones repositories with the git CLI."""

    def __init__(
        self,
        workspaces: WorkspaceManager,
        timeout: int = 120,
        allowed_schemes: tuple[str, ...] = ("https",),
        allowed_hosts: tuple[str, ...] = (),
        git_bin: Optional[str] = None,
    ):
        self._workspaces = workspaces
        self._timeout = timeout
        self._allowed_schemes = allowed_schemes
        self._allowed_hosts = allowed_hosts
        self._git_bin = git_bin

    def materialize(self, source_location: str, build_id: str) -> Path:
        validate_source_location(source_location, self._allowed_schemes, self._allowed_hosts)

        workspace = self._workspaces.create_workspace(build_id)
        target = workspace / "source"

        try:
            git = resolve_binary("git", self._git_bin)
            result = run_command(
                [git, "clone", "--depth", "1", "--", source_location, str(target)],
                cwd=workspace,
                timeout=self._timeout,
            )
        except CommandError as e:
            raise SourceUnavailable(str(e)) from e

        if result.timed_out:
            raise SourceUnavailable(f"git clone timed out after {self._timeout}s")
        if result.exit_code != 0:
            stderr = result.stderr.strip() or f"exit code {result.exit_code}"
            raise SourceUnavailable(f"git clone failed: {stderr}")

        logger.info(f"source_materialized build_id={build_id} duration_ms={result.duration_ms}")
        return target

    def release(self, build_id: str) -> None:
        self._workspaces.cleanup_workspace(build_id)
