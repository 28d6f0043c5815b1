"""
Build-scoped workspaces.

Each build gets its own directory named by build id, so concurrent builds
never share or collide on working copies.
"""
import logging
import os
import shutil
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def is_safe_relative_path(path: str) -> bool:
    """Check if a path is safe (no traversal, not absolute)."""
    if not path:
        return False
    normalized = os.path.normpath(path)
    if os.path.isabs(normalized) or normalized.startswith("/"):
        return False
    if ".." in normalized.split(os.sep):
        return False
    return True


class WorkspaceManager:
    """Manages isolated workspaces for builds."""

    def __init__(self, base_dir: Path):
        self._base_dir = Path(base_dir)
        self._base_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, build_id: str) -> Path:
        if not is_safe_relative_path(build_id) or os.sep in build_id:
            raise ValueError(f"Invalid build id for workspace: {build_id!r}")
        return self._base_dir / build_id

    def create_workspace(self, build_id: str) -> Path:
        """Create a fresh workspace directory for a build."""
        workspace = self.path_for(build_id)
        if workspace.exists():
            shutil.rmtree(workspace, ignore_errors=True)
        workspace.mkdir(parents=True)
        logger.info(f"workspace_created build_id={build_id}")
        return workspace

    def get_workspace(self, build_id: str) -> Optional[Path]:
        """Get workspace path if it exists."""
        workspace = self.path_for(build_id)
        if workspace.exists():
            return workspace
        return None

    def cleanup_workspace(self, build_id: str) -> bool:
        """Remove the workspace for a build."""
        workspace = self.path_for(build_id)
        if workspace.exists():
            shutil.rmtree(workspace, ignore_errors=True)
            logger.info(f"workspace_cleaned build_id={build_id}")
            return True
        return False
