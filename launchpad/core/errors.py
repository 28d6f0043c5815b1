"""
Error taxonomy for submissions, queries and pipeline stages.

Stage errors always end a build in the `failed` state. Query errors
(NotFound, StoreError) are surfaced to the caller and never mutate a build.
"""
from typing import Optional


class LaunchpadError(Exception):
    """Base error for the service."""
    pass


class InvalidRequest(LaunchpadError):
    """Missing or malformed submission fields. No build id is assigned."""
    pass


class NotFound(LaunchpadError):
    """Unknown build identity."""

    def __init__(self, build_id: str):
        super().__init__(f"Build not found: {build_id}")
        self.build_id = build_id


class StoreError(LaunchpadError):
    """Ledger unavailable or inconsistent."""
    pass


class InvalidTransition(LaunchpadError):
    """A state change that would move a build backwards or out of a terminal state."""
    pass


class StageError(LaunchpadError):
    """Base class for errors raised by a pipeline stage."""
    stage = "pipeline"


class SourceUnavailable(StageError):
    """Repository could not be reached or retrieved."""
    stage = "materialize"


class BuildFailed(StageError):
    """Build command or image build failed. Carries the log captured so far."""
    stage = "build"

    def __init__(self, message: str, log: Optional[str] = None):
        super().__init__(message)
        self.log = log or ""


class PublishFailed(StageError):
    """Registry rejected the image (auth, network or registry-side)."""
    stage = "publish"


class LaunchFailed(StageError):
    """Container could not be created, started or resolved to an endpoint."""
    stage = "launch"


class BuildCancelled(StageError):
    """Build was cancelled by a caller."""
    stage = "cancel"

    def __init__(self, message: str = "cancelled"):
        super().__init__(message)
