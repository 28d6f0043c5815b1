"""
Pydantic schemas and lifecycle states for the build API.
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class BuildState(str, Enum):
    """Build lifecycle state."""
    PENDING = "pending"
    CLONING = "cloning"
    BUILDING = "building"
    PUBLISHING = "publishing"
    DEPLOYING = "deploying"
    RUNNING = "running"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BuildState.RUNNING, BuildState.FAILED)

    def can_transition_to(self, new: "BuildState") -> bool:
        """
        Forward moves go one step at a time along the pipeline; any
        non-terminal state may fail.
        """
        if self.is_terminal:
            return False
        if new == BuildState.FAILED:
            return True
        index = PIPELINE_ORDER.index(self)
        return index + 1 < len(PIPELINE_ORDER) and PIPELINE_ORDER[index + 1] == new


PIPELINE_ORDER = [
    BuildState.PENDING,
    BuildState.CLONING,
    BuildState.BUILDING,
    BuildState.PUBLISHING,
    BuildState.DEPLOYING,
    BuildState.RUNNING,
]


# --- Requests ---
class CollectRequest(BaseModel):
    """Request body for POST /api/v1/collect."""
    project_github_url: str = Field(
        max_length=2048,
        description="Repository URL to build",
        examples=["https://github.com/owner/repo.git"],
    )
    build_command: str = Field(
        max_length=4096,
        description="Command run in the repository root to produce build output",
        examples=["npm run build"],
    )
    build_out_dir: str = Field(
        max_length=1024,
        description="Build context directory, relative to the repository root",
        examples=["dist"],
    )


# --- Responses ---
class CollectResponse(BaseModel):
    """Response for POST /api/v1/collect."""
    build_id: str


class BuildStatusResponse(BaseModel):
    """Response for GET /api/v1/build/{build_id}."""
    status: BuildState


class BuildEventResponse(BaseModel):
    """One entry of GET /api/v1/build-events/{build_id}."""
    build_id: str
    status: BuildState
    timestamp: str
    detail: Optional[str] = None
    sequence: int


class BuildDetailResponse(BaseModel):
    """Full build record."""
    build_id: str
    source_location: str
    build_command: str
    build_output_dir: str
    status: BuildState
    image_ref: Optional[str] = None
    endpoint: Optional[str] = None
    created_at: str
    updated_at: str


class BuildListResponse(BaseModel):
    """Paginated list of builds."""
    items: list[BuildDetailResponse]
    total: int
    limit: int
    offset: int


class BuildLogsResponse(BaseModel):
    """Response for GET /api/v1/build/{build_id}/logs."""
    build_id: str
    log: str


class CancelResponse(BaseModel):
    """Response for POST /api/v1/build/{build_id}/cancel."""
    build_id: str
    status: BuildState
    message: str
