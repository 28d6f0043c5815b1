"""
Build API routes.

Endpoints:
- POST /api/v1/collect - Submit a build, returns its id immediately
- GET /api/v1/build/{build_id} - Current lifecycle state
- GET /api/v1/build-events/{build_id} - Ordered state transition events
- GET /api/v1/build/{build_id}/logs - Accumulated build log
- POST /api/v1/build/{build_id}/cancel - Cancel an in-flight build
- GET /api/v1/builds - List builds
- GET /api/v1/builds/{build_id} - Full build record
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from launchpad.core.errors import InvalidRequest, InvalidTransition, NotFound, StoreError
from launchpad.core.ledger import Build
from launchpad.core.orchestrator import BuildRequest, Orchestrator
from launchpad.core.request_logging import get_request_id
from launchpad.schemas.build import (
    BuildDetailResponse,
    BuildEventResponse,
    BuildListResponse,
    BuildLogsResponse,
    BuildState,
    BuildStatusResponse,
    CancelResponse,
    CollectRequest,
    CollectResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["builds"])


def get_orchestrator(request: Request) -> Orchestrator:
    """Orchestrator attached to the application at startup."""
    return request.app.state.orchestrator


def _load_build(orchestrator: Orchestrator, build_id: str) -> Build:
    try:
        return orchestrator.get(build_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="Build not found")
    except StoreError as e:
        logger.error(f"build_read_failed build_id={build_id} error={e}")
        raise HTTPException(status_code=500, detail="Build store unavailable")


def _to_detail(build: Build) -> BuildDetailResponse:
    return BuildDetailResponse(
        build_id=build.id,
        source_location=build.source_location,
        build_command=build.build_command,
        build_output_dir=build.build_output_dir,
        status=build.state,
        image_ref=build.image_ref,
        endpoint=build.endpoint,
        created_at=build.created_at.isoformat(),
        updated_at=build.updated_at.isoformat(),
    )


@router.post("/collect", response_model=CollectResponse)
async def collect(
    request: CollectRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> CollectResponse:
    """
    Submit a repository for build and deployment.

    Returns the build id as soon as the build is recorded; the pipeline
    runs in the background. Poll the status or events endpoints for progress.
    """
    try:
        build_id = orchestrator.submit(BuildRequest(
            source_location=request.project_github_url,
            build_command=request.build_command,
            build_output_dir=request.build_out_dir,
        ))
    except InvalidRequest as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StoreError as e:
        logger.error(f"build_submit_failed error={e}")
        raise HTTPException(status_code=500, detail="Failed to record build")

    logger.info(
        f"build_accepted build_id={build_id}",
        extra={"build_id": build_id, "request_id": get_request_id()},
    )
    return CollectResponse(build_id=build_id)


@router.get("/build/{build_id}", response_model=BuildStatusResponse)
async def get_build_status(
    build_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> BuildStatusResponse:
    """Get the current lifecycle state of a build."""
    build = _load_build(orchestrator, build_id)
    return BuildStatusResponse(status=build.state)


@router.get("/build-events/{build_id}", response_model=list[BuildEventResponse])
async def get_build_events(
    build_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> list[BuildEventResponse]:
    """Get the state transition events recorded so far, oldest first."""
    try:
        events = orchestrator.ledger.list_events(build_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="Build not found")
    except StoreError as e:
        logger.error(f"build_events_read_failed build_id={build_id} error={e}")
        raise HTTPException(status_code=500, detail="Build store unavailable")

    return [
        BuildEventResponse(
            build_id=event.build_id,
            status=event.state,
            timestamp=event.timestamp.isoformat(),
            detail=event.detail,
            sequence=event.sequence,
        )
        for event in events
    ]


@router.get("/build/{build_id}/logs", response_model=BuildLogsResponse)
async def get_build_logs(
    build_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> BuildLogsResponse:
    """Get the accumulated build log. Later reads extend earlier ones."""
    build = _load_build(orchestrator, build_id)
    return BuildLogsResponse(build_id=build.id, log=build.log)


@router.post("/build/{build_id}/cancel", response_model=CancelResponse)
async def cancel_build(
    build_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> CancelResponse:
    """Cancel an in-flight build. Finished builds cannot be cancelled."""
    try:
        build = await orchestrator.cancel(build_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="Build not found")
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=f"Cannot cancel build: {e}")
    except StoreError as e:
        logger.error(f"build_cancel_failed build_id={build_id} error={e}")
        raise HTTPException(status_code=500, detail="Build store unavailable")

    logger.info(f"build_cancel_requested build_id={build_id} status={build.state.value}")
    return CancelResponse(build_id=build.id, status=build.state, message="Build cancelled")


@router.get("/builds", response_model=BuildListResponse)
async def list_builds(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    status: Optional[BuildState] = Query(default=None),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> BuildListResponse:
    """List builds, newest first."""
    try:
        builds, total = orchestrator.ledger.list_builds(limit=limit, offset=offset, state=status)
    except StoreError as e:
        logger.error(f"build_list_failed error={e}")
        raise HTTPException(status_code=500, detail="Build store unavailable")

    return BuildListResponse(
        items=[_to_detail(build) for build in builds],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/builds/{build_id}", response_model=BuildDetailResponse)
async def get_build(
    build_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> BuildDetailResponse:
    """Get the full build record."""
    return _to_detail(_load_build(orchestrator, build_id))
