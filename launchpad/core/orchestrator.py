"""
Build orchestrator: drives one build through the pipeline

    pending -> cloning -> building -> publishing -> deploying -> running

with a direct path to `failed` from any non-terminal state.

Rules:
- Before a stage runs, its state is persisted and its event emitted.
- A stage error is terminal for the build. The error text is appended to
  the build log and carried as the `failed` event detail.
- Each build runs as one asyncio task. Stage calls run in worker threads,
  bounded by the stage timeout and by the overall per-build deadline.
- Cancelling a build stops it at its next suspension point, records
  `failed` with detail "cancelled" and releases what the build created.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from launchpad.core.config import Settings, get_settings
from launchpad.core.errors import (
    BuildCancelled,
    BuildFailed,
    InvalidRequest,
    InvalidTransition,
    LaunchFailed,
    PublishFailed,
    SourceUnavailable,
    StageError,
    StoreError,
)
from launchpad.core.image_builder import ImageBuilder
from launchpad.core.launcher import ContainerLauncher
from launchpad.core.ledger import Build, Ledger
from launchpad.core.materializer import SourceMaterializer
from launchpad.core.metrics import metrics
from launchpad.core.publisher import RegistryPublisher
from launchpad.core.workspace import is_safe_relative_path
from launchpad.schemas.build import BuildState

logger = logging.getLogger(__name__)

# Extra time a stage gets beyond its own subprocess timeouts
STAGE_GRACE_SECONDS = 5
# How long cleanup waits for an abandoned stage thread to finish
RELEASE_WAIT_SECONDS = 30

INTERRUPTED_DETAIL = "interrupted by service restart"


@dataclass
class BuildRequest:
    """Inputs of one build."""
    source_location: str
    build_command: str
    build_output_dir: str


@dataclass
class _RunContext:
    """Per-build bookkeeping of what has been started and created."""
    build_id: str
    image_tag: str
    reached: BuildState = BuildState.PENDING
    published_ref: Optional[str] = None
    inflight: Optional[asyncio.Future] = None


def validate_request(request: BuildRequest) -> BuildRequest:
    """
    Normalise and validate a submission.

    Raises:
        InvalidRequest: If a field is missing, blank or unsafe
    """
    missing = [
        name
        for name, value in (
            ("project_github_url", request.source_location),
            ("build_command", request.build_command),
            ("build_out_dir", request.build_output_dir),
        )
        if not isinstance(value, str) or not value.strip()
    ]
    if missing:
        raise InvalidRequest(f"Missing required fields: {', '.join(missing)}")

    output_dir = request.build_output_dir.strip()
    if not is_safe_relative_path(output_dir):
        raise InvalidRequest("build_out_dir must be a relative path inside the repository")

    return BuildRequest(
        source_location=request.source_location.strip(),
        build_command=request.build_command.strip(),
        build_output_dir=output_dir,
    )


class Orchestrator:
    """Sole writer of build state; runs one task per build."""

    def __init__(
        self,
        ledger: Ledger,
        materializer: SourceMaterializer,
        builder: ImageBuilder,
        publisher: RegistryPublisher,
        launcher: ContainerLauncher,
        settings: Optional[Settings] = None,
    ):
        self._ledger = ledger
        self._materializer = materializer
        self._builder = builder
        self._publisher = publisher
        self._launcher = launcher
        self._settings = settings or get_settings()
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def ledger(self) -> Ledger:
        return self._ledger

    def image_tag_for(self, build_id: str) -> str:
        return f"{self._settings.image_prefix}/{build_id}:latest"

    # =========================================================================
    # Public operations
    # =========================================================================

    def submit(self, request: BuildRequest) -> str:
        """
        Accept a build and schedule its pipeline. Returns the build id
        as soon as the initial ledger entry is written.

        Must be called from a running event loop.

        Raises:
            InvalidRequest: If the request is invalid
            StoreError: If the initial ledger write fails
        """
        request = validate_request(request)
        loop = asyncio.get_running_loop()

        build_id = str(uuid.uuid4())
        self._ledger.create(Build(
            id=build_id,
            source_location=request.source_location,
            build_command=request.build_command,
            build_output_dir=request.build_output_dir,
        ))
        metrics.inc("builds_submitted_total")
        logger.info(
            f"build_submitted build_id={build_id}",
            extra={"build_id": build_id, "state": BuildState.PENDING.value},
        )

        task = loop.create_task(self._run_pipeline(build_id, request), name=f"build-{build_id}")
        self._tasks[build_id] = task
        task.add_done_callback(lambda _: self._task_done(build_id))
        metrics.set_builds_in_flight(len(self._tasks))
        return build_id

    def _task_done(self, build_id: str) -> None:
        self._tasks.pop(build_id, None)
        metrics.set_builds_in_flight(len(self._tasks))

    def get(self, build_id: str) -> Build:
        """Current build record. Raises NotFound."""
        return self._ledger.get(build_id)

    def is_active(self, build_id: str) -> bool:
        task = self._tasks.get(build_id)
        return task is not None and not task.done()

    async def wait(self, build_id: str, timeout: Optional[float] = None) -> Build:
        """Wait for a build's task to finish (or the timeout) and return the record."""
        task = self._tasks.get(build_id)
        if task is not None:
            await asyncio.wait({task}, timeout=timeout)
        return self._ledger.get(build_id)

    async def cancel(self, build_id: str) -> Build:
        """
        Cancel an in-flight build.

        Raises:
            NotFound: Unknown build id
            InvalidTransition: Build already reached a terminal state
        """
        build = self._ledger.get(build_id)
        if build.state.is_terminal:
            raise InvalidTransition(f"Build already {build.state.value}")

        task = self._tasks.get(build_id)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})

        build = self._ledger.get(build_id)
        if not build.state.is_terminal:
            # Task never started (or belongs to a previous process)
            ctx = _RunContext(build_id=build_id, image_tag=self.image_tag_for(build_id), reached=build.state)
            await self._fail(ctx, BuildCancelled())
            await self._release(ctx)
            await self._release_workspace(build_id)
            build = self._ledger.get(build_id)
        return build

    async def shutdown(self) -> None:
        """Cancel every in-flight build and wait for cleanup."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)
        logger.info(f"orchestrator_shutdown cancelled={len(tasks)}")

    def fail_interrupted(self) -> int:
        """
        Mark builds left non-terminal by a previous process as failed.
        Returns count updated.
        """
        stale = []
        for state in BuildState:
            if state.is_terminal:
                continue
            offset = 0
            while True:
                builds, total = self._ledger.list_builds(limit=100, offset=offset, state=state)
                stale.extend(b for b in builds if not self.is_active(b.id))
                offset += len(builds)
                if not builds or offset >= total:
                    break

        count = 0
        for build in stale:
            self._ledger.append_log(build.id, f"[{build.state.value}] {INTERRUPTED_DETAIL}\n")
            self._ledger.update_state(build.id, BuildState.FAILED, detail=INTERRUPTED_DETAIL)
            count += 1
        if count:
            logger.info(f"interrupted_builds_failed count={count}")
        return count

    # =========================================================================
    # Pipeline
    # =========================================================================

    async def _run_pipeline(self, build_id: str, request: BuildRequest) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.pipeline_deadline
        ctx = _RunContext(build_id=build_id, image_tag=self.image_tag_for(build_id))

        try:
            await self._transition(ctx, BuildState.CLONING)
            local_path: Path = await self._call_stage(
                ctx, SourceUnavailable, deadline, self._settings.clone_timeout,
                self._materializer.materialize, request.source_location, build_id,
            )

            await self._transition(ctx, BuildState.BUILDING)
            image_ref, log = await self._call_stage(
                ctx, BuildFailed, deadline, self._settings.build_timeout,
                self._builder.build, local_path, request.build_output_dir,
                request.build_command, ctx.image_tag,
            )
            await self._ledger_call(self._ledger.append_log, build_id, log)

            await self._transition(ctx, BuildState.PUBLISHING, image_ref=image_ref)
            published_ref = await self._call_stage(
                ctx, PublishFailed, deadline, self._settings.publish_timeout,
                self._publisher.publish, image_ref,
            )
            ctx.published_ref = published_ref

            await self._transition(ctx, BuildState.DEPLOYING, detail=published_ref)
            endpoint = await self._call_stage(
                ctx, LaunchFailed, deadline, self._settings.launch_timeout,
                self._launcher.launch, published_ref, build_id,
            )

            await self._transition(ctx, BuildState.RUNNING, detail=endpoint, endpoint=endpoint)
            metrics.inc("builds_running_total")

        except StageError as e:
            if isinstance(e, BuildFailed) and e.log:
                await self._safe_append_log(build_id, e.log)
            await self._fail(ctx, e)
            await self._release(ctx)
        except asyncio.CancelledError:
            await self._fail(ctx, BuildCancelled())
            await self._release(ctx)
            raise
        except StoreError as e:
            logger.exception(
                f"build_ledger_error build_id={build_id}",
                extra={"build_id": build_id},
            )
            await self._fail(ctx, StageError(f"Ledger error: {e}"))
            await self._release(ctx)
        except Exception as e:
            logger.exception(
                f"build_unexpected_error build_id={build_id}",
                extra={"build_id": build_id},
            )
            await self._fail(ctx, StageError(f"Unexpected error: {type(e).__name__}"))
            await self._release(ctx)
        finally:
            await self._release_workspace(build_id)

    async def _ledger_call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Run a blocking ledger call in a worker thread.

        A cancelled caller still waits for the write to land, so a late write
        can never overwrite the failure recorded after it.
        """
        future = asyncio.ensure_future(asyncio.to_thread(fn, *args, **kwargs))
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            await asyncio.wait({future})
            raise

    async def _call_stage(
        self,
        ctx: _RunContext,
        error_cls: type[StageError],
        deadline: float,
        stage_timeout: int,
        fn: Callable[..., Any],
        *args: Any,
    ) -> Any:
        """Run a blocking stage call in a thread, bounded by its timeout and the deadline."""
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise error_cls("Pipeline deadline exceeded")

        budget = stage_timeout + STAGE_GRACE_SECONDS
        timeout = min(budget, remaining)
        future = asyncio.ensure_future(asyncio.to_thread(fn, *args))
        ctx.inflight = future
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout)
        except asyncio.TimeoutError:
            if timeout < budget:
                raise error_cls("Pipeline deadline exceeded")
            raise error_cls(f"{error_cls.stage} stage timed out after {stage_timeout}s")

    async def _transition(
        self,
        ctx: _RunContext,
        state: BuildState,
        detail: Optional[str] = None,
        image_ref: Optional[str] = None,
        endpoint: Optional[str] = None,
    ) -> Build:
        """Persist a state change and its event."""
        if not ctx.reached.can_transition_to(state):
            raise InvalidTransition(f"{ctx.reached.value} -> {state.value}")
        build = await self._ledger_call(
            self._ledger.update_state,
            ctx.build_id, state, detail=detail, image_ref=image_ref, endpoint=endpoint,
        )
        ctx.reached = state
        logger.info(
            f"build_state build_id={ctx.build_id} state={state.value}",
            extra={"build_id": ctx.build_id, "state": state.value},
        )
        return build

    async def _fail(self, ctx: _RunContext, error: StageError) -> None:
        """Record a terminal failure. Never raises."""
        message = str(error) or type(error).__name__
        try:
            current = (await self._ledger_call(self._ledger.get, ctx.build_id)).state
            if current.is_terminal:
                return
            # ctx.reached keeps the last stage entered so _release knows what exists
            ctx.reached = current
            await self._safe_append_log(ctx.build_id, f"[{error.stage}] {message}\n")
            await self._ledger_call(
                self._ledger.update_state, ctx.build_id, BuildState.FAILED, detail=message,
            )
        except Exception:
            logger.exception(
                f"build_fail_record_error build_id={ctx.build_id}",
                extra={"build_id": ctx.build_id},
            )
            return

        if isinstance(error, BuildCancelled):
            metrics.inc("builds_cancelled_total")
        metrics.inc("builds_failed_total")
        metrics.stage_failed(error.stage)
        logger.info(
            f"build_failed build_id={ctx.build_id} stage={error.stage} error={message}",
            extra={"build_id": ctx.build_id, "state": BuildState.FAILED.value, "stage": error.stage},
        )

    async def _safe_append_log(self, build_id: str, text: str) -> None:
        if not text.endswith("\n"):
            text += "\n"
        try:
            await self._ledger_call(self._ledger.append_log, build_id, text)
        except StoreError:
            logger.exception(f"build_log_append_error build_id={build_id}", extra={"build_id": build_id})

    async def _release(self, ctx: _RunContext) -> None:
        """Release the image and container created by an unsuccessful build."""
        if ctx.inflight is not None and not ctx.inflight.done():
            await asyncio.wait({ctx.inflight}, timeout=RELEASE_WAIT_SECONDS)

        order = [BuildState.BUILDING, BuildState.PUBLISHING, BuildState.DEPLOYING]
        reached = ctx.reached

        steps = []
        if reached in order[2:]:
            steps.append((self._launcher.release, ctx.build_id))
        if reached in order[1:] and ctx.published_ref:
            steps.append((self._publisher.release, ctx.published_ref))
        if reached in order:
            steps.append((self._builder.release, ctx.image_tag))

        for fn, arg in steps:
            try:
                await asyncio.to_thread(fn, arg)
            except Exception as e:
                logger.warning(
                    f"build_release_failed build_id={ctx.build_id} error_type={type(e).__name__}",
                    extra={"build_id": ctx.build_id},
                )

    async def _release_workspace(self, build_id: str) -> None:
        if self._settings.keep_workspaces:
            return
        try:
            await asyncio.to_thread(self._materializer.release, build_id)
        except Exception as e:
            logger.warning(
                f"workspace_release_failed build_id={build_id} error_type={type(e).__name__}",
                extra={"build_id": build_id},
            )


def create_orchestrator(settings: Optional[Settings] = None, ledger: Optional[Ledger] = None) -> Orchestrator:
    """Wire the orchestrator with the git and docker stage implementations."""
    from launchpad.core.docker_cli import DockerCLI
    from launchpad.core.image_builder import DockerImageBuilder
    from launchpad.core.launcher import DockerContainerLauncher
    from launchpad.core.ledger import SqlLedger
    from launchpad.core.materializer import GitMaterializer
    from launchpad.core.publisher import DockerRegistryPublisher
    from launchpad.core.workspace import WorkspaceManager

    settings = settings or get_settings()
    docker = DockerCLI(settings.docker_bin)
    workspaces = WorkspaceManager(settings.workspaces_dir)

    return Orchestrator(
        ledger=ledger or SqlLedger(),
        materializer=GitMaterializer(
            workspaces,
            timeout=settings.clone_timeout,
            allowed_schemes=settings.allowed_schemes,
            allowed_hosts=settings.allowed_hosts,
            git_bin=settings.git_bin,
        ),
        builder=DockerImageBuilder(
            docker,
            timeout=settings.build_timeout,
            static_base_image=settings.static_base_image,
            static_port=settings.static_port,
        ),
        publisher=DockerRegistryPublisher(
            docker,
            registry=settings.registry,
            timeout=settings.publish_timeout,
        ),
        launcher=DockerContainerLauncher(
            docker,
            timeout=settings.launch_timeout,
            public_host=settings.public_host,
            readiness_path=settings.readiness_path,
            readiness_timeout=settings.readiness_timeout,
        ),
        settings=settings,
    )
