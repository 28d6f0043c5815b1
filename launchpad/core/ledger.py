"""
Build ledger: the persisted record of every build and its event history.

The ledger is a passive store. The orchestrator is its only writer; the
status and event endpoints only read from it. Every state change is stored
together with the matching BuildEvent in one write, so the event sequence
always mirrors the observed state sequence.

Two implementations share the same contract:
- SqlLedger: SQLAlchemy-backed (SQLite by default)
- InMemoryLedger: lock-guarded dictionaries, for tests and ephemeral runs
"""
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from launchpad.core.errors import NotFound, StoreError
from launchpad.db.models import Build as BuildModel, BuildEvent as BuildEventModel
from launchpad.schemas.build import BuildState

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Build:
    """A build record (in-memory representation)."""
    id: str
    source_location: str
    build_command: str
    build_output_dir: str
    state: BuildState = BuildState.PENDING
    log: str = ""
    image_ref: Optional[str] = None
    endpoint: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class BuildEvent:
    """Immutable notification of a state transition."""
    build_id: str
    state: BuildState
    timestamp: datetime
    sequence: int
    detail: Optional[str] = None


def _next_timestamp(previous: Optional[datetime]) -> datetime:
    """Current time, nudged forward so timestamps strictly increase per build."""
    now = utcnow()
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


class Ledger(ABC):
    """Durable record of build state, logs and events."""

    @abstractmethod
    def create(self, build: Build) -> Build:
        """Store a new build and its initial event. Fails if the id exists."""

    @abstractmethod
    def update_state(
        self,
        build_id: str,
        state: BuildState,
        detail: Optional[str] = None,
        image_ref: Optional[str] = None,
        endpoint: Optional[str] = None,
    ) -> Build:
        """
        Persist a new state and append its event in one write.

        The endpoint is kept only for the running state and cleared for
        every other state. image_ref, once set, is never cleared.
        """

    @abstractmethod
    def append_log(self, build_id: str, text: str) -> None:
        """Append text to the build log."""

    @abstractmethod
    def get(self, build_id: str) -> Build:
        """Get a build by id. Raises NotFound."""

    @abstractmethod
    def list_events(self, build_id: str) -> list[BuildEvent]:
        """Events for a build in emission order. Raises NotFound."""

    @abstractmethod
    def list_builds(
        self,
        limit: int = 20,
        offset: int = 0,
        state: Optional[BuildState] = None,
    ) -> tuple[list[Build], int]:
        """Builds newest first, with the total count before pagination."""


# =============================================================================
# SQL implementation
# =============================================================================

def _model_to_build(model: BuildModel) -> Build:
    return Build(
        id=model.id,
        source_location=model.source_location,
        build_command=model.build_command,
        build_output_dir=model.build_output_dir,
        state=BuildState(model.state),
        log=model.log or "",
        image_ref=model.image_ref,
        endpoint=model.endpoint,
        created_at=datetime.fromisoformat(model.created_at),
        updated_at=datetime.fromisoformat(model.updated_at),
    )


def _model_to_event(model: BuildEventModel) -> BuildEvent:
    return BuildEvent(
        build_id=model.build_id,
        state=BuildState(model.state),
        timestamp=datetime.fromisoformat(model.timestamp),
        sequence=model.sequence,
        detail=model.detail,
    )


class SqlLedger(Ledger):
    """SQLAlchemy-backed ledger. One session per call."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        if session_factory is None:
            from launchpad.db.database import SessionLocal
            session_factory = SessionLocal
        self._session_factory = session_factory
        # Serialises read-modify-write per process; SQLite has no row locks
        self._write_lock = threading.Lock()

    def _get_model(self, db, build_id: str) -> BuildModel:
        model = db.query(BuildModel).filter(BuildModel.id == build_id).first()
        if not model:
            raise NotFound(build_id)
        return model

    def create(self, build: Build) -> Build:
        with self._write_lock:
            db = self._session_factory()
            try:
                created = build.created_at.isoformat()
                model = BuildModel(
                    id=build.id,
                    source_location=build.source_location,
                    build_command=build.build_command,
                    build_output_dir=build.build_output_dir,
                    state=build.state.value,
                    log=build.log,
                    image_ref=build.image_ref,
                    endpoint=None,
                    created_at=created,
                    updated_at=created,
                )
                model.events.append(BuildEventModel(
                    sequence=1,
                    state=build.state.value,
                    timestamp=created,
                ))
                db.add(model)
                db.commit()
                db.refresh(model)
                logger.info(f"ledger_build_created build_id={build.id} state={build.state.value}")
                return _model_to_build(model)
            except IntegrityError as e:
                db.rollback()
                raise StoreError(f"Build id already exists: {build.id}") from e
            except SQLAlchemyError as e:
                db.rollback()
                raise StoreError(f"Failed to create build: {type(e).__name__}") from e
            finally:
                db.close()

    def update_state(
        self,
        build_id: str,
        state: BuildState,
        detail: Optional[str] = None,
        image_ref: Optional[str] = None,
        endpoint: Optional[str] = None,
    ) -> Build:
        with self._write_lock:
            db = self._session_factory()
            try:
                model = self._get_model(db, build_id)
                last = (
                    db.query(BuildEventModel)
                    .filter(BuildEventModel.build_id == build_id)
                    .order_by(BuildEventModel.sequence.desc())
                    .first()
                )
                previous = datetime.fromisoformat(last.timestamp) if last else None
                now = _next_timestamp(previous)

                model.state = state.value
                model.updated_at = now.isoformat()
                if image_ref is not None:
                    model.image_ref = image_ref
                model.endpoint = endpoint if state == BuildState.RUNNING else None

                db.add(BuildEventModel(
                    build_id=build_id,
                    sequence=(last.sequence + 1) if last else 1,
                    state=state.value,
                    timestamp=now.isoformat(),
                    detail=detail,
                ))
                db.commit()
                db.refresh(model)
                return _model_to_build(model)
            except SQLAlchemyError as e:
                db.rollback()
                raise StoreError(f"Failed to update build state: {type(e).__name__}") from e
            finally:
                db.close()

    def append_log(self, build_id: str, text: str) -> None:
        with self._write_lock:
            db = self._session_factory()
            try:
                model = self._get_model(db, build_id)
                if text:
                    model.log = (model.log or "") + text
                    model.updated_at = utcnow().isoformat()
                    db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise StoreError(f"Failed to append build log: {type(e).__name__}") from e
            finally:
                db.close()

    def get(self, build_id: str) -> Build:
        db = self._session_factory()
        try:
            return _model_to_build(self._get_model(db, build_id))
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read build: {type(e).__name__}") from e
        finally:
            db.close()

    def list_events(self, build_id: str) -> list[BuildEvent]:
        db = self._session_factory()
        try:
            self._get_model(db, build_id)
            rows = (
                db.query(BuildEventModel)
                .filter(BuildEventModel.build_id == build_id)
                .order_by(BuildEventModel.sequence.asc())
                .all()
            )
            return [_model_to_event(row) for row in rows]
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read build events: {type(e).__name__}") from e
        finally:
            db.close()

    def list_builds(
        self,
        limit: int = 20,
        offset: int = 0,
        state: Optional[BuildState] = None,
    ) -> tuple[list[Build], int]:
        db = self._session_factory()
        try:
            query = db.query(BuildModel)
            if state is not None:
                query = query.filter(BuildModel.state == state.value)
            total = query.count()
            items = query.order_by(BuildModel.created_at.desc()).offset(offset).limit(limit).all()
            return [_model_to_build(item) for item in items], total
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to list builds: {type(e).__name__}") from e
        finally:
            db.close()


# =============================================================================
# In-memory implementation
# =============================================================================

class InMemoryLedger(Ledger):
    """Thread-safe in-memory ledger. Returns copies, never live records."""

    def __init__(self):
        self._lock = threading.Lock()
        self._builds: dict[str, Build] = {}
        self._events: dict[str, list[BuildEvent]] = {}

    def _require(self, build_id: str) -> Build:
        build = self._builds.get(build_id)
        if build is None:
            raise NotFound(build_id)
        return build

    def create(self, build: Build) -> Build:
        with self._lock:
            if build.id in self._builds:
                raise StoreError(f"Build id already exists: {build.id}")
            stored = replace(build, endpoint=None, updated_at=build.created_at)
            self._builds[build.id] = stored
            self._events[build.id] = [
                BuildEvent(
                    build_id=build.id,
                    state=build.state,
                    timestamp=build.created_at,
                    sequence=1,
                )
            ]
            logger.info(f"ledger_build_created build_id={build.id} state={build.state.value}")
            return replace(stored)

    def update_state(
        self,
        build_id: str,
        state: BuildState,
        detail: Optional[str] = None,
        image_ref: Optional[str] = None,
        endpoint: Optional[str] = None,
    ) -> Build:
        with self._lock:
            build = self._require(build_id)
            events = self._events[build_id]
            now = _next_timestamp(events[-1].timestamp if events else None)

            build.state = state
            build.updated_at = now
            if image_ref is not None:
                build.image_ref = image_ref
            build.endpoint = endpoint if state == BuildState.RUNNING else None

            events.append(BuildEvent(
                build_id=build_id,
                state=state,
                timestamp=now,
                sequence=len(events) + 1,
                detail=detail,
            ))
            return replace(build)

    def append_log(self, build_id: str, text: str) -> None:
        with self._lock:
            build = self._require(build_id)
            if text:
                build.log += text
                build.updated_at = utcnow()

    def get(self, build_id: str) -> Build:
        with self._lock:
            return replace(self._require(build_id))

    def list_events(self, build_id: str) -> list[BuildEvent]:
        with self._lock:
            self._require(build_id)
            return list(self._events[build_id])

    def list_builds(
        self,
        limit: int = 20,
        offset: int = 0,
        state: Optional[BuildState] = None,
    ) -> tuple[list[Build], int]:
        with self._lock:
            builds = [b for b in self._builds.values() if state is None or b.state == state]
            builds.sort(key=lambda b: b.created_at, reverse=True)
            total = len(builds)
            return [replace(b) for b in builds[offset:offset + limit]], total
