"""
Pytest configuration and fixtures.
"""
import os
import sys
import tempfile
import threading
import time
from pathlib import Path
from typing import Optional

# Keep test databases and workspaces out of the project data directory
_TEST_DATA_DIR = tempfile.mkdtemp(prefix="launchpad-tests-")
os.environ["LAUNCHPAD_DATABASE_URL"] = f"sqlite:///{_TEST_DATA_DIR}/builds.db"
os.environ["LAUNCHPAD_WORKSPACES_DIR"] = f"{_TEST_DATA_DIR}/workspaces"

import pytest
from fastapi.testclient import TestClient

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from launchpad.core.config import Settings
from launchpad.core.image_builder import ImageBuilder
from launchpad.core.launcher import ContainerLauncher
from launchpad.core.ledger import InMemoryLedger
from launchpad.core.materializer import SourceMaterializer
from launchpad.core.orchestrator import Orchestrator
from launchpad.core.publisher import RegistryPublisher


# =============================================================================
# Stub stages
# =============================================================================

class StubMaterializer(SourceMaterializer):
    """Creates an empty source directory, or fails / blocks on demand."""

    def __init__(self, base_dir: Path, error: Optional[Exception] = None,
                 gate: Optional[threading.Event] = None, delay: float = 0.0):
        self.base_dir = base_dir
        self.error = error
        self.gate = gate
        self.delay = delay
        self.calls: list[str] = []
        self.released: list[str] = []

    def materialize(self, source_location: str, build_id: str) -> Path:
        self.calls.append(source_location)
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        path = self.base_dir / build_id / "source"
        path.mkdir(parents=True, exist_ok=True)
        return path

    def release(self, build_id: str) -> None:
        self.released.append(build_id)


class StubBuilder(ImageBuilder):
    def __init__(self, log: str = "step 1/2\nstep 2/2\n", error: Optional[Exception] = None,
                 delay: float = 0.0):
        self.log = log
        self.error = error
        self.delay = delay
        self.calls: list[tuple] = []
        self.released: list[str] = []

    def build(self, local_path, build_output_dir, build_command, tag):
        self.calls.append((local_path, build_output_dir, build_command, tag))
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return tag, self.log

    def release(self, image_ref: str) -> None:
        self.released.append(image_ref)


class StubPublisher(RegistryPublisher):
    def __init__(self, registry: Optional[str] = None, error: Optional[Exception] = None):
        self.registry = registry
        self.error = error
        self.calls: list[str] = []
        self.released: list[str] = []

    def publish(self, image_ref: str) -> str:
        self.calls.append(image_ref)
        if self.error is not None:
            raise self.error
        return f"{self.registry}/{image_ref}" if self.registry else image_ref

    def release(self, published_ref: str) -> None:
        self.released.append(published_ref)


class StubLauncher(ContainerLauncher):
    def __init__(self, endpoint: str = "localhost:49153", error: Optional[Exception] = None):
        self.endpoint = endpoint
        self.error = error
        self.calls: list[tuple] = []
        self.released: list[str] = []

    def launch(self, published_ref: str, build_id: str) -> str:
        self.calls.append((published_ref, build_id))
        if self.error is not None:
            raise self.error
        return self.endpoint

    def release(self, build_id: str) -> None:
        self.released.append(build_id)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def settings(tmp_path):
    """Settings with short timeouts and a temporary workspace."""
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'builds.db'}",
        workspaces_dir=tmp_path / "workspaces",
        clone_timeout=10,
        build_timeout=10,
        publish_timeout=10,
        launch_timeout=10,
        pipeline_deadline=30,
    )


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def stages(tmp_path):
    """Stub stages that always succeed. Tests tweak them before submitting."""
    return {
        "materializer": StubMaterializer(tmp_path / "sources"),
        "builder": StubBuilder(),
        "publisher": StubPublisher(),
        "launcher": StubLauncher(),
    }


@pytest.fixture
def orchestrator(ledger, stages, settings):
    return Orchestrator(ledger=ledger, settings=settings, **stages)


@pytest.fixture
def client(orchestrator, settings):
    """Test client running the app lifespan (keeps the event loop alive)."""
    from main import create_app

    app = create_app(orchestrator=orchestrator, settings=settings)
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client


def wait_for_terminal(client, build_id: str, timeout: float = 5.0) -> str:
    """Poll the status endpoint until the build is running or failed."""
    deadline = time.monotonic() + timeout
    status = None
    while time.monotonic() < deadline:
        status = client.get(f"/api/v1/build/{build_id}").json()["status"]
        if status in ("running", "failed"):
            return status
        time.sleep(0.02)
    raise AssertionError(f"build {build_id} still {status} after {timeout}s")


@pytest.fixture
def wait_terminal():
    return wait_for_terminal
