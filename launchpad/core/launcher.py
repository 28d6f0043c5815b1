"""
Container launcher: creates and starts a container for a build and resolves
its host-reachable endpoint.

Containers are named and labelled by build id. A container that was created
but could not be started or resolved is removed before the error propagates.
"""
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from launchpad.core.commands import CommandError
from launchpad.core.docker_cli import DockerCLI, DockerCommandError
from launchpad.core.errors import LaunchFailed

logger = logging.getLogger(__name__)

LABEL_BUILD_ID = "launchpad.build_id"
PORT_POLL_INTERVAL = 0.5


def container_name_for(build_id: str) -> str:
    return f"launchpad-{build_id}"


class ContainerLauncher(ABC):
    """Capability: run a container from an image and resolve its endpoint."""

    @abstractmethod
    def launch(self, published_ref: str, build_id: str) -> str:
        """
        Create and start a container, return its endpoint (host:port).

        Raises:
            LaunchFailed: If creation, start or port resolution fails
        """

    def release(self, build_id: str) -> None:
        """Remove the container for a build. Default: nothing to release."""
        return None


def first_published_port(inspect_doc: dict[str, Any]) -> Optional[str]:
    """
    Pick the host port of the lowest published container port.

    Ports look like {"80/tcp": [{"HostIp": "0.0.0.0", "HostPort": "49153"}]}.
    """
    ports = (inspect_doc.get("NetworkSettings") or {}).get("Ports") or {}

    def sort_key(item):
        number = item[0].split("/", 1)[0]
        return (int(number) if number.isdigit() else 0, item[0])

    for _, bindings in sorted(ports.items(), key=sort_key):
        for binding in bindings or []:
            host_port = binding.get("HostPort")
            if host_port:
                return str(host_port)
    return None


class DockerContainerLauncher(ContainerLauncher):
    """Runs containers with the docker CLI, publishing all exposed ports."""

    def __init__(
        self,
        docker: DockerCLI,
        timeout: int = 120,
        public_host: str = "localhost",
        readiness_path: Optional[str] = None,
        readiness_timeout: int = 30,
    ):
        self._docker = docker
        self._timeout = timeout
        self._public_host = public_host
        self._readiness_path = readiness_path
        self._readiness_timeout = readiness_timeout

    def launch(self, published_ref: str, build_id: str) -> str:
        name = container_name_for(build_id)
        deadline = time.monotonic() + self._timeout

        try:
            self._docker.run(
                [
                    "create",
                    "--name", name,
                    "--label", f"{LABEL_BUILD_ID}={build_id}",
                    "--publish-all",
                    published_ref,
                ],
                timeout=self._timeout,
            )
        except (DockerCommandError, CommandError) as e:
            # Nothing to clean up if create itself failed, but a timed out
            # create may still have left a container behind.
            self.release(build_id)
            raise LaunchFailed(f"Container create failed: {e}") from e

        try:
            self._docker.run(["start", name], timeout=self._remaining(deadline))
            port = self._wait_for_port(name, deadline)
            endpoint = f"{self._public_host}:{port}"
            if self._readiness_path:
                self._wait_for_ready(endpoint)
        except (DockerCommandError, CommandError, LaunchFailed) as e:
            self.release(build_id)
            if isinstance(e, LaunchFailed):
                raise
            raise LaunchFailed(f"Container start failed: {e}") from e

        logger.info(f"container_started build_id={build_id} endpoint={endpoint}")
        return endpoint

    def release(self, build_id: str) -> None:
        name = container_name_for(build_id)
        try:
            if self._docker.remove_container(name):
                logger.info(f"container_removed build_id={build_id}")
        except CommandError as e:
            logger.warning(f"container_release_failed build_id={build_id} error={e}")

    def _remaining(self, deadline: float) -> int:
        remaining = int(deadline - time.monotonic())
        if remaining <= 0:
            raise LaunchFailed(f"Container launch timed out after {self._timeout}s")
        return remaining

    def _wait_for_port(self, name: str, deadline: float) -> str:
        """Inspect until a published port shows up or the container stops."""
        while True:
            doc = self._docker.inspect(name, timeout=self._remaining(deadline))
            state = doc.get("State") or {}
            if not state.get("Running", False):
                status = state.get("Status", "unknown")
                raise LaunchFailed(
                    f"Container is not running (status={status}, exit code={state.get('ExitCode')})"
                )
            port = first_published_port(doc)
            if port:
                return port
            exposed = (doc.get("Config") or {}).get("ExposedPorts") or {}
            if not exposed:
                raise LaunchFailed("Container image exposes no ports")
            if time.monotonic() + PORT_POLL_INTERVAL >= deadline:
                raise LaunchFailed("Timed out resolving published port")
            time.sleep(PORT_POLL_INTERVAL)

    def _wait_for_ready(self, endpoint: str) -> None:
        """Poll the readiness path until the container answers."""
        url = f"http://{endpoint}{self._readiness_path}"
        deadline = time.monotonic() + self._readiness_timeout
        delay = 0.5
        last_error = "no response"

        with httpx.Client(timeout=5.0) as client:
            while time.monotonic() < deadline:
                try:
                    response = client.get(url)
                    if response.status_code < 500:
                        return
                    last_error = f"HTTP {response.status_code}"
                except httpx.RequestError as e:
                    last_error = type(e).__name__
                time.sleep(delay)
                delay = min(delay * 2, 5.0)

        raise LaunchFailed(
            f"Container did not become ready within {self._readiness_timeout}s: {last_error}"
        )
