"""
Registry publisher: makes a built image available to the runtime target.
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional

from launchpad.core.commands import CommandError
from launchpad.core.docker_cli import DockerCLI, DockerCommandError
from launchpad.core.errors import PublishFailed

logger = logging.getLogger(__name__)


class RegistryPublisher(ABC):
    """Capability: push a tagged image to a registry."""

    @abstractmethod
    def publish(self, image_ref: str) -> str:
        """
        Publish an image and return the reference the runtime should use.

        Raises:
            PublishFailed: On auth, network or registry-side rejection
        """

    def release(self, published_ref: str) -> None:
        """Drop local copies made while publishing. Default: nothing."""
        return None


class DockerRegistryPublisher(RegistryPublisher):
    """
    Tags and pushes images with the docker CLI.

    Without a registry the runtime consumes local images directly; the stage
    still runs and verifies the image exists.
    """

    def __init__(self, docker: DockerCLI, registry: Optional[str] = None, timeout: int = 300):
        self._docker = docker
        self._registry = registry.rstrip("/") if registry else None
        self._timeout = timeout

    def published_ref_for(self, image_ref: str) -> str:
        if not self._registry:
            return image_ref
        return f"{self._registry}/{image_ref}"

    def publish(self, image_ref: str) -> str:
        try:
            if not self._registry:
                if not self._docker.image_exists(image_ref, timeout=self._timeout):
                    raise PublishFailed(f"Image not found locally: {image_ref}")
                return image_ref

            target = self.published_ref_for(image_ref)
            self._docker.run(["tag", image_ref, target], timeout=self._timeout)
            try:
                self._docker.run(["push", target], timeout=self._timeout)
            except DockerCommandError:
                self.release(target)
                raise
        except DockerCommandError as e:
            raise PublishFailed(str(e)) from e
        except CommandError as e:
            raise PublishFailed(str(e)) from e

        logger.info(f"image_published ref={target}")
        return target

    def release(self, published_ref: str) -> None:
        if not self._registry or not published_ref.startswith(self._registry + "/"):
            return None
        try:
            self._docker.remove_image(published_ref)
        except CommandError as e:
            logger.warning(f"published_image_release_failed image={published_ref} error={e}")
