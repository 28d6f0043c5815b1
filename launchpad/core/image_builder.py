"""
Image builder: runs the build command and builds a tagged container image
from the build output directory.
"""
import logging
import shlex
import time
from abc import ABC, abstractmethod
from pathlib import Path

from launchpad.core.commands import CommandError, run_command
from launchpad.core.docker_cli import DockerCLI, DockerCommandError
from launchpad.core.errors import BuildFailed
from launchpad.core.workspace import is_safe_relative_path

logger = logging.getLogger(__name__)

GENERATED_DOCKERFILE = "Dockerfile.launchpad"

STATIC_SITE_DOCKERFILE = """\
FROM {base_image}
COPY . /usr/share/nginx/html
EXPOSE {port}
"""


class ImageBuilder(ABC):
    """Capability: build an image from a context directory."""

    @abstractmethod
    def build(
        self,
        local_path: Path,
        build_output_dir: str,
        build_command: str,
        tag: str,
    ) -> tuple[str, str]:
        """
        Run the build and return (image_ref, log).

        Raises:
            BuildFailed: With whatever log was captured before the failure
        """

    def release(self, image_ref: str) -> None:
        """Remove a built image. Default: nothing to release."""
        return None


def resolve_build_context(local_path: Path, build_output_dir: str) -> Path:
    """
    Resolve the build context inside the materialized source.

    Raises:
        BuildFailed: If the directory escapes the source tree or does not exist
    """
    if build_output_dir in ("", ".", "./"):
        context = local_path
    elif not is_safe_relative_path(build_output_dir):
        raise BuildFailed(f"Unsafe build output directory: {build_output_dir}")
    else:
        context = local_path / build_output_dir

    root = local_path.resolve()
    resolved = context.resolve()
    if resolved != root and root not in resolved.parents:
        raise BuildFailed(f"Build output directory escapes the source tree: {build_output_dir}")
    if not resolved.is_dir():
        raise BuildFailed(f"Build output directory not found: {build_output_dir}")
    return resolved


class DockerImageBuilder(ImageBuilder):
    """Runs the build command without a shell, then ``docker build``."""

    def __init__(
        self,
        docker: DockerCLI,
        timeout: int = 600,
        static_base_image: str = "nginx:alpine",
        static_port: int = 80,
    ):
        self._docker = docker
        self._timeout = timeout
        self._static_base_image = static_base_image
        self._static_port = static_port

    def _remaining(self, deadline: float, log: str) -> int:
        remaining = int(deadline - time.monotonic())
        if remaining <= 0:
            raise BuildFailed(f"Build timed out after {self._timeout}s", log)
        return remaining

    def build(
        self,
        local_path: Path,
        build_output_dir: str,
        build_command: str,
        tag: str,
    ) -> tuple[str, str]:
        deadline = time.monotonic() + self._timeout
        log = ""

        try:
            argv = shlex.split(build_command)
        except ValueError as e:
            raise BuildFailed(f"Invalid build command: {e}")
        if not argv:
            raise BuildFailed("Build command is empty")

        # Step 1: build command in the repository root
        try:
            result = run_command(argv, cwd=local_path, timeout=self._remaining(deadline, log))
        except CommandError as e:
            raise BuildFailed(f"Build command could not be started: {e}", log) from e
        log += result.transcript()
        if result.timed_out:
            raise BuildFailed(f"Build command timed out after {self._timeout}s", log)
        if result.exit_code != 0:
            raise BuildFailed(f"Build command failed with exit code {result.exit_code}", log)

        try:
            context = resolve_build_context(local_path, build_output_dir)
        except BuildFailed as e:
            raise BuildFailed(str(e), log) from e

        # Step 2: image build
        args = ["build", "--tag", tag]
        if not (context / "Dockerfile").is_file():
            dockerfile = local_path.parent / GENERATED_DOCKERFILE
            try:
                dockerfile.write_text(STATIC_SITE_DOCKERFILE.format(
                    base_image=self._static_base_image,
                    port=self._static_port,
                ))
            except OSError as e:
                raise BuildFailed(f"Could not write {GENERATED_DOCKERFILE}: {e}", log) from e
            args.extend(["--file", str(dockerfile)])
            log += f"No Dockerfile in {build_output_dir}; serving it as a static site\n"
        args.append(str(context))

        try:
            self._docker.run(args, timeout=self._remaining(deadline, log), cwd=local_path)
        except DockerCommandError as e:
            if e.result is not None:
                log += e.result.transcript()
            raise BuildFailed(str(e), log) from e
        except CommandError as e:
            raise BuildFailed(str(e), log) from e

        log += f"Built image {tag}\n"
        logger.info(f"image_built tag={tag}")
        return tag, log

    def release(self, image_ref: str) -> None:
        try:
            self._docker.remove_image(image_ref)
        except CommandError as e:
            logger.warning(f"image_release_failed image={image_ref} error={e}")
