"""
Tests for the git and docker stage implementations.

External CLIs are mocked except for the run_command tests, which use
coreutils only.
"""
import json
from pathlib import Path
from unittest.mock import MagicMock, call, patch

import pytest

from launchpad.core.commands import CommandError, CommandResult, run_command
from launchpad.core.docker_cli import DockerCLI, DockerCommandError
from launchpad.core.errors import BuildFailed, LaunchFailed, PublishFailed, SourceUnavailable
from launchpad.core.image_builder import (
    GENERATED_DOCKERFILE,
    DockerImageBuilder,
    resolve_build_context,
)
from launchpad.core.launcher import DockerContainerLauncher, first_published_port
from launchpad.core.materializer import GitMaterializer, validate_source_location
from launchpad.core.publisher import DockerRegistryPublisher
from launchpad.core.workspace import WorkspaceManager, is_safe_relative_path


def result(cmd=None, exit_code=0, stdout="", stderr="", timed_out=False) -> CommandResult:
    return CommandResult(
        command=cmd or ["cmd"],
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
        duration_ms=3,
        timed_out=timed_out,
    )


# =============================================================================
# Subprocess Tests
# =============================================================================

class TestRunCommand:
    """Tests for run_command."""

    def test_captures_output(self):
        res = run_command(["echo", "hello"], timeout=10)
        assert res.ok
        assert res.stdout.strip() == "hello"

    def test_timeout_marks_result(self):
        res = run_command(["sleep", "5"], timeout=1)
        assert res.timed_out
        assert res.exit_code == -1
        assert not res.ok
        assert "TIMED OUT" in res.transcript()

    def test_string_command_rejected(self):
        with pytest.raises(CommandError):
            run_command("echo hello")

    def test_missing_binary_raises(self):
        with pytest.raises(CommandError):
            run_command(["definitely-not-a-real-binary-xyz"])

    def test_environment_is_minimal(self, monkeypatch):
        monkeypatch.setenv("LAUNCHPAD_SECRET_TOKEN", "s3cret")
        res = run_command(["env"], timeout=10)
        assert "LAUNCHPAD_SECRET_TOKEN" not in res.stdout
        assert "GIT_TERMINAL_PROMPT=0" in res.stdout

    def test_undecodable_output_replaced(self):
        res = run_command(["printf", "ok\\377\\376bad"], timeout=10)
        assert res.ok
        assert res.stdout.startswith("ok")
        assert res.stdout.endswith("bad")
        assert "\ufffd" in res.stdout


class TestSafePaths:
    """Tests for path validation and workspaces."""

    @pytest.mark.parametrize("path", ["dist", "build/output", ".", "./public"])
    def test_safe_paths(self, path):
        assert is_safe_relative_path(path)

    @pytest.mark.parametrize("path", ["", "/etc", "../x", "a/../../b"])
    def test_unsafe_paths(self, path):
        assert not is_safe_relative_path(path)

    def test_workspace_lifecycle(self, tmp_path):
        manager = WorkspaceManager(tmp_path / "ws")
        workspace = manager.create_workspace("b1")
        (workspace / "stale").write_text("x")

        # Re-creating starts fresh
        workspace = manager.create_workspace("b1")
        assert not (workspace / "stale").exists()
        assert manager.get_workspace("b1") == workspace

        assert manager.cleanup_workspace("b1")
        assert manager.get_workspace("b1") is None
        assert not manager.cleanup_workspace("b1")

    @pytest.mark.parametrize("build_id", ["../escape", "a/b", ""])
    def test_workspace_rejects_unsafe_ids(self, tmp_path, build_id):
        manager = WorkspaceManager(tmp_path / "ws")
        with pytest.raises(ValueError):
            manager.path_for(build_id)


# =============================================================================
# Docker CLI Tests
# =============================================================================

class TestDockerCLI:
    """Tests for the docker CLI wrapper."""

    def test_failure_uses_last_stderr_line(self):
        with patch("launchpad.core.docker_cli.run_command") as mock_run:
            mock_run.return_value = result(exit_code=1, stderr="warning\nno such image\n")
            with pytest.raises(DockerCommandError) as exc_info:
                DockerCLI("/usr/bin/docker").run(["pull", "x"])

        assert str(exc_info.value) == "docker pull failed: no such image"
        assert exc_info.value.result.exit_code == 1
        assert mock_run.call_args[0][0] == ["/usr/bin/docker", "pull", "x"]

    def test_timeout_message(self):
        with patch("launchpad.core.docker_cli.run_command") as mock_run:
            mock_run.return_value = result(exit_code=-1, timed_out=True)
            with pytest.raises(DockerCommandError, match="timed out after 7s"):
                DockerCLI("docker").run(["push", "x"], timeout=7)

    def test_unchecked_run_returns_result(self):
        with patch("launchpad.core.docker_cli.run_command") as mock_run:
            mock_run.return_value = result(exit_code=1)
            assert not DockerCLI("docker").image_exists("x")

    def test_inspect_returns_first_document(self):
        with patch("launchpad.core.docker_cli.run_command") as mock_run:
            mock_run.return_value = result(stdout=json.dumps([{"Id": "abc"}]))
            assert DockerCLI("docker").inspect("c1") == {"Id": "abc"}

    def test_inspect_invalid_json(self):
        with patch("launchpad.core.docker_cli.run_command") as mock_run:
            mock_run.return_value = result(stdout="not json")
            with pytest.raises(DockerCommandError):
                DockerCLI("docker").inspect("c1")

    def test_missing_docker_binary(self):
        with patch("launchpad.core.commands.shutil.which", return_value=None):
            with pytest.raises(CommandError, match="docker CLI not found"):
                DockerCLI().binary


# =============================================================================
# Materializer Tests
# =============================================================================

class TestValidateSourceLocation:
    """Tests for repository URL validation."""

    def test_https_url_allowed(self):
        validate_source_location("https://github.com/owner/repo.git", ("https",))

    @pytest.mark.parametrize("url", [
        "ftp://github.com/owner/repo.git",
        "ssh://github.com/owner/repo.git",
        "owner/repo",
        "https://github.com",
        "https:///repo.git",
    ])
    def test_rejected_urls(self, url):
        with pytest.raises(SourceUnavailable):
            validate_source_location(url, ("https",))

    def test_host_allow_list(self):
        validate_source_location("https://github.com/o/r", ("https",), ("github.com",))
        with pytest.raises(SourceUnavailable, match="host not allowed"):
            validate_source_location("https://evil.example/o/r", ("https",), ("github.com",))


class TestGitMaterializer:
    """Tests for git clone materialization."""

    @pytest.fixture
    def materializer(self, tmp_path):
        return GitMaterializer(WorkspaceManager(tmp_path / "ws"), timeout=30, git_bin="/usr/bin/git")

    def test_clone_into_build_workspace(self, materializer, tmp_path):
        with patch("launchpad.core.materializer.run_command") as mock_run:
            mock_run.return_value = result()
            path = materializer.materialize("https://github.com/o/r.git", "b1")

        assert path == tmp_path / "ws" / "b1" / "source"
        cmd = mock_run.call_args[0][0]
        assert cmd == ["/usr/bin/git", "clone", "--depth", "1", "--", "https://github.com/o/r.git", str(path)]
        assert mock_run.call_args[1]["timeout"] == 30

    def test_clone_failure(self, materializer):
        with patch("launchpad.core.materializer.run_command") as mock_run:
            mock_run.return_value = result(exit_code=128, stderr="fatal: repository not found\n")
            with pytest.raises(SourceUnavailable, match="git clone failed: fatal: repository not found"):
                materializer.materialize("https://github.com/o/missing.git", "b1")

    def test_clone_timeout(self, materializer):
        with patch("launchpad.core.materializer.run_command") as mock_run:
            mock_run.return_value = result(exit_code=-1, timed_out=True)
            with pytest.raises(SourceUnavailable, match="timed out after 30s"):
                materializer.materialize("https://github.com/o/r.git", "b1")

    def test_invalid_url_never_runs_git(self, materializer):
        with patch("launchpad.core.materializer.run_command") as mock_run:
            with pytest.raises(SourceUnavailable):
                materializer.materialize("ftp://github.com/o/r.git", "b1")
        mock_run.assert_not_called()

    def test_release_removes_workspace(self, materializer, tmp_path):
        with patch("launchpad.core.materializer.run_command", return_value=result()):
            materializer.materialize("https://github.com/o/r.git", "b1")
        materializer.release("b1")
        assert not (tmp_path / "ws" / "b1").exists()


# =============================================================================
# Image Builder Tests
# =============================================================================

@pytest.fixture
def source(tmp_path) -> Path:
    path = tmp_path / "ws" / "b1" / "source"
    (path / "dist").mkdir(parents=True)
    (path / "dist" / "index.html").write_text("<h1>hi</h1>")
    return path


class TestResolveBuildContext:
    def test_root_context(self, source):
        assert resolve_build_context(source, ".") == source.resolve()

    def test_missing_directory(self, source):
        with pytest.raises(BuildFailed, match="not found"):
            resolve_build_context(source, "build")

    def test_symlink_escape(self, source, tmp_path):
        (source / "out").symlink_to(tmp_path)
        with pytest.raises(BuildFailed, match="escapes"):
            resolve_build_context(source, "out")


class TestDockerImageBuilder:
    """Tests for the build command plus docker build."""

    def test_static_site_gets_generated_dockerfile(self, source):
        docker = MagicMock()
        builder = DockerImageBuilder(docker, timeout=60)

        with patch("launchpad.core.image_builder.run_command") as mock_run:
            mock_run.return_value = result(cmd=["npm", "run", "build"], stdout="built ok\n")
            image_ref, log = builder.build(source, "dist", "npm run build", "launchpad/b1:latest")

        assert image_ref == "launchpad/b1:latest"
        assert mock_run.call_args[0][0] == ["npm", "run", "build"]
        assert mock_run.call_args[1]["cwd"] == source
        assert "built ok" in log
        assert "static site" in log

        dockerfile = source.parent / GENERATED_DOCKERFILE
        content = dockerfile.read_text()
        assert "FROM nginx:alpine" in content
        assert "EXPOSE 80" in content

        args = docker.run.call_args[0][0]
        assert args == [
            "build", "--tag", "launchpad/b1:latest",
            "--file", str(dockerfile),
            str((source / "dist").resolve()),
        ]

    def test_existing_dockerfile_used(self, source):
        (source / "dist" / "Dockerfile").write_text("FROM scratch\n")
        docker = MagicMock()
        builder = DockerImageBuilder(docker, timeout=60)

        with patch("launchpad.core.image_builder.run_command", return_value=result()):
            builder.build(source, "dist", "true", "launchpad/b1:latest")

        assert "--file" not in docker.run.call_args[0][0]

    def test_command_failure_keeps_output(self, source):
        docker = MagicMock()
        builder = DockerImageBuilder(docker, timeout=60)

        with patch("launchpad.core.image_builder.run_command") as mock_run:
            mock_run.return_value = result(cmd=["make"], exit_code=2, stderr="make: *** [all] Error 2\n")
            with pytest.raises(BuildFailed) as exc_info:
                builder.build(source, "dist", "make", "launchpad/b1:latest")

        assert "exit code 2" in str(exc_info.value)
        assert "Error 2" in exc_info.value.log
        docker.run.assert_not_called()

    def test_docker_build_failure_keeps_both_logs(self, source):
        docker = MagicMock()
        docker.run.side_effect = DockerCommandError(
            "docker build failed: pull access denied",
            result(cmd=["docker", "build"], exit_code=1, stderr="pull access denied\n"),
        )
        builder = DockerImageBuilder(docker, timeout=60)

        with patch("launchpad.core.image_builder.run_command") as mock_run:
            mock_run.return_value = result(cmd=["make"], stdout="compiled\n")
            with pytest.raises(BuildFailed) as exc_info:
                builder.build(source, "dist", "make", "launchpad/b1:latest")

        assert "compiled" in exc_info.value.log
        assert "pull access denied" in exc_info.value.log

    def test_missing_output_dir_keeps_command_log(self, source):
        docker = MagicMock()
        builder = DockerImageBuilder(docker, timeout=60)

        with pytest.raises(BuildFailed, match="not found") as exc_info:
            builder.build(source, "public", "echo hello-from-build", "launchpad/b1:latest")

        assert "hello-from-build" in exc_info.value.log
        docker.run.assert_not_called()

    def test_dockerfile_write_error_keeps_command_log(self, source):
        docker = MagicMock()
        builder = DockerImageBuilder(docker, timeout=60)

        with patch("launchpad.core.image_builder.run_command") as mock_run, \
                patch.object(Path, "write_text", side_effect=OSError("Read-only file system")):
            mock_run.return_value = result(cmd=["make"], stdout="compiled\n")
            with pytest.raises(BuildFailed) as exc_info:
                builder.build(source, "dist", "make", "launchpad/b1:latest")

        assert f"Could not write {GENERATED_DOCKERFILE}" in str(exc_info.value)
        assert "Read-only file system" in str(exc_info.value)
        assert "compiled" in exc_info.value.log
        docker.run.assert_not_called()

    def test_undecodable_build_output(self, source):
        docker = MagicMock()
        builder = DockerImageBuilder(docker, timeout=60)

        image_ref, log = builder.build(
            source, "dist", "printf 'ok\\377\\376bad'", "launchpad/b1:latest"
        )

        assert image_ref == "launchpad/b1:latest"
        assert "ok\ufffd" in log
        assert "bad" in log
        docker.run.assert_called_once()

    def test_unparseable_command(self, source):
        builder = DockerImageBuilder(MagicMock())
        with pytest.raises(BuildFailed, match="Invalid build command"):
            builder.build(source, "dist", 'echo "unterminated', "launchpad/b1:latest")

    def test_release_removes_image(self):
        docker = MagicMock()
        DockerImageBuilder(docker).release("launchpad/b1:latest")
        docker.remove_image.assert_called_once_with("launchpad/b1:latest")


# =============================================================================
# Publisher Tests
# =============================================================================

class TestDockerRegistryPublisher:
    """Tests for tagging and pushing images."""

    def test_without_registry_verifies_local_image(self):
        docker = MagicMock()
        docker.image_exists.return_value = True
        publisher = DockerRegistryPublisher(docker)

        assert publisher.publish("launchpad/b1:latest") == "launchpad/b1:latest"
        docker.run.assert_not_called()

    def test_without_registry_missing_image(self):
        docker = MagicMock()
        docker.image_exists.return_value = False
        with pytest.raises(PublishFailed, match="not found locally"):
            DockerRegistryPublisher(docker).publish("launchpad/b1:latest")

    def test_tag_and_push(self):
        docker = MagicMock()
        publisher = DockerRegistryPublisher(docker, registry="registry.example.com/", timeout=45)

        published = publisher.publish("launchpad/b1:latest")

        assert published == "registry.example.com/launchpad/b1:latest"
        assert docker.run.call_args_list == [
            call(["tag", "launchpad/b1:latest", published], timeout=45),
            call(["push", published], timeout=45),
        ]

    def test_push_failure_removes_tag(self):
        docker = MagicMock()
        docker.run.side_effect = [result(), DockerCommandError("docker push failed: unauthorized")]
        publisher = DockerRegistryPublisher(docker, registry="registry.example.com")

        with pytest.raises(PublishFailed, match="unauthorized"):
            publisher.publish("launchpad/b1:latest")

        docker.remove_image.assert_called_once_with("registry.example.com/launchpad/b1:latest")

    def test_release_ignores_unpublished_refs(self):
        docker = MagicMock()
        DockerRegistryPublisher(docker, registry="registry.example.com").release("launchpad/b1:latest")
        docker.remove_image.assert_not_called()


# =============================================================================
# Launcher Tests
# =============================================================================

def inspect_doc(running=True, ports=None, exposed=None, status="running"):
    return {
        "State": {"Running": running, "Status": status, "ExitCode": 0 if running else 1},
        "Config": {"ExposedPorts": exposed if exposed is not None else {"80/tcp": {}}},
        "NetworkSettings": {"Ports": ports or {}},
    }


class TestFirstPublishedPort:
    def test_lowest_container_port_wins(self):
        doc = inspect_doc(ports={
            "8080/tcp": [{"HostIp": "0.0.0.0", "HostPort": "49200"}],
            "80/tcp": [{"HostIp": "0.0.0.0", "HostPort": "49153"}],
        })
        assert first_published_port(doc) == "49153"

    def test_unbound_ports_skipped(self):
        doc = inspect_doc(ports={"80/tcp": None})
        assert first_published_port(doc) is None


class TestDockerContainerLauncher:
    """Tests for container create/start and endpoint resolution."""

    def test_launch_returns_endpoint(self):
        docker = MagicMock()
        docker.inspect.return_value = inspect_doc(
            ports={"80/tcp": [{"HostIp": "0.0.0.0", "HostPort": "49153"}]}
        )
        launcher = DockerContainerLauncher(docker, timeout=30, public_host="deploy.local")

        endpoint = launcher.launch("launchpad/b1:latest", "b1")

        assert endpoint == "deploy.local:49153"
        create_args = docker.run.call_args_list[0][0][0]
        assert create_args[:3] == ["create", "--name", "launchpad-b1"]
        assert "launchpad.build_id=b1" in create_args
        assert "--publish-all" in create_args
        assert create_args[-1] == "launchpad/b1:latest"
        assert docker.run.call_args_list[1][0][0] == ["start", "launchpad-b1"]
        docker.remove_container.assert_not_called()

    def test_start_failure_removes_container(self):
        docker = MagicMock()
        docker.run.side_effect = [result(), DockerCommandError("docker start failed: port is already allocated")]
        launcher = DockerContainerLauncher(docker, timeout=30)

        with pytest.raises(LaunchFailed, match="port is already allocated"):
            launcher.launch("launchpad/b1:latest", "b1")

        docker.remove_container.assert_called_once_with("launchpad-b1")

    def test_exited_container_fails(self):
        docker = MagicMock()
        docker.inspect.return_value = inspect_doc(running=False, status="exited")
        launcher = DockerContainerLauncher(docker, timeout=30)

        with pytest.raises(LaunchFailed, match="status=exited"):
            launcher.launch("launchpad/b1:latest", "b1")
        docker.remove_container.assert_called_once_with("launchpad-b1")

    def test_no_exposed_ports_fails(self):
        docker = MagicMock()
        docker.inspect.return_value = inspect_doc(exposed={})
        launcher = DockerContainerLauncher(docker, timeout=30)

        with pytest.raises(LaunchFailed, match="exposes no ports"):
            launcher.launch("launchpad/b1:latest", "b1")
        docker.remove_container.assert_called_once_with("launchpad-b1")

    def test_readiness_probe(self):
        docker = MagicMock()
        docker.inspect.return_value = inspect_doc(
            ports={"80/tcp": [{"HostIp": "0.0.0.0", "HostPort": "49153"}]}
        )
        launcher = DockerContainerLauncher(docker, timeout=30, readiness_path="/healthz")

        with patch("launchpad.core.launcher.httpx.Client") as mock_client_cls:
            http = mock_client_cls.return_value.__enter__.return_value
            http.get.return_value.status_code = 200
            endpoint = launcher.launch("launchpad/b1:latest", "b1")

        assert endpoint == "localhost:49153"
        http.get.assert_called_once_with("http://localhost:49153/healthz")
