"""
Service configuration from environment variables.
All settings are optional with safe defaults.
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

PROJECT_ROOT = Path(__file__).parent.parent.parent
DATA_DIR = PROJECT_ROOT / "data"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: tuple[str, ...] = ()) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(item.strip().lower() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    """Launchpad configuration (immutable)."""
    database_url: str = f"sqlite:///{DATA_DIR / 'builds.db'}"
    workspaces_dir: Path = DATA_DIR / "workspaces"
    log_level: str = "INFO"

    # Timeouts (seconds)
    clone_timeout: int = 120
    build_timeout: int = 600
    publish_timeout: int = 300
    launch_timeout: int = 120
    pipeline_deadline: int = 900

    # Source allow-list
    allowed_schemes: tuple[str, ...] = ("https",)
    allowed_hosts: tuple[str, ...] = field(default_factory=tuple)  # empty = any host

    # Images
    registry: Optional[str] = None  # None = runtime consumes local images
    image_prefix: str = "launchpad"
    static_base_image: str = "nginx:alpine"
    static_port: int = 80

    # Containers
    public_host: str = "localhost"
    readiness_path: Optional[str] = None
    readiness_timeout: int = 30

    keep_workspaces: bool = False
    docker_bin: Optional[str] = None  # None = resolve from PATH
    git_bin: Optional[str] = None

    @property
    def publish_enabled(self) -> bool:
        """Check if images are pushed to a remote registry."""
        return bool(self.registry)


def get_settings() -> Settings:
    """Load configuration from environment."""
    registry = os.getenv("LAUNCHPAD_REGISTRY", "").strip().rstrip("/") or None
    readiness_path = os.getenv("LAUNCHPAD_READINESS_PATH", "").strip() or None
    if readiness_path and not readiness_path.startswith("/"):
        readiness_path = "/" + readiness_path

    return Settings(
        database_url=os.getenv("LAUNCHPAD_DATABASE_URL") or Settings.database_url,
        workspaces_dir=Path(os.getenv("LAUNCHPAD_WORKSPACES_DIR") or Settings.workspaces_dir),
        log_level=os.getenv("LAUNCHPAD_LOG_LEVEL", "INFO"),
        clone_timeout=_env_int("LAUNCHPAD_CLONE_TIMEOUT", 120),
        build_timeout=_env_int("LAUNCHPAD_BUILD_TIMEOUT", 600),
        publish_timeout=_env_int("LAUNCHPAD_PUBLISH_TIMEOUT", 300),
        launch_timeout=_env_int("LAUNCHPAD_LAUNCH_TIMEOUT", 120),
        pipeline_deadline=_env_int("LAUNCHPAD_PIPELINE_DEADLINE", 900),
        allowed_schemes=_env_list("LAUNCHPAD_ALLOWED_SCHEMES", ("https",)),
        allowed_hosts=_env_list("LAUNCHPAD_ALLOWED_HOSTS"),
        registry=registry,
        image_prefix=os.getenv("LAUNCHPAD_IMAGE_PREFIX", "launchpad").strip("/") or "launchpad",
        static_base_image=os.getenv("LAUNCHPAD_STATIC_BASE_IMAGE", "nginx:alpine"),
        static_port=_env_int("LAUNCHPAD_STATIC_PORT", 80),
        public_host=os.getenv("LAUNCHPAD_PUBLIC_HOST", "localhost"),
        readiness_path=readiness_path,
        readiness_timeout=_env_int("LAUNCHPAD_READINESS_TIMEOUT", 30),
        keep_workspaces=_env_bool("LAUNCHPAD_KEEP_WORKSPACES"),
        docker_bin=os.getenv("LAUNCHPAD_DOCKER_BIN") or None,
        git_bin=os.getenv("LAUNCHPAD_GIT_BIN") or None,
    )
