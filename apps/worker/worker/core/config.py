from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _normalise_base_url(url: str) -> str:
    """Strip trailing slashes so path joins never produce ``//api``."""
    return url.rstrip("/")


class WorkerSettings(BaseSettings):
    """Worker settings loaded from ``PUB_WORKER_*`` environment variables.

    Commands are argv lists, not shell strings. ``dartdoc_command`` may use
    the ``{output_dir}`` placeholder, substituted with the per-version doc
    output directory.

    The control plane usually lives on the same host as the registry. Leave
    ``control_plane_url`` empty to reuse the payload's registry base URL.
    """

    model_config = SettingsConfigDict(
        env_prefix="PUB_WORKER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Control plane
    control_plane_url: str = ""

    @field_validator("control_plane_url", mode="before")
    @classmethod
    def normalise_control_plane_url(cls, v: str) -> str:
        return _normalise_base_url(v or "")

    # Concurrency: caps simultaneous analyzer/doc-generator subprocess trees.
    max_concurrent_analyses: int = 2

    # HTTP
    http_timeout_seconds: float = 30.0
    user_agent: str = "pub-worker/0.1"

    # Retry policy for transient network failures.
    retry_max_attempts: int = 5
    retry_initial_wait_seconds: float = 0.5
    retry_max_wait_seconds: float = 30.0

    # Toolchain commands
    resolve_command: list[str] = ["dart", "pub", "get", "--offline"]
    analyze_command: list[str] = ["dart", "analyze"]
    dartdoc_command: list[str] = ["dart", "doc", "--output", "{output_dir}"]

    resolve_timeout_seconds: float = 300.0
    analyze_timeout_seconds: float = 600.0
    dartdoc_timeout_seconds: float = 1200.0

    # Workspace: None means the system temp directory.
    workspace_root: Optional[Path] = None
    keep_workspace: bool = False

    # App
    debug: bool = False


def get_settings() -> WorkerSettings:
    return WorkerSettings()
