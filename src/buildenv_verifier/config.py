"""Settings for buildenv-verifier."""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_cache_dir() -> Path:
    return Path.home() / ".cache" / "buildenv-verifier"


class Settings(BaseSettings):
    """
    Runtime configuration, read from ``BUILDENV_*`` variables or a ``.env`` file.

    Complex values such as ``toolchains`` are given as JSON, e.g.
    ``BUILDENV_TOOLCHAINS='{"rust:1.42.0": "/opt/toolchains/rust-1.42.0"}'``.
    """

    runtime: Literal["docker", "local"] = "docker"

    # Timeouts: whole run, and each command inside the environment
    timeout_sec: float | None = 1800.0
    command_timeout_sec: float | None = None

    output_dir: Path = Path("results")
    use_cache: bool = True
    cache_dir: Path = Field(default_factory=_default_cache_dir)
    max_concurrency: int = 4

    # Docker backend
    cpus: int = 2
    memory_mb: int = 4096
    allow_internet: bool = True
    package_manager: str = "apt-get"

    # Local backend
    toolchains: dict[str, Path] = Field(default_factory=dict)
    package_root: Path | None = None
    sandbox_root: Path | None = None

    log_level: str = "WARNING"
    log_file: Path | None = None

    model_config = SettingsConfigDict(
        env_prefix="BUILDENV_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
