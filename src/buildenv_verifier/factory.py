"""Environment factory selected by settings."""

from uuid import uuid4

from buildenv_verifier.config import Settings
from buildenv_verifier.environments import BaseEnvironment, DockerEnvironment, LocalEnvironment
from buildenv_verifier.models.spec import EnvironmentSpec
from buildenv_verifier.provisioner import EnvironmentFactory


def environment_factory(
    settings: Settings, package_manager: str | None = None
) -> EnvironmentFactory:
    """
    Build a factory producing a fresh environment per run.

    Args:
        settings: Runtime settings
        package_manager: Overrides the configured package manager (Docker only)

    Returns:
        Callable creating an environment for a spec
    """
    if settings.runtime == "docker":

        def _docker(spec: EnvironmentSpec) -> BaseEnvironment:
            return DockerEnvironment(
                container_name=f"buildenv-{uuid4().hex[:12]}",
                cpus=settings.cpus,
                memory_mb=settings.memory_mb,
                allow_internet=settings.allow_internet,
                package_manager=package_manager or settings.package_manager,
                command_timeout_sec=settings.command_timeout_sec,
            )

        return _docker

    if settings.runtime == "local":
        snapshot_root = settings.cache_dir / "snapshots" if settings.use_cache else None

        def _local(spec: EnvironmentSpec) -> BaseEnvironment:
            return LocalEnvironment(
                toolchains=settings.toolchains,
                package_root=settings.package_root,
                sandbox_root=settings.sandbox_root,
                snapshot_root=snapshot_root,
            )

        return _local

    raise ValueError(f"Unknown runtime: {settings.runtime}")
