"""Docker environment implementation."""

import asyncio
import io
import os
import tarfile
import time
from pathlib import Path

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.models.containers import Container
from loguru import logger

from buildenv_verifier.environments.base import BaseEnvironment
from buildenv_verifier.errors import (
    EnvironmentUnavailable,
    InfrastructureFailure,
    PackageInstallFailure,
    SourceStagingFailure,
)
from buildenv_verifier.models.result import ExecutionResult
from buildenv_verifier.models.spec import SourceMount, split_image
from buildenv_verifier.stages import ProvisionStage

# Index refresh and per-package install commands for each supported package manager.
PACKAGE_MANAGERS: dict[str, tuple[str, str]] = {
    "apt-get": ("apt-get update", "apt-get install -y --no-install-recommends {package}"),
    "apk": ("apk update", "apk add --no-cache {package}"),
    "dnf": ("dnf makecache", "dnf install -y {package}"),
    "yum": ("yum makecache", "yum install -y {package}"),
}

SNAPSHOT_REPOSITORY = "buildenv-verifier-cache"


class DockerEnvironment(BaseEnvironment):
    """Docker-based isolated environment for build verification."""

    backend = "docker"

    def __init__(
        self,
        container_name: str,
        cpus: int = 2,
        memory_mb: int = 4096,
        allow_internet: bool = True,
        package_manager: str = "apt-get",
        command_timeout_sec: float | None = None,
        client: docker.DockerClient | None = None,
    ):
        """
        Initialize Docker environment.

        Args:
            container_name: Name for the container
            cpus: Number of CPU cores
            memory_mb: Memory limit in MB
            allow_internet: Whether to allow internet access
            package_manager: Package manager used to install system packages
            command_timeout_sec: Timeout for each package manager command
            client: Docker client, created from the environment when omitted
        """
        super().__init__()
        if package_manager not in PACKAGE_MANAGERS:
            raise ValueError(f"Unsupported package manager: {package_manager}")
        self.container_name = container_name
        self.cpus = cpus
        self.memory_mb = memory_mb
        self.allow_internet = allow_internet
        self.package_manager = package_manager
        self.command_timeout_sec = command_timeout_sec

        self._client = client
        self.container: Container | None = None
        self._index_refreshed = False

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise InfrastructureFailure(
                    f"Docker daemon is not reachable: {e}",
                    stage=ProvisionStage.MATERIALIZE_BASE,
                    hint="Start the Docker daemon or use the local runtime.",
                ) from e
        return self._client

    async def materialize(self, base_image: str, restore_from: str | None = None) -> None:
        """Resolve the image, pulling it if needed, and start the container."""
        image_ref = restore_from or base_image
        image = await asyncio.to_thread(self._resolve_image, image_ref)

        config_env = (image.attrs.get("Config") or {}).get("Env") or []
        self.environment = dict(item.split("=", 1) for item in config_env if "=" in item)

        network_mode = "bridge" if self.allow_internet else "none"

        # Stop existing container with same name if exists
        await asyncio.to_thread(self._remove_container, self.container_name)

        logger.info(f"Starting container {self.container_name} from {image_ref}")
        try:
            self.container = await asyncio.to_thread(
                self.client.containers.run,
                image=image_ref,
                name=self.container_name,
                command="sleep infinity",
                detach=True,
                network_mode=network_mode,
                nano_cpus=int(self.cpus * 1e9),
                mem_limit=f"{self.memory_mb}m",
                labels={"buildenv-verifier.base-image": base_image},
            )
        except APIError as e:
            raise EnvironmentUnavailable(
                f"Failed to start container from {image_ref}: {e.explanation or e}",
                base_image=base_image,
            ) from e

    def _resolve_image(self, image_ref: str):
        try:
            return self.client.images.get(image_ref)
        except ImageNotFound:
            pass
        except APIError as e:
            raise InfrastructureFailure(
                f"Failed to inspect image {image_ref}: {e}",
                stage=ProvisionStage.MATERIALIZE_BASE,
            ) from e

        logger.info(f"Pulling image {image_ref}")
        repository, tag = split_image(image_ref)
        try:
            if "@" in image_ref:
                return self.client.images.pull(image_ref)
            return self.client.images.pull(repository, tag=tag)
        except (ImageNotFound, NotFound, APIError) as e:
            raise EnvironmentUnavailable(
                f"Base image {image_ref} could not be fetched",
                base_image=image_ref,
                hint="Check the image name and tag, and registry access.",
            ) from e

    def _remove_container(self, name: str) -> None:
        try:
            existing = self.client.containers.get(name)
        except NotFound:
            return
        existing.remove(force=True)

    async def install_package(self, package: str) -> None:
        """Install a package with the image's package manager."""
        refresh_cmd, install_template = PACKAGE_MANAGERS[self.package_manager]
        env = {"DEBIAN_FRONTEND": "noninteractive"}

        if not self._index_refreshed:
            result = await self.exec(
                refresh_cmd,
                cwd="/",
                env=env,
                timeout_sec=self.command_timeout_sec,
                stage=ProvisionStage.INSTALL_PACKAGES,
            )
            if not result.success:
                raise PackageInstallFailure(package, result.stderr_text or result.stdout_text)
            self._index_refreshed = True

        logger.info(f"Installing package {package} via {self.package_manager}")
        result = await self.exec(
            install_template.format(package=package),
            cwd="/",
            env=env,
            timeout_sec=self.command_timeout_sec,
            stage=ProvisionStage.INSTALL_PACKAGES,
        )
        if not result.success:
            logger.error(f"Failed to install package {package}: exit {result.exit_code}")
            raise PackageInstallFailure(package, result.stderr_text or result.stdout_text)

    async def stage_source(self, mount: SourceMount) -> None:
        """Copy the source tree into the container as a tar archive."""
        container = self._require_container(ProvisionStage.STAGE_SOURCE)
        source = mount.source
        if not source.exists():
            raise SourceStagingFailure(f"Source path {source} does not exist", source=str(source))
        if not os.access(source, os.R_OK):
            raise SourceStagingFailure(f"Source path {source} is not readable", source=str(source))

        try:
            archive = await asyncio.to_thread(_tar_source, source)
        except OSError as e:
            raise SourceStagingFailure(
                f"Failed to read source tree: {e}", source=str(source)
            ) from e

        result = await self.exec(
            f"mkdir -p '{mount.target}'", cwd="/", stage=ProvisionStage.STAGE_SOURCE
        )
        if not result.success:
            raise SourceStagingFailure(
                f"Failed to create {mount.target}: {result.stderr_text}", source=str(source)
            )

        logger.info(f"Staging {source} into {self.container_name}:{mount.target}")
        try:
            copied = await asyncio.to_thread(container.put_archive, mount.target, archive)
        except APIError as e:
            raise SourceStagingFailure(
                f"Failed to copy source tree: {e}", source=str(source)
            ) from e
        if not copied:
            raise SourceStagingFailure("Container rejected source archive", source=str(source))

    async def exec(
        self,
        command: str,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout_sec: float | None = None,
        stage: ProvisionStage = ProvisionStage.VERIFY,
    ) -> ExecutionResult:
        """Execute command in Docker container."""
        container = self._require_container(stage)
        environment = {**self.environment, **(env or {})}

        start_time = time.monotonic()
        try:
            exec_result = await asyncio.wait_for(
                asyncio.to_thread(
                    container.exec_run,
                    ["sh", "-c", command],
                    workdir=cwd,
                    environment=environment,
                    demux=True,
                ),
                timeout=timeout_sec,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Command timed out after {timeout_sec}s: {command}")
            await self._kill()
            raise InfrastructureFailure(
                f"Command timed out after {timeout_sec}s", stage=stage, context={"command": command}
            ) from e
        except asyncio.CancelledError:
            await self._kill()
            raise
        except DockerException as e:
            raise InfrastructureFailure(
                f"Failed to execute command: {e}", stage=stage, context={"command": command}
            ) from e

        stdout, stderr = exec_result.output or (None, None)
        return ExecutionResult(
            exit_code=exec_result.exit_code,
            stdout=stdout or b"",
            stderr=stderr or b"",
            duration_sec=time.monotonic() - start_time,
        )

    async def _kill(self) -> None:
        if self.container:
            try:
                await asyncio.to_thread(self.container.kill)
            except DockerException as e:
                logger.warning(f"Failed to kill container {self.container_name}: {e}")

    async def teardown(self) -> None:
        """Stop and delete the container."""
        if self.container:
            container, self.container = self.container, None
            try:
                await asyncio.to_thread(container.remove, force=True)
                logger.info(f"Removed container {self.container_name}")
            except NotFound:
                pass
            except DockerException as e:
                logger.error(f"Failed to remove container {self.container_name}: {e}")

    @property
    def supports_snapshots(self) -> bool:
        return True

    async def snapshot(self, key: str) -> str:
        """Commit the container to a local image tagged with the cache key."""
        container = self._require_container(ProvisionStage.INSTALL_PACKAGES)
        tag = key[:32]
        try:
            await asyncio.to_thread(container.commit, repository=SNAPSHOT_REPOSITORY, tag=tag)
        except APIError as e:
            raise InfrastructureFailure(
                f"Failed to snapshot container: {e}", stage=ProvisionStage.INSTALL_PACKAGES
            ) from e
        return f"{SNAPSHOT_REPOSITORY}:{tag}"

    async def has_snapshot(self, reference: str) -> bool:
        try:
            await asyncio.to_thread(self.client.images.get, reference)
        except ImageNotFound:
            return False
        return True

    async def discard_snapshot(self, reference: str) -> None:
        try:
            await asyncio.to_thread(self.client.images.remove, reference)
        except ImageNotFound:
            pass
        except APIError as e:
            logger.warning(f"Failed to remove snapshot image {reference}: {e}")

    def _require_container(self, stage: ProvisionStage) -> Container:
        if not self.container:
            raise InfrastructureFailure("Container not started", stage=stage)
        return self.container


def _tar_source(source: Path) -> bytes:
    stream = io.BytesIO()
    with tarfile.open(fileobj=stream, mode="w") as tar:
        if source.is_dir():
            tar.add(source, arcname=".")
        else:
            tar.add(source, arcname=source.name)
    return stream.getvalue()
