"""Base environment interface."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager

from loguru import logger

from buildenv_verifier.models.result import ExecutionResult
from buildenv_verifier.models.spec import SourceMount
from buildenv_verifier.stages import ProvisionStage


class BaseEnvironment(ABC):
    """Base class for execution environments.

    An environment walks through the provisioning stages in order:
    materialize the base runtime, apply variables, install packages, stage the
    source tree and execute commands. ``acquire()`` scopes its lifetime so
    ``teardown()`` runs on every exit path.
    """

    #: Short backend identifier used for cache keys and records.
    backend: str = "base"

    def __init__(self) -> None:
        self.environment: dict[str, str] = {}

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator["BaseEnvironment"]:
        """Yield the environment and tear it down on exit, however it happens."""
        try:
            yield self
        finally:
            await self.teardown()

    @abstractmethod
    async def materialize(self, base_image: str, restore_from: str | None = None) -> None:
        """
        Materialize the base runtime.

        Args:
            base_image: Pinned base runtime identifier
            restore_from: Snapshot reference to start from instead of the base image

        Raises:
            EnvironmentUnavailable: If the runtime cannot be resolved or fetched
        """

    async def apply_environment(self, variables: Mapping[str, str]) -> None:
        """
        Apply resolved variables to every later command.

        Args:
            variables: Variables with references already expanded
        """
        self.environment.update(variables)
        logger.debug(f"Applied environment variables: {sorted(variables)}")

    @abstractmethod
    async def install_package(self, package: str) -> None:
        """
        Install one auxiliary system package.

        Raises:
            PackageInstallFailure: If the package source cannot install it
        """

    @abstractmethod
    async def stage_source(self, mount: SourceMount) -> None:
        """
        Copy the external source tree into the working directory.

        Raises:
            SourceStagingFailure: If the source is missing or unreadable
        """

    @abstractmethod
    async def exec(
        self,
        command: str,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout_sec: float | None = None,
        stage: ProvisionStage = ProvisionStage.VERIFY,
    ) -> ExecutionResult:
        """
        Execute command in environment.

        Args:
            command: Shell command to execute
            cwd: Working directory inside the environment
            env: Extra variables on top of the applied ones
            timeout_sec: Timeout in seconds
            stage: Stage reported if the command cannot be run at all

        Returns:
            ExecutionResult with captured output and exit code

        Raises:
            InfrastructureFailure: On timeout or if the backend fails
        """

    @abstractmethod
    async def teardown(self) -> None:
        """Release everything the environment acquired. Safe to call twice."""

    @property
    def supports_snapshots(self) -> bool:
        return False

    async def snapshot(self, key: str) -> str:
        """Persist the current environment and return a reference to it."""
        raise NotImplementedError(f"{type(self).__name__} does not support snapshots")

    async def has_snapshot(self, reference: str) -> bool:
        return False

    async def discard_snapshot(self, reference: str) -> None:
        """Remove a snapshot that is no longer referenced by the cache."""
