"""Provisioner: turn an environment spec into a verification run."""

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from loguru import logger

from buildenv_verifier.cache import ProvisionCache
from buildenv_verifier.environments.base import BaseEnvironment
from buildenv_verifier.errors import InfrastructureFailure, ProvisionError
from buildenv_verifier.models.result import ExecutionResult
from buildenv_verifier.models.spec import EnvironmentSpec, VerifyTiming
from buildenv_verifier.stages import STAGE_COMPLETES, ProvisionStage, ProvisionState

EnvironmentFactory = Callable[[EnvironmentSpec], BaseEnvironment]
StateObserver = Callable[[EnvironmentSpec, ProvisionState], None]


@dataclass
class ProvisionTracker:
    """Current state and stage of one run."""

    spec: EnvironmentSpec
    observer: StateObserver | None = None
    state: ProvisionState = ProvisionState.UNINITIALIZED
    stage: ProvisionStage = ProvisionStage.MATERIALIZE_BASE
    history: list[ProvisionState] = field(default_factory=lambda: [ProvisionState.UNINITIALIZED])
    cache_hit: bool = False

    def begin(self, stage: ProvisionStage) -> None:
        self.stage = stage
        logger.debug(f"Stage {stage.value} started")

    def complete(self) -> None:
        state = STAGE_COMPLETES.get(self.stage)
        if state is not None:
            self._transition(state)

    def fail(self) -> None:
        if self.state is not ProvisionState.FAILED:
            self._transition(ProvisionState.FAILED)

    def _transition(self, state: ProvisionState) -> None:
        self.state = state
        self.history.append(state)
        if self.observer is not None:
            self.observer(self.spec, state)


class Provisioner:
    """Provision an environment and run its verify command inside it."""

    def __init__(
        self,
        environment_factory: EnvironmentFactory,
        cache: ProvisionCache | None = None,
        observer: StateObserver | None = None,
        command_timeout_sec: float | None = None,
    ):
        """
        Initialize provisioner.

        Args:
            environment_factory: Creates a fresh environment for each run
            cache: Snapshot cache for environments with packages installed
            observer: Called with every state transition
            command_timeout_sec: Timeout applied to each command run in the environment
        """
        self.environment_factory = environment_factory
        self.cache = cache
        self.observer = observer
        self.command_timeout_sec = command_timeout_sec

    def tracker(self, spec: EnvironmentSpec) -> ProvisionTracker:
        return ProvisionTracker(spec=spec, observer=self.observer)

    async def provision(
        self, spec: EnvironmentSpec, tracker: ProvisionTracker | None = None
    ) -> ExecutionResult:
        """
        Provision the environment described by spec and run its verify command.

        Steps:
        1. Materialize the base runtime (or restore a cached snapshot)
        2. Apply environment variables
        3. Install system packages, in order
        4. Stage the source tree into the working directory
        5. Run the verify command

        The environment is torn down on every exit path.

        Args:
            spec: Environment spec
            tracker: Receives state transitions, created when omitted

        Returns:
            ExecutionResult of the verify command. A nonzero exit code is
            returned as is, unless the spec asks for build-time verification.

        Raises:
            ProvisionError: If any stage fails, with the stage recorded
        """
        tracker = tracker or self.tracker(spec)
        logger.info(f"Provisioning {spec.base_image} ({spec.fingerprint()[:12]})")

        try:
            environment = self.environment_factory(spec)
            async with environment.acquire():
                return await self._run_stages(spec, environment, tracker)
        except ProvisionError as e:
            tracker.fail()
            logger.error(f"Provisioning failed: {e}")
            raise
        except asyncio.CancelledError:
            tracker.fail()
            logger.warning(f"Provisioning cancelled during {tracker.stage.value}")
            raise
        except Exception as e:
            tracker.fail()
            logger.error(f"Provisioning failed during {tracker.stage.value}: {e}")
            raise InfrastructureFailure(str(e), stage=tracker.stage) from e

    async def _run_stages(
        self, spec: EnvironmentSpec, environment: BaseEnvironment, tracker: ProvisionTracker
    ) -> ExecutionResult:
        tracker.begin(ProvisionStage.MATERIALIZE_BASE)
        snapshot = await self._cached_snapshot(spec, environment)
        await environment.materialize(spec.base_image, restore_from=snapshot)
        tracker.complete()

        tracker.begin(ProvisionStage.APPLY_ENVIRONMENT)
        await environment.apply_environment(spec.resolve_environment(environment.environment))
        tracker.complete()

        tracker.begin(ProvisionStage.INSTALL_PACKAGES)
        if snapshot is not None:
            tracker.cache_hit = True
            logger.info(f"Packages restored from cache: {', '.join(spec.system_packages)}")
        else:
            for package in spec.system_packages:
                await environment.install_package(package)
            await self._store_snapshot(spec, environment)
        tracker.complete()

        tracker.begin(ProvisionStage.STAGE_SOURCE)
        await environment.stage_source(spec.source_mount)
        tracker.complete()

        tracker.begin(ProvisionStage.VERIFY)
        logger.info(f"Running verify command: {spec.verify_command}")
        result = await environment.exec(
            spec.verify_command,
            cwd=spec.working_dir,
            timeout_sec=self.command_timeout_sec,
            stage=ProvisionStage.VERIFY,
        )
        logger.info(f"Verify command exited with {result.exit_code} in {result.duration_sec:.1f}s")
        if spec.verify_timing is VerifyTiming.BUILD:
            result.raise_for_status()
        tracker.complete()
        return result

    async def _cached_snapshot(
        self, spec: EnvironmentSpec, environment: BaseEnvironment
    ) -> str | None:
        if self.cache is None or not environment.supports_snapshots:
            return None

        entry = self.cache.lookup(spec, environment.backend)
        if entry is not None and not await environment.has_snapshot(entry.reference):
            logger.warning(f"Cached snapshot {entry.reference} is gone, invalidating")
            self.cache.invalidate(entry.slot, discard=False)
            entry = None
        await self._discard_evicted(environment)
        return entry.reference if entry is not None else None

    async def _store_snapshot(self, spec: EnvironmentSpec, environment: BaseEnvironment) -> None:
        if self.cache is None or not environment.supports_snapshots:
            return
        reference = await environment.snapshot(spec.fingerprint())
        self.cache.store(spec, environment.backend, reference)
        await self._discard_evicted(environment)

    async def _discard_evicted(self, environment: BaseEnvironment) -> None:
        for entry in self.cache.drain_evicted(environment.backend):
            await environment.discard_snapshot(entry.reference)

    async def provision_with_deadline(
        self, spec: EnvironmentSpec, timeout_sec: float, tracker: ProvisionTracker | None = None
    ) -> ExecutionResult:
        """
        Provision under an overall deadline.

        The run is cancelled when the deadline elapses; its environment is
        released before this returns.

        Raises:
            InfrastructureFailure: If the deadline elapses, naming the stage in progress
        """
        tracker = tracker or self.tracker(spec)
        try:
            return await asyncio.wait_for(self.provision(spec, tracker), timeout=timeout_sec)
        except asyncio.TimeoutError as e:
            raise InfrastructureFailure(
                f"Provisioning exceeded the {timeout_sec}s deadline",
                stage=tracker.stage,
            ) from e

    async def provision_all(
        self, specs: Sequence[EnvironmentSpec], max_concurrency: int = 4
    ) -> list[ExecutionResult | ProvisionError]:
        """
        Provision independent specs concurrently.

        Each run gets its own environment. Results keep the order of specs;
        failed runs are returned as their ProvisionError.
        """
        semaphore = asyncio.Semaphore(max_concurrency)

        async def _one(spec: EnvironmentSpec) -> ExecutionResult | ProvisionError:
            async with semaphore:
                try:
                    return await self.provision(spec)
                except ProvisionError as e:
                    return e

        return list(await asyncio.gather(*(_one(spec) for spec in specs)))
