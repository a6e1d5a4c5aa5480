"""Local sandbox-directory environment implementation."""

import asyncio
import os
import shutil
import signal
import stat
import tempfile
import time
from collections.abc import Mapping
from pathlib import Path

from loguru import logger

from buildenv_verifier.environments.base import BaseEnvironment
from buildenv_verifier.errors import (
    EnvironmentUnavailable,
    InfrastructureFailure,
    PackageInstallFailure,
    SourceStagingFailure,
)
from buildenv_verifier.models.result import ExecutionResult
from buildenv_verifier.models.spec import SourceMount
from buildenv_verifier.stages import ProvisionStage

SYSTEM_PATH = "/usr/local/bin:/usr/bin:/bin"


class LocalEnvironment(BaseEnvironment):
    """Environment backed by a per-run sandbox directory on the host.

    Base images resolve to pinned toolchain directories registered up front.
    Packages come from a directory holding one entry per package name, and are
    installed into the sandbox's ``bin``. Internal paths such as ``/code`` map
    to ``<sandbox>/root/code``. Commands run in their own process group so a
    timeout or cancellation can take down everything they spawned.
    """

    backend = "local"

    def __init__(
        self,
        toolchains: Mapping[str, Path],
        package_root: Path | None = None,
        sandbox_root: Path | None = None,
        snapshot_root: Path | None = None,
    ):
        """
        Initialize local environment.

        Args:
            toolchains: Pinned base image identifier -> toolchain directory
            package_root: Directory providing installable packages
            sandbox_root: Parent directory for per-run sandboxes
            snapshot_root: Directory for package snapshots, disables caching if None
        """
        super().__init__()
        self.toolchains = dict(toolchains)
        self.package_root = package_root
        self.sandbox_root = sandbox_root
        self.snapshot_root = snapshot_root

        self.sandbox: Path | None = None
        self._processes: set[asyncio.subprocess.Process] = set()

    @property
    def bin_dir(self) -> Path:
        return self._require_sandbox(ProvisionStage.INSTALL_PACKAGES) / "bin"

    def host_path(self, internal: str) -> Path:
        """Map an absolute path inside the environment to its place in the sandbox."""
        root = (self._require_sandbox(ProvisionStage.STAGE_SOURCE) / "root").resolve()
        path = (root / internal.lstrip("/")).resolve()
        if not path.is_relative_to(root):
            raise SourceStagingFailure(
                f"Path {internal} resolves outside the sandbox",
                source=internal,
                hint="Use an absolute target without '..' segments.",
            )
        return path

    async def materialize(self, base_image: str, restore_from: str | None = None) -> None:
        toolchain = self.toolchains.get(base_image)
        if toolchain is None:
            raise EnvironmentUnavailable(
                f"No toolchain registered for {base_image}",
                base_image=base_image,
                hint="Register the toolchain directory under its pinned identifier.",
            )
        if not toolchain.is_dir():
            raise EnvironmentUnavailable(
                f"Toolchain directory {toolchain} does not exist", base_image=base_image
            )

        if self.sandbox_root is not None:
            self.sandbox_root.mkdir(parents=True, exist_ok=True)
        self.sandbox = Path(tempfile.mkdtemp(prefix="buildenv-", dir=self.sandbox_root))
        for sub in ("bin", "home", "root"):
            (self.sandbox / sub).mkdir()
        logger.info(f"Materialized {base_image} in sandbox {self.sandbox}")

        if restore_from is not None:
            await asyncio.to_thread(
                shutil.copytree, restore_from, self.sandbox / "bin", dirs_exist_ok=True
            )
            logger.info(f"Restored packages from snapshot {restore_from}")

        toolchain_bin = toolchain / "bin" if (toolchain / "bin").is_dir() else toolchain
        self.environment = {
            "PATH": os.pathsep.join([str(self.sandbox / "bin"), str(toolchain_bin), SYSTEM_PATH]),
            "HOME": str(self.sandbox / "home"),
            "TOOLCHAIN_HOME": str(toolchain),
            "LANG": "C.UTF-8",
        }

    async def install_package(self, package: str) -> None:
        if self.package_root is None:
            raise PackageInstallFailure(package, "no package source configured")
        source = self.package_root / package
        if not source.exists():
            raise PackageInstallFailure(package, f"package not found in {self.package_root}")

        logger.info(f"Installing package {package} from {self.package_root}")
        try:
            await asyncio.to_thread(self._copy_package, source, self.bin_dir)
        except OSError as e:
            raise PackageInstallFailure(package, str(e)) from e

    @staticmethod
    def _copy_package(source: Path, bin_dir: Path) -> None:
        if source.is_dir():
            content = source / "bin" if (source / "bin").is_dir() else source
            shutil.copytree(content, bin_dir, dirs_exist_ok=True)
            return
        target = bin_dir / source.name
        shutil.copy2(source, target)
        target.chmod(target.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    async def stage_source(self, mount: SourceMount) -> None:
        source = mount.source
        if not source.exists():
            raise SourceStagingFailure(f"Source path {source} does not exist", source=str(source))
        if not os.access(source, os.R_OK):
            raise SourceStagingFailure(f"Source path {source} is not readable", source=str(source))

        target = self.host_path(mount.target)
        logger.info(f"Staging {source} into {target}")
        try:
            if source.is_dir():
                await asyncio.to_thread(
                    shutil.copytree, source, target, symlinks=True, dirs_exist_ok=True
                )
            else:
                target.mkdir(parents=True, exist_ok=True)
                await asyncio.to_thread(shutil.copy2, source, target / source.name)
        except (OSError, shutil.Error) as e:
            raise SourceStagingFailure(
                f"Failed to copy source tree: {e}", source=str(source)
            ) from e

    async def exec(
        self,
        command: str,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout_sec: float | None = None,
        stage: ProvisionStage = ProvisionStage.VERIFY,
    ) -> ExecutionResult:
        sandbox = self._require_sandbox(stage)
        work_dir = self.host_path(cwd) if cwd else sandbox
        environment = {**self.environment, **(env or {})}

        start_time = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                cwd=work_dir,
                env=environment,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise InfrastructureFailure(
                f"Failed to start command: {e}", stage=stage, context={"command": command}
            ) from e

        self._processes.add(proc)
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_sec)
        except asyncio.TimeoutError as e:
            logger.error(f"Command timed out after {timeout_sec}s: {command}")
            await _kill_group(proc)
            raise InfrastructureFailure(
                f"Command timed out after {timeout_sec}s", stage=stage, context={"command": command}
            ) from e
        except asyncio.CancelledError:
            await _kill_group(proc)
            raise
        finally:
            self._processes.discard(proc)

        return ExecutionResult(
            exit_code=_shell_exit_code(proc.returncode),
            stdout=stdout,
            stderr=stderr,
            duration_sec=time.monotonic() - start_time,
        )

    async def teardown(self) -> None:
        for proc in list(self._processes):
            await _kill_group(proc)
        self._processes.clear()

        if self.sandbox is not None:
            sandbox, self.sandbox = self.sandbox, None
            try:
                await asyncio.to_thread(shutil.rmtree, sandbox)
                logger.info(f"Removed sandbox {sandbox}")
            except OSError as e:
                logger.error(f"Failed to remove sandbox {sandbox}: {e}")

    @property
    def supports_snapshots(self) -> bool:
        return self.snapshot_root is not None

    async def snapshot(self, key: str) -> str:
        if self.snapshot_root is None:
            return await super().snapshot(key)
        target = self.snapshot_root / key
        if target.is_dir():
            return str(target)
        self.snapshot_root.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=".staging-", dir=self.snapshot_root))
        await asyncio.to_thread(
            shutil.copytree, self.bin_dir, staging, symlinks=True, dirs_exist_ok=True
        )
        try:
            staging.rename(target)
        except OSError:
            # A concurrent run stored the same snapshot first
            await asyncio.to_thread(shutil.rmtree, staging, ignore_errors=True)
        return str(target)

    async def has_snapshot(self, reference: str) -> bool:
        return Path(reference).is_dir()

    async def discard_snapshot(self, reference: str) -> None:
        path = Path(reference)
        if path.is_dir():
            try:
                await asyncio.to_thread(shutil.rmtree, path)
            except OSError as e:
                logger.warning(f"Failed to remove snapshot {path}: {e}")

    def _require_sandbox(self, stage: ProvisionStage) -> Path:
        if self.sandbox is None:
            raise InfrastructureFailure("Sandbox not materialized", stage=stage)
        return self.sandbox


async def _kill_group(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    await proc.wait()


def _shell_exit_code(returncode: int) -> int:
    """Report death by signal N as 128 + N, the way a shell does."""
    if returncode < 0:
        return 128 - returncode
    return returncode
