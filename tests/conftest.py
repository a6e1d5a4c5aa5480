import asyncio
import stat
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

import pytest

from buildenv_verifier.environments.base import BaseEnvironment
from buildenv_verifier.errors import (
    EnvironmentUnavailable,
    PackageInstallFailure,
    SourceStagingFailure,
)
from buildenv_verifier.models.result import ExecutionResult
from buildenv_verifier.models.spec import EnvironmentSpec, SourceMount
from buildenv_verifier.stages import ProvisionStage

TOOLCHAIN_IMAGE = "lang-toolchain:1.42.0"

TYPECHECK_SCRIPT = """#!/bin/sh
if grep -rq "TYPE_ERROR" .; then
  echo "error[E0308]: mismatched types in main.src" >&2
  exit 1
fi
echo "checked $(ls | wc -l) file(s)"
"""


def write_script(path: Path, body: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


class RecordingEnvironment(BaseEnvironment):
    """In-memory environment recording every stage call."""

    backend = "recording"

    def __init__(
        self,
        known_images: Iterable[str] = (TOOLCHAIN_IMAGE,),
        packages: Iterable[str] = ("tracer", "compiler-frontend"),
        exit_code: int = 0,
        stdout: bytes = b"",
        stderr: bytes = b"",
        exec_delay: float = 0.0,
        exec_error: Exception | None = None,
        snapshot_store: set[str] | None = None,
    ):
        super().__init__()
        self.known_images = set(known_images)
        self.packages = set(packages)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.exec_delay = exec_delay
        self.exec_error = exec_error
        self.snapshot_store = snapshot_store
        self.calls: list[tuple[Any, ...]] = []
        self.teardowns = 0

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]

    async def materialize(self, base_image: str, restore_from: str | None = None) -> None:
        self.calls.append(("materialize", base_image, restore_from))
        if restore_from is None and base_image not in self.known_images:
            raise EnvironmentUnavailable(f"unknown image {base_image}", base_image=base_image)
        self.environment = {"PATH": "/usr/bin:/bin", "HOME": "/root"}

    async def apply_environment(self, variables):
        self.calls.append(("apply_environment", dict(variables)))
        await super().apply_environment(variables)

    async def install_package(self, package: str) -> None:
        self.calls.append(("install_package", package, dict(self.environment)))
        if package not in self.packages:
            raise PackageInstallFailure(package, f"E: Unable to locate package {package}")

    async def stage_source(self, mount: SourceMount) -> None:
        self.calls.append(("stage_source", mount.source, mount.target))
        if not mount.source.exists():
            raise SourceStagingFailure("missing source", source=str(mount.source))

    async def exec(
        self,
        command: str,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout_sec: float | None = None,
        stage: ProvisionStage = ProvisionStage.VERIFY,
    ) -> ExecutionResult:
        self.calls.append(("exec", command, cwd, dict(self.environment)))
        if self.exec_delay:
            await asyncio.sleep(self.exec_delay)
        if self.exec_error is not None:
            raise self.exec_error
        return ExecutionResult(
            exit_code=self.exit_code, stdout=self.stdout, stderr=self.stderr, duration_sec=0.01
        )

    async def teardown(self) -> None:
        self.calls.append(("teardown",))
        self.teardowns += 1

    @property
    def supports_snapshots(self) -> bool:
        return self.snapshot_store is not None

    async def snapshot(self, key: str) -> str:
        reference = f"snapshot:{key[:12]}"
        self.snapshot_store.add(reference)
        self.calls.append(("snapshot", reference))
        return reference

    async def has_snapshot(self, reference: str) -> bool:
        return self.snapshot_store is not None and reference in self.snapshot_store

    async def discard_snapshot(self, reference: str) -> None:
        self.calls.append(("discard_snapshot", reference))
        self.snapshot_store.discard(reference)


@pytest.fixture
def source_tree(tmp_path: Path) -> Path:
    source = tmp_path / "src-tree"
    source.mkdir()
    (source / "main.src").write_text("fn main() -> Int { 0 }\n", encoding="utf-8")
    return source


@pytest.fixture
def broken_source_tree(tmp_path: Path) -> Path:
    source = tmp_path / "broken-tree"
    source.mkdir()
    (source / "main.src").write_text("fn main() -> Int { TYPE_ERROR }\n", encoding="utf-8")
    return source


@pytest.fixture
def make_spec(source_tree: Path) -> Callable[..., EnvironmentSpec]:
    def _make(**overrides: Any) -> EnvironmentSpec:
        fields: dict[str, Any] = {
            "base_image": TOOLCHAIN_IMAGE,
            "system_packages": ("tracer", "compiler-frontend"),
            "source_mount": SourceMount(source=source_tree, target="/code"),
            "verify_command": "typecheck",
        }
        fields.update(overrides)
        return EnvironmentSpec(**fields)

    return _make


@pytest.fixture
def toolchain_dir(tmp_path: Path) -> Path:
    toolchain = tmp_path / "toolchains" / "lang-1.42.0"
    write_script(toolchain / "bin" / "typecheck", TYPECHECK_SCRIPT)
    return toolchain


@pytest.fixture
def package_root(tmp_path: Path) -> Path:
    root = tmp_path / "packages"
    write_script(root / "tracer", "#!/bin/sh\necho tracing \"$@\"\n")
    write_script(
        root / "compiler-frontend" / "bin" / "frontend", "#!/bin/sh\necho frontend ok\n"
    )
    return root
