from pathlib import Path

import pytest

from buildenv_verifier.config import Settings
from buildenv_verifier.environments import DockerEnvironment, LocalEnvironment
from buildenv_verifier.factory import environment_factory


def test_settings_from_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("BUILDENV_RUNTIME", "local")
    monkeypatch.setenv("BUILDENV_MAX_CONCURRENCY", "8")
    monkeypatch.setenv("BUILDENV_TOOLCHAINS", '{"rust:1.42.0": "/opt/rust-1.42.0"}')

    settings = Settings()

    assert settings.runtime == "local"
    assert settings.max_concurrency == 8
    assert settings.toolchains == {"rust:1.42.0": Path("/opt/rust-1.42.0")}
    assert settings.timeout_sec == 1800.0


def test_docker_factory_names_containers_uniquely(make_spec) -> None:
    settings = Settings(runtime="docker", cpus=4, command_timeout_sec=600)
    factory = environment_factory(settings, package_manager="apk")
    first, second = factory(make_spec()), factory(make_spec())

    assert isinstance(first, DockerEnvironment)
    assert first.container_name != second.container_name
    assert first.cpus == 4
    assert first.package_manager == "apk"
    assert first.command_timeout_sec == 600


def test_local_factory_uses_cache_snapshots(make_spec, tmp_path: Path) -> None:
    settings = Settings(runtime="local", cache_dir=tmp_path / "cache")
    environment = environment_factory(settings)(make_spec())

    assert isinstance(environment, LocalEnvironment)
    assert environment.snapshot_root == tmp_path / "cache" / "snapshots"
    assert environment.supports_snapshots

    uncached = environment_factory(Settings(runtime="local", use_cache=False))(make_spec())
    assert not uncached.supports_snapshots
