from pathlib import Path

import pytest
from pydantic import ValidationError

from buildenv_verifier.errors import VerificationFailure
from buildenv_verifier.models import EnvironmentSpec, ExecutionResult, SourceMount, VerifyTiming
from buildenv_verifier.models.spec import split_image

DIGEST = "sha256:" + "a" * 64


def _spec(**overrides) -> EnvironmentSpec:
    fields = {
        "base_image": "rust:1.42.0",
        "source_mount": SourceMount(source=Path("/tmp/code")),
    }
    fields.update(overrides)
    return EnvironmentSpec(**fields)


@pytest.mark.parametrize(
    "image",
    [
        "rust:1.42.0",
        "lang-toolchain:1.42.0",
        "registry.example.com:5000/team/rust:1.42.0-slim",
        f"rust@{DIGEST}",
        f"ghcr.io/org/rust:1.42.0@{DIGEST}",
    ],
)
def test_pinned_images_are_accepted(image: str) -> None:
    assert _spec(base_image=image).base_image == image


@pytest.mark.parametrize(
    "image",
    [
        "rust",
        "rust:latest",
        "rust:LATEST",
        "rust:stable",
        "rust:slim",
        "registry.example.com:5000/rust",
        "rust@sha256:abc",
    ],
)
def test_floating_images_are_rejected(image: str) -> None:
    with pytest.raises(ValidationError):
        _spec(base_image=image)


def test_split_image_ignores_registry_port() -> None:
    assert split_image("registry:5000/rust") == ("registry:5000/rust", None)
    assert split_image("registry:5000/rust:1.42.0") == ("registry:5000/rust", "1.42.0")


def test_defaults_match_compile_check_recipe() -> None:
    spec = _spec()
    assert spec.verify_command == "cargo check"
    assert spec.verify_timing is VerifyTiming.START
    assert spec.source_mount.target == "/code"
    assert spec.working_dir == "/code"


def test_spec_is_immutable() -> None:
    spec = _spec(environment_variables={"CARGO_HOME": "/usr/local/cargo"})
    fingerprint = spec.fingerprint()

    with pytest.raises(ValidationError):
        spec.base_image = "rust:1.43.0"
    with pytest.raises(TypeError):
        spec.environment_variables["CARGO_HOME"] = "/tmp/cargo"
    with pytest.raises(TypeError):
        _spec().environment_variables["RUSTFLAGS"] = "-Dwarnings"

    assert spec.fingerprint() == fingerprint


def test_variables_are_copied_on_construction() -> None:
    variables = {"CARGO_HOME": "/usr/local/cargo"}
    spec = _spec(environment_variables=variables)
    variables["CARGO_HOME"] = "/tmp/cargo"

    assert spec.environment_variables == {"CARGO_HOME": "/usr/local/cargo"}
    assert spec.model_dump()["environment_variables"] == {"CARGO_HOME": "/usr/local/cargo"}
    assert '"CARGO_HOME":"/usr/local/cargo"' in spec.model_dump_json()


@pytest.mark.parametrize("target", ["/../escaped", "/code/../../etc", "/code/.."])
def test_target_cannot_leave_the_root(target: str) -> None:
    with pytest.raises(ValidationError, match="'..' segments"):
        SourceMount(source=Path("/tmp/code"), target=target)


def test_duplicate_packages_are_rejected() -> None:
    with pytest.raises(ValidationError, match="more than once"):
        _spec(system_packages=("clang", "llvm", "clang"))


def test_package_order_is_preserved() -> None:
    packages = ("strace", "libclang-dev", "clang", "llvm")
    assert _spec(system_packages=packages).system_packages == packages


def test_invalid_variable_name_is_rejected() -> None:
    with pytest.raises(ValidationError):
        _spec(environment_variables={"NOT-VALID": "x"})


def test_relative_target_is_rejected() -> None:
    with pytest.raises(ValidationError):
        SourceMount(source=Path("."), target="code")


def test_empty_verify_command_is_rejected() -> None:
    with pytest.raises(ValidationError):
        _spec(verify_command="   ")


def test_resolve_environment_expands_in_order() -> None:
    spec = _spec(
        environment_variables={
            "RUSTUP_HOME": "/usr/local/rustup",
            "CARGO_HOME": "/usr/local/cargo",
            "PATH": "$CARGO_HOME/bin:$PATH",
            "UNKNOWN_REF": "${NOT_DEFINED}/x",
        }
    )
    resolved = spec.resolve_environment({"PATH": "/usr/bin:/bin"})
    assert resolved["PATH"] == "/usr/local/cargo/bin:/usr/bin:/bin"
    assert resolved["UNKNOWN_REF"] == "${NOT_DEFINED}/x"
    assert list(resolved) == ["RUSTUP_HOME", "CARGO_HOME", "PATH", "UNKNOWN_REF"]


def test_fingerprint_is_stable_and_tracks_environment_fields() -> None:
    spec = _spec(system_packages=("clang",), environment_variables={"A": "1", "B": "2"})
    same = _spec(system_packages=("clang",), environment_variables={"B": "2", "A": "1"})
    assert spec.fingerprint() == same.fingerprint()
    assert spec.fingerprint() != _spec(system_packages=("llvm",)).fingerprint()
    assert spec.fingerprint() != _spec(
        system_packages=("clang",),
        environment_variables={"A": "1", "B": "2"},
        base_image="rust:1.43.0",
    ).fingerprint()
    # The source tree does not shape the environment
    moved = spec.model_copy(update={"source_mount": SourceMount(source=Path("/elsewhere"))})
    assert moved.fingerprint() == spec.fingerprint()


def test_cache_slot_prefers_name() -> None:
    assert _spec().cache_slot == "rust"
    assert _spec(name="my-crate").cache_slot == "my-crate"


def test_execution_result_success() -> None:
    result = ExecutionResult(exit_code=0, stdout=b"ok\n")
    assert result.success
    assert result.raise_for_status() is result
    assert result.stdout_text == "ok\n"


def test_execution_result_raise_for_status() -> None:
    result = ExecutionResult(exit_code=101, stderr=b"error[E0308]\n")
    with pytest.raises(VerificationFailure) as exc_info:
        result.raise_for_status()
    assert exc_info.value.result is result
    assert exc_info.value.infrastructure is False


def test_execution_result_decodes_invalid_utf8() -> None:
    result = ExecutionResult(exit_code=1, stderr=b"\xff\xfe bad")
    assert result.stderr_text.endswith(" bad")


def test_execution_result_rejects_negative_duration() -> None:
    with pytest.raises(ValidationError):
        ExecutionResult(exit_code=0, duration_sec=-1.0)
