from buildenv_verifier.errors import (
    EnvironmentUnavailable,
    InfrastructureFailure,
    PackageInstallFailure,
    ProvisionError,
    SourceStagingFailure,
    VerificationFailure,
)
from buildenv_verifier.models import ExecutionResult
from buildenv_verifier.stages import ProvisionStage


def test_each_failure_records_its_stage() -> None:
    assert EnvironmentUnavailable("x", base_image="rust:1.42.0").stage is ProvisionStage.MATERIALIZE_BASE
    assert PackageInstallFailure("clang", "boom").stage is ProvisionStage.INSTALL_PACKAGES
    assert SourceStagingFailure("x", source="/src").stage is ProvisionStage.STAGE_SOURCE
    assert VerificationFailure(ExecutionResult(exit_code=1)).stage is ProvisionStage.VERIFY
    assert InfrastructureFailure("x", stage=ProvisionStage.STAGE_SOURCE).stage is ProvisionStage.STAGE_SOURCE


def test_all_failures_share_a_base() -> None:
    for error in (
        EnvironmentUnavailable("x", base_image="rust:1.42.0"),
        PackageInstallFailure("clang", "boom"),
        SourceStagingFailure("x", source="/src"),
        VerificationFailure(ExecutionResult(exit_code=1)),
        InfrastructureFailure("x", stage=ProvisionStage.VERIFY),
    ):
        assert isinstance(error, ProvisionError)


def test_only_verification_failure_is_not_infrastructure() -> None:
    assert not VerificationFailure(ExecutionResult(exit_code=3)).infrastructure
    assert PackageInstallFailure("clang", "boom").infrastructure
    assert InfrastructureFailure("x", stage=ProvisionStage.VERIFY).infrastructure


def test_package_failure_names_package_and_tool_error() -> None:
    error = PackageInstallFailure("libclang-dev", "E: Unable to locate package libclang-dev\n")
    assert error.package == "libclang-dev"
    text = str(error)
    assert text.startswith("[install_packages] Failed to install package 'libclang-dev'")
    assert "E: Unable to locate package libclang-dev" in text


def test_to_dict() -> None:
    error = EnvironmentUnavailable("not found", base_image="rust:1.42.0", hint="check the tag")
    assert error.to_dict() == {
        "type": "EnvironmentUnavailable",
        "stage": "materialize_base",
        "message": "not found",
        "infrastructure": True,
        "context": {"base_image": "rust:1.42.0"},
        "hint": "check the tag",
    }
