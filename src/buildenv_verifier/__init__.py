"""Deterministic build-environment provisioning and verification."""

from buildenv_verifier.errors import (
    EnvironmentUnavailable,
    InfrastructureFailure,
    PackageInstallFailure,
    ProvisionError,
    SourceStagingFailure,
    VerificationFailure,
)
from buildenv_verifier.models import EnvironmentSpec, ExecutionResult, SourceMount
from buildenv_verifier.provisioner import Provisioner

__version__ = "0.1.0"

__all__ = [
    "EnvironmentSpec",
    "EnvironmentUnavailable",
    "ExecutionResult",
    "InfrastructureFailure",
    "PackageInstallFailure",
    "ProvisionError",
    "Provisioner",
    "SourceMount",
    "SourceStagingFailure",
    "VerificationFailure",
]
