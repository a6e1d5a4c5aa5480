"""Provisioning states and the stages that move between them."""

from enum import Enum


class ProvisionState(str, Enum):
    """Lifecycle of a single provisioning run."""

    UNINITIALIZED = "uninitialized"
    BASE_READY = "base_ready"
    PACKAGES_READY = "packages_ready"
    SOURCE_STAGED = "source_staged"
    VERIFIED = "verified"
    FAILED = "failed"


class ProvisionStage(str, Enum):
    """Step of a run; failures record the one they originated in."""

    MATERIALIZE_BASE = "materialize_base"
    APPLY_ENVIRONMENT = "apply_environment"
    INSTALL_PACKAGES = "install_packages"
    STAGE_SOURCE = "stage_source"
    VERIFY = "verify"


# State reached when each stage completes. Environment variables are applied
# between materialization and installation and do not get a state of their own.
STAGE_COMPLETES: dict[ProvisionStage, ProvisionState] = {
    ProvisionStage.MATERIALIZE_BASE: ProvisionState.BASE_READY,
    ProvisionStage.INSTALL_PACKAGES: ProvisionState.PACKAGES_READY,
    ProvisionStage.STAGE_SOURCE: ProvisionState.SOURCE_STAGED,
    ProvisionStage.VERIFY: ProvisionState.VERIFIED,
}
