"""Typed provisioning errors carrying the stage they originated in."""

from collections.abc import Mapping
from typing import TYPE_CHECKING

from buildenv_verifier.stages import ProvisionStage

if TYPE_CHECKING:
    from buildenv_verifier.models.result import ExecutionResult


class ProvisionError(Exception):
    """Base error for a failed provisioning run."""

    infrastructure = True

    def __init__(
        self,
        message: str,
        *,
        stage: ProvisionStage,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.hint = hint
        self.context = dict(context or {})

    def __str__(self) -> str:
        parts = [f"[{self.stage.value}] {super().__str__()}"]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        for key, value in self.context.items():
            if value:
                parts.append(f"  {key}: {value}")
        return "\n".join(parts)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "type": type(self).__name__,
            "stage": self.stage.value,
            "message": self.args[0] if self.args else "",
            "infrastructure": self.infrastructure,
            "context": dict(self.context),
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class EnvironmentUnavailable(ProvisionError):
    """The base runtime could not be resolved or fetched."""

    def __init__(self, message: str, *, base_image: str, hint: str | None = None) -> None:
        super().__init__(
            message,
            stage=ProvisionStage.MATERIALIZE_BASE,
            hint=hint,
            context={"base_image": base_image},
        )
        self.base_image = base_image


class PackageInstallFailure(ProvisionError):
    """An auxiliary system package failed to install."""

    def __init__(self, package: str, tool_error: str) -> None:
        super().__init__(
            f"Failed to install package '{package}'",
            stage=ProvisionStage.INSTALL_PACKAGES,
            context={"package": package, "tool_error": tool_error.strip()},
        )
        self.package = package
        self.tool_error = tool_error


class SourceStagingFailure(ProvisionError):
    """The source tree could not be copied into the environment."""

    def __init__(self, message: str, *, source: str, hint: str | None = None) -> None:
        super().__init__(
            message,
            stage=ProvisionStage.STAGE_SOURCE,
            hint=hint,
            context={"source": source},
        )
        self.source = source


class VerificationFailure(ProvisionError):
    """The verify command ran and exited nonzero.

    This is an expected outcome rather than a defect: the full result is kept
    so callers can report the command's own exit code and output verbatim.
    """

    infrastructure = False

    def __init__(self, result: "ExecutionResult") -> None:
        super().__init__(
            f"Verify command exited with code {result.exit_code}",
            stage=ProvisionStage.VERIFY,
            context={"exit_code": str(result.exit_code)},
        )
        self.result = result


class InfrastructureFailure(ProvisionError):
    """Cancellation, timeout, resource exhaustion or a backend fault."""
