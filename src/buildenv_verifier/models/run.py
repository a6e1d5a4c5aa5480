"""Run record models."""

from datetime import datetime
from pathlib import Path
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from buildenv_verifier.models.result import ExecutionResult
from buildenv_verifier.models.spec import EnvironmentSpec
from buildenv_verifier.stages import ProvisionState


class ErrorInfo(BaseModel):
    """Failure details if the run did not produce a result."""

    error_type: str
    stage: str | None = None
    message: str
    infrastructure: bool = True
    traceback: str = ""


class RunRecord(BaseModel):
    """Record of one provisioning run."""

    run_id: UUID = Field(default_factory=uuid4, description="Unique run ID")
    run_name: str = Field(..., description="Human-readable run name")
    spec: EnvironmentSpec = Field(..., description="Spec the run was provisioned from")
    fingerprint: str = Field(..., description="Spec fingerprint")

    result: ExecutionResult | None = Field(default=None, description="Verify command outcome")
    error: ErrorInfo | None = Field(default=None, description="Failure details")
    final_state: ProvisionState = Field(
        default=ProvisionState.UNINITIALIZED, description="Last state reached"
    )
    cache_hit: bool = Field(default=False, description="Packages restored from cache")

    started_at: datetime | None = Field(default=None, description="Run start time")
    finished_at: datetime | None = Field(default=None, description="Run finish time")

    run_dir: Path | None = Field(default=None, description="Run output directory")

    @property
    def duration_sec(self) -> float | None:
        """Calculate run duration."""
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    @property
    def success(self) -> bool:
        """Check if the verify command ran and passed."""
        return self.error is None and self.result is not None and self.result.success
