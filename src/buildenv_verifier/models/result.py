"""Execution result model."""

from pydantic import BaseModel, ConfigDict, Field

from buildenv_verifier.errors import VerificationFailure


class ExecutionResult(BaseModel):
    """Outcome of running the verify command."""

    model_config = ConfigDict(frozen=True)

    exit_code: int = Field(..., description="Exit status, 0 on success")
    stdout: bytes = Field(default=b"", description="Captured standard output")
    stderr: bytes = Field(default=b"", description="Captured standard error")
    duration_sec: float = Field(default=0.0, ge=0.0, description="Wall-clock duration")

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")

    def raise_for_status(self) -> "ExecutionResult":
        """Raise VerificationFailure when the command exited nonzero."""
        if not self.success:
            raise VerificationFailure(self)
        return self
