"""Data models for buildenv-verifier."""

from buildenv_verifier.models.result import ExecutionResult
from buildenv_verifier.models.run import ErrorInfo, RunRecord
from buildenv_verifier.models.spec import EnvironmentSpec, SourceMount, VerifyTiming

__all__ = [
    "EnvironmentSpec",
    "ErrorInfo",
    "ExecutionResult",
    "RunRecord",
    "SourceMount",
    "VerifyTiming",
]
