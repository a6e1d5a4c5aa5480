"""Run execution utilities."""

import traceback
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from loguru import logger

from buildenv_verifier.errors import ProvisionError, VerificationFailure
from buildenv_verifier.models.run import ErrorInfo, RunRecord
from buildenv_verifier.models.spec import EnvironmentSpec
from buildenv_verifier.provisioner import Provisioner

# Exit code reserved for failures to set up the environment, as opposed to the
# verify command's own exit code. Matches the code docker run uses for daemon errors.
INFRASTRUCTURE_EXIT_CODE = 125


def exit_code_for(record: RunRecord) -> int:
    """Map a run record to the process exit code."""
    if record.error is not None and record.error.infrastructure:
        return INFRASTRUCTURE_EXIT_CODE
    if record.result is not None:
        return record.result.exit_code
    return INFRASTRUCTURE_EXIT_CODE


async def run_verification(
    spec: EnvironmentSpec,
    provisioner: Provisioner,
    output_dir: Path | None = None,
    timeout_sec: float | None = None,
) -> RunRecord:
    """
    Execute a single provisioning run and record it.

    Args:
        spec: Environment spec
        provisioner: Provisioner to run it with
        output_dir: Parent directory of the run directory, nothing is written if None
        timeout_sec: Overall deadline for the run

    Returns:
        RunRecord with the verification outcome
    """
    run_id = uuid4()
    label = spec.name or spec.cache_slot.rsplit("/", 1)[-1]
    record = RunRecord(
        run_id=run_id,
        run_name=f"{label}__run-{run_id.hex[:8]}",
        spec=spec,
        fingerprint=spec.fingerprint(),
        started_at=datetime.now(),
    )

    run_dir = None
    if output_dir is not None:
        run_dir = output_dir / str(run_id)
        run_dir.mkdir(parents=True, exist_ok=True)
        record.run_dir = run_dir
        # Save spec
        (run_dir / "spec.json").write_text(spec.model_dump_json(indent=2), encoding="utf-8")

    tracker = provisioner.tracker(spec)
    try:
        if timeout_sec is not None:
            record.result = await provisioner.provision_with_deadline(spec, timeout_sec, tracker)
        else:
            record.result = await provisioner.provision(spec, tracker)

    except ProvisionError as e:
        if isinstance(e, VerificationFailure):
            record.result = e.result
        record.error = ErrorInfo(
            error_type=type(e).__name__,
            stage=e.stage.value,
            message=str(e),
            infrastructure=e.infrastructure,
            traceback=traceback.format_exc(),
        )
        if run_dir is not None:
            (run_dir / "exception.txt").write_text(traceback.format_exc(), encoding="utf-8")

    finally:
        record.final_state = tracker.state
        record.cache_hit = tracker.cache_hit
        record.finished_at = datetime.now()

        if run_dir is not None:
            _save(record, run_dir)

    return record


def _save(record: RunRecord, run_dir: Path) -> None:
    # Output streams are raw bytes and go to their own files
    result_path = run_dir / "result.json"
    result_path.write_text(
        record.model_dump_json(indent=2, exclude={"result": {"stdout", "stderr"}}),
        encoding="utf-8",
    )
    if record.result is not None:
        (run_dir / "stdout.log").write_bytes(record.result.stdout)
        (run_dir / "stderr.log").write_bytes(record.result.stderr)
    logger.debug(f"Run record saved to {run_dir}")
