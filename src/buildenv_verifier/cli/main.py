"""Main CLI entry point."""

import asyncio
import sys
from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from buildenv_verifier.cache import ProvisionCache
from buildenv_verifier.config import Settings
from buildenv_verifier.definition import Definition, DefinitionError, load_definition
from buildenv_verifier.factory import environment_factory
from buildenv_verifier.models.run import RunRecord
from buildenv_verifier.models.spec import EnvironmentSpec, VerifyTiming
from buildenv_verifier.provisioner import Provisioner
from buildenv_verifier.stages import ProvisionState
from buildenv_verifier.utils.logger import configure_logging
from buildenv_verifier.utils.run import exit_code_for, run_verification

app = typer.Typer(
    name="buildenv-verifier",
    help="Provision a pinned toolchain environment and run a verification command in it",
)
# Progress goes to stderr; stdout carries the verify command's own output.
console = Console(stderr=True)

USAGE_EXIT_CODE = 2

_STATE_LABELS = {
    ProvisionState.BASE_READY: "Base runtime ready",
    ProvisionState.PACKAGES_READY: "System packages installed",
    ProvisionState.SOURCE_STAGED: "Source tree staged",
    ProvisionState.VERIFIED: "Verify command finished",
    ProvisionState.FAILED: "Provisioning failed",
}


def _settings(
    runtime: str | None,
    timeout_sec: float | None,
    output_dir: Path | None,
    cache_dir: Path | None,
    no_cache: bool,
    cpus: int | None,
    memory_mb: int | None,
    no_internet: bool,
    verbose: bool,
) -> Settings:
    overrides: dict[str, object] = {}
    if runtime is not None:
        overrides["runtime"] = runtime
    if timeout_sec is not None:
        overrides["timeout_sec"] = timeout_sec
    if output_dir is not None:
        overrides["output_dir"] = output_dir
    if cache_dir is not None:
        overrides["cache_dir"] = cache_dir
    if no_cache:
        overrides["use_cache"] = False
    if cpus is not None:
        overrides["cpus"] = cpus
    if memory_mb is not None:
        overrides["memory_mb"] = memory_mb
    if no_internet:
        overrides["allow_internet"] = False
    if verbose:
        overrides["log_level"] = "INFO"
    try:
        settings = Settings(**overrides)
    except ValidationError as e:
        console.print(f"[red]✗ Invalid settings:\n{escape(str(e))}[/red]")
        raise typer.Exit(USAGE_EXIT_CODE)
    configure_logging(settings.log_level, settings.log_file)
    return settings


def _load(path: Path, source: Path | None, verify_at: VerifyTiming | None) -> Definition:
    try:
        return load_definition(path, source=source, verify_timing=verify_at)
    except DefinitionError as e:
        console.print(f"[red]✗ {escape(str(e))}[/red]")
        raise typer.Exit(USAGE_EXIT_CODE)


def _provisioner(
    settings: Settings,
    package_manager: str | None,
    quiet: bool,
    cache: ProvisionCache | None = None,
) -> Provisioner:
    def _observe(spec: EnvironmentSpec, state: ProvisionState) -> None:
        label = _STATE_LABELS.get(state)
        if label is None or quiet:
            return
        if state is ProvisionState.FAILED:
            console.print(f"   [red]✗ {label}[/red]")
        else:
            console.print(f"   ✓ {label}")

    return Provisioner(
        environment_factory(settings, package_manager=package_manager),
        cache=cache or _cache(settings),
        observer=_observe,
        command_timeout_sec=settings.command_timeout_sec,
    )


def _cache(settings: Settings) -> ProvisionCache | None:
    return ProvisionCache(settings.cache_dir) if settings.use_cache else None


@app.command()
def run(
    definition: Path = typer.Argument(..., help="Environment definition (recipe or .toml)"),
    source: Path = typer.Option(None, "--source", "-s", help="Source tree to stage"),
    runtime: str = typer.Option(None, "--runtime", help="Environment backend (docker, local)"),
    verify_at: VerifyTiming = typer.Option(
        None, "--verify-at", help="Run verification at build or start time"
    ),
    timeout_sec: float = typer.Option(None, "--timeout", help="Overall timeout in seconds"),
    output_dir: Path = typer.Option(None, "--output", "-o", help="Output directory"),
    cache_dir: Path = typer.Option(None, "--cache-dir", help="Provisioning cache directory"),
    no_cache: bool = typer.Option(False, "--no-cache", help="Disable the provisioning cache"),
    cpus: int = typer.Option(None, "--cpus", help="CPU cores"),
    memory_mb: int = typer.Option(None, "--memory", help="Memory in MB"),
    no_internet: bool = typer.Option(False, "--no-internet", help="Disable network access"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log provisioning details"),
):
    """
    Provision the environment and run its verify command.

    Exits with the verify command's exit code, or 125 if the environment could
    not be provisioned.

    Example:
        buildenv-verifier run Dockerfile --source ./my-crate --runtime docker
    """
    settings = _settings(
        runtime, timeout_sec, output_dir, cache_dir, no_cache, cpus, memory_mb, no_internet, verbose
    )
    loaded = _load(definition, source, verify_at)
    spec = loaded.spec

    console.print(
        Panel.fit(
            "[bold blue]buildenv-verifier[/bold blue]\n"
            f"{spec.base_image} → {spec.verify_command}",
            border_style="blue",
        )
    )
    console.print(f"\n[bold]Provisioning ({settings.runtime})...[/bold]")
    if spec.system_packages:
        console.print(f"   Packages: {', '.join(spec.system_packages)}")
    console.print(f"   Source: {spec.source_mount.source} → {spec.source_mount.target}")

    provisioner = _provisioner(settings, loaded.package_manager, quiet=False)
    record = asyncio.run(
        run_verification(spec, provisioner, settings.output_dir, settings.timeout_sec)
    )

    _print_streams(record)
    _print_summary(record)
    raise typer.Exit(exit_code_for(record))


@app.command("run-all")
def run_all(
    definitions: list[Path] = typer.Argument(..., help="Environment definitions"),
    runtime: str = typer.Option(None, "--runtime", help="Environment backend (docker, local)"),
    timeout_sec: float = typer.Option(None, "--timeout", help="Per-run timeout in seconds"),
    output_dir: Path = typer.Option(None, "--output", "-o", help="Output directory"),
    max_concurrency: int = typer.Option(None, "--max-concurrency", help="Parallel runs"),
    no_cache: bool = typer.Option(False, "--no-cache", help="Disable the provisioning cache"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log provisioning details"),
):
    """
    Provision several independent definitions concurrently.

    Exits with the first nonzero exit code in argument order, 0 if all passed.
    """
    settings = _settings(
        runtime, timeout_sec, output_dir, None, no_cache, None, None, False, verbose
    )
    loaded = [_load(path, None, None) for path in definitions]
    limit = max_concurrency or settings.max_concurrency

    cache = _cache(settings)

    console.print(
        f"[bold]Running {len(loaded)} definitions ({settings.runtime}, {limit} at a time)...[/bold]"
    )

    async def _run_all() -> list[RunRecord]:
        semaphore = asyncio.Semaphore(limit)

        async def _one(item: Definition) -> RunRecord:
            async with semaphore:
                provisioner = _provisioner(settings, item.package_manager, quiet=True, cache=cache)
                return await run_verification(
                    item.spec, provisioner, settings.output_dir, settings.timeout_sec
                )

        return list(await asyncio.gather(*(_one(item) for item in loaded)))

    records = asyncio.run(_run_all())

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Definition", style="cyan")
    table.add_column("Result")
    table.add_column("Exit Code", style="yellow")
    table.add_column("Duration", style="yellow")
    for item, record in zip(loaded, records):
        result = "[green]✓ passed[/green]" if record.success else "[red]✗ failed[/red]"
        if record.error is not None and record.error.infrastructure:
            result = f"[red]✗ {record.error.error_type}[/red]"
        duration = f"{record.duration_sec:.1f}s" if record.duration_sec is not None else "N/A"
        table.add_row(str(item.path), result, str(exit_code_for(record)), duration)
    console.print(table)

    codes = [exit_code_for(record) for record in records]
    raise typer.Exit(next((code for code in codes if code != 0), 0))


@app.command()
def inspect(
    definition: Path = typer.Argument(..., help="Environment definition (recipe or .toml)"),
    source: Path = typer.Option(None, "--source", "-s", help="Source tree to stage"),
):
    """Show the environment spec a definition describes."""
    loaded = _load(definition, source, None)
    spec = loaded.spec

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="yellow")
    table.add_row("Base Image", spec.base_image)
    for key, value in spec.environment_variables.items():
        table.add_row("Environment", f"{key}={value}")
    table.add_row("Packages", ", ".join(spec.system_packages) or "N/A")
    table.add_row("Package Manager", loaded.package_manager or "default")
    table.add_row("Source", f"{spec.source_mount.source} → {spec.source_mount.target}")
    table.add_row("Verify Command", spec.verify_command)
    table.add_row("Verify At", spec.verify_timing.value)
    for command in loaded.disabled_build_checks:
        table.add_row("Disabled Build Check", command)
    table.add_row("Fingerprint", spec.fingerprint())

    console.print(table)


@app.command()
def version():
    """Show version information."""
    from buildenv_verifier import __version__

    console.print(f"buildenv-verifier version {__version__}")


def _print_streams(record: RunRecord) -> None:
    if record.result is None:
        return
    sys.stdout.buffer.write(record.result.stdout)
    sys.stdout.flush()
    sys.stderr.buffer.write(record.result.stderr)
    sys.stderr.flush()


def _print_summary(record: RunRecord) -> None:
    console.print("\n[bold]Results[/bold]")

    if record.success:
        console.print("   [green]✓ Verification PASSED[/green]")
    elif record.error is not None and record.error.infrastructure:
        console.print(f"   [red]✗ Environment setup FAILED ({record.error.stage})[/red]")
    else:
        console.print("   [red]✗ Verification FAILED[/red]")

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="yellow")
    table.add_row("Final State", record.final_state.value)
    table.add_row("Exit Code", str(exit_code_for(record)))
    table.add_row("Cache", "hit" if record.cache_hit else "miss")
    if record.result is not None:
        table.add_row("Verify Duration", f"{record.result.duration_sec:.1f}s")
    if record.duration_sec is not None:
        table.add_row("Total Duration", f"{record.duration_sec:.1f}s")
    if record.run_dir is not None:
        table.add_row("Output Directory", str(record.run_dir))
    console.print(table)

    if record.error is not None:
        console.print("\n[bold red]Error:[/bold red]")
        console.print(f"   {record.error.error_type}: {escape(record.error.message)}")


if __name__ == "__main__":
    app()
