"""Environment definition loading.

Two formats are understood:

* a Dockerfile-style recipe restricted to ``FROM``, ``ENV``, package-install
  ``RUN`` lines, ``ADD``/``COPY``, ``WORKDIR`` and ``CMD``;
* a TOML document with the same information.

A ``RUN`` line repeating the verify command selects build-time verification;
a commented-out one is recorded but leaves verification at start time.
"""

import json
import re
import shlex
import tomllib
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from pydantic import ValidationError

from buildenv_verifier.environments.docker import PACKAGE_MANAGERS
from buildenv_verifier.models.spec import EnvironmentSpec, SourceMount, VerifyTiming

INSTALL_SUBCOMMANDS = {
    "apt-get": ("install",),
    "apt": ("install",),
    "apk": ("add",),
    "dnf": ("install",),
    "yum": ("install",),
}
REFRESH_SUBCOMMANDS = {"update", "makecache", "upgrade"}

_COMMENTED_RUN_RE = re.compile(r"^#\s*RUN\s+(?P<command>.+)$", re.IGNORECASE)
_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")
_CLEANUP_RE = re.compile(r"^rm\s+-rf?\s+/var/(lib/apt/lists|cache/apk)")


class DefinitionError(ValueError):
    """The environment definition cannot be turned into a spec."""

    def __init__(self, message: str, path: Path | None = None, line: int | None = None):
        location = ""
        if path is not None:
            location = f"{path}:{line}: " if line is not None else f"{path}: "
        super().__init__(f"{location}{message}")
        self.path = path
        self.line = line


@dataclass
class Definition:
    """A loaded definition: the spec plus hints that are not part of it."""

    spec: EnvironmentSpec
    path: Path
    package_manager: str | None = None
    disabled_build_checks: list[str] = field(default_factory=list)


@dataclass
class _Recipe:
    base_image: str | None = None
    environment: dict[str, str] = field(default_factory=dict)
    packages: list[str] = field(default_factory=list)
    package_manager: str | None = None
    other_runs: list[tuple[int, str]] = field(default_factory=list)
    commented_runs: list[str] = field(default_factory=list)
    source: str | None = None
    target: str | None = None
    workdir: str | None = None
    command: str | None = None


def load_definition(
    path: Path, source: Path | None = None, verify_timing: VerifyTiming | None = None
) -> Definition:
    """
    Load an environment definition file.

    Args:
        path: Definition file, ``.toml`` or Dockerfile-style
        source: Overrides the source tree named in the definition
        verify_timing: Overrides the verification timing

    Returns:
        Loaded definition

    Raises:
        DefinitionError: If the file is unreadable or invalid
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise DefinitionError(f"cannot read definition: {e}", path) from e

    if path.suffix == ".toml":
        definition = parse_toml(text, path)
    else:
        definition = parse_recipe(text, path)

    updates: dict[str, object] = {}
    if source is not None:
        updates["source_mount"] = SourceMount(
            source=source.resolve(), target=definition.spec.source_mount.target
        )
    if verify_timing is not None:
        updates["verify_timing"] = verify_timing
    if updates:
        definition.spec = definition.spec.model_copy(update=updates)
    return definition


def parse_recipe(text: str, path: Path) -> Definition:
    """Parse a Dockerfile-style recipe."""
    recipe = _Recipe()
    for line_no, instruction in _logical_lines(text):
        if instruction.startswith("#"):
            match = _COMMENTED_RUN_RE.match(instruction)
            if match:
                recipe.commented_runs.append(match.group("command").strip())
            continue

        keyword, _, args = instruction.partition(" ")
        keyword = keyword.upper()
        args = args.strip()
        handler = _HANDLERS.get(keyword)
        if handler is None:
            raise DefinitionError(f"unsupported instruction {keyword}", path, line_no)
        if not args:
            raise DefinitionError(f"{keyword} needs arguments", path, line_no)
        handler(recipe, args, path, line_no)

    if recipe.base_image is None:
        raise DefinitionError("missing FROM instruction", path)
    if recipe.source is None:
        raise DefinitionError("missing ADD or COPY instruction for the source tree", path)

    target = recipe.target
    if recipe.workdir is not None and recipe.workdir != target:
        raise DefinitionError(
            f"WORKDIR {recipe.workdir} must be the source target {target}", path
        )

    command = recipe.command
    build_check = False
    for line_no, run in recipe.other_runs:
        if command is None or run == command:
            command = command or run
            build_check = True
            continue
        raise DefinitionError(f"unsupported RUN command: {run}", path, line_no)

    fields: dict[str, object] = {
        "base_image": recipe.base_image,
        "environment_variables": recipe.environment,
        "system_packages": tuple(recipe.packages),
        "source_mount": {"source": _resolve_source(recipe.source, path), "target": target},
        "verify_timing": VerifyTiming.BUILD if build_check else VerifyTiming.START,
    }
    if command is not None:
        fields["verify_command"] = command

    return Definition(
        spec=_build_spec(fields, path),
        path=path,
        package_manager=recipe.package_manager,
        disabled_build_checks=list(recipe.commented_runs),
    )


def parse_toml(text: str, path: Path) -> Definition:
    """Parse a TOML definition."""
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        raise DefinitionError(f"invalid TOML: {e}", path) from e

    source = data.get("source", {})
    if not isinstance(source, dict) or "path" not in source:
        raise DefinitionError("missing [source] table with a path", path)

    fields: dict[str, object] = {
        "base_image": data.get("base_image"),
        "environment_variables": data.get("environment", {}),
        "system_packages": tuple(data.get("packages", ())),
        "source_mount": {
            "source": _resolve_source(source["path"], path),
            "target": source.get("target", "/code"),
        },
    }
    for key in ("verify_command", "verify_timing", "name"):
        if key in data:
            fields[key] = data[key]

    package_manager = data.get("package_manager")
    if package_manager is not None and (
        not isinstance(package_manager, str) or package_manager not in PACKAGE_MANAGERS
    ):
        raise DefinitionError(
            f"unsupported package_manager {package_manager!r}, "
            f"expected one of: {', '.join(PACKAGE_MANAGERS)}",
            path,
        )

    return Definition(
        spec=_build_spec(fields, path),
        path=path,
        package_manager=package_manager,
    )


def _build_spec(fields: dict[str, object], path: Path) -> EnvironmentSpec:
    try:
        return EnvironmentSpec.model_validate(fields)
    except ValidationError as e:
        raise DefinitionError(f"invalid environment definition:\n{e}", path) from e


def _resolve_source(source: str, path: Path) -> Path:
    candidate = Path(source)
    if not candidate.is_absolute():
        candidate = path.parent / candidate
    return candidate.resolve()


def _logical_lines(text: str) -> list[tuple[int, str]]:
    """Join continuation lines; comment lines inside a continuation are dropped."""
    lines: list[tuple[int, str]] = []
    buffer: list[str] = []
    start = 0
    for line_no, raw in enumerate(text.splitlines(), start=1):
        stripped = raw.strip()
        if buffer and stripped.startswith("#"):
            continue
        if not buffer:
            if not stripped:
                continue
            start = line_no
        if stripped.endswith("\\"):
            buffer.append(stripped[:-1].strip())
            continue
        buffer.append(stripped)
        lines.append((start, " ".join(part for part in buffer if part)))
        buffer = []
    if buffer:
        lines.append((start, " ".join(part for part in buffer if part)))
    return lines


def _handle_from(recipe: _Recipe, args: str, path: Path, line_no: int) -> None:
    if recipe.base_image is not None:
        raise DefinitionError("multi-stage recipes are not supported", path, line_no)
    tokens = [token for token in args.split() if not token.startswith("--")]
    recipe.base_image = tokens[0]


def _handle_env(recipe: _Recipe, args: str, path: Path, line_no: int) -> None:
    try:
        tokens = shlex.split(args, posix=True)
    except ValueError as e:
        raise DefinitionError(f"cannot parse ENV: {e}", path, line_no) from e
    if "=" not in tokens[0]:
        if len(tokens) < 2:
            raise DefinitionError("ENV needs a value", path, line_no)
        recipe.environment[tokens[0]] = " ".join(tokens[1:])
        return
    for token in tokens:
        key, sep, value = token.partition("=")
        if not sep:
            raise DefinitionError(f"expected KEY=VALUE, got {token}", path, line_no)
        recipe.environment[key] = value


def _handle_run(recipe: _Recipe, args: str, path: Path, line_no: int) -> None:
    for segment in (part.strip() for part in args.split("&&")):
        if not segment or _CLEANUP_RE.match(segment):
            continue
        try:
            tokens = shlex.split(segment)
        except ValueError as e:
            raise DefinitionError(f"cannot parse RUN: {e}", path, line_no) from e
        while tokens and (_ASSIGNMENT_RE.match(tokens[0]) or tokens[0] == "sudo"):
            tokens.pop(0)
        if tokens and tokens[0] in INSTALL_SUBCOMMANDS:
            manager = "apt-get" if tokens[0] == "apt" else tokens[0]
            subcommand = next((t for t in tokens[1:] if not t.startswith("-")), None)
            if subcommand in REFRESH_SUBCOMMANDS:
                continue
            if subcommand in INSTALL_SUBCOMMANDS[tokens[0]]:
                recipe.package_manager = manager
                args_after = tokens[tokens.index(subcommand) + 1 :]
                for package in args_after:
                    if not package.startswith("-") and package not in recipe.packages:
                        recipe.packages.append(package)
                continue
        recipe.other_runs.append((line_no, segment))


def _handle_copy(recipe: _Recipe, args: str, path: Path, line_no: int) -> None:
    if recipe.source is not None:
        raise DefinitionError("only one source tree can be staged", path, line_no)
    tokens = [token for token in shlex.split(args) if not token.startswith("--")]
    if len(tokens) != 2:
        raise DefinitionError("ADD/COPY needs exactly one source and one destination", path, line_no)
    source, dest = tokens
    if not PurePosixPath(dest).is_absolute():
        dest = str(PurePosixPath(recipe.workdir or "/") / dest)
    recipe.source = source
    recipe.target = str(PurePosixPath(dest))


def _handle_workdir(recipe: _Recipe, args: str, path: Path, line_no: int) -> None:
    workdir = PurePosixPath(args)
    if not workdir.is_absolute():
        workdir = PurePosixPath(recipe.workdir or "/") / workdir
    recipe.workdir = str(workdir)


def _handle_cmd(recipe: _Recipe, args: str, path: Path, line_no: int) -> None:
    if args.startswith("["):
        try:
            parts = json.loads(args)
        except json.JSONDecodeError as e:
            raise DefinitionError(f"invalid CMD exec form: {e}", path, line_no) from e
        if not isinstance(parts, list) or not all(isinstance(p, str) for p in parts):
            raise DefinitionError("CMD exec form must be a list of strings", path, line_no)
        recipe.command = shlex.join(parts)
    else:
        recipe.command = args


_HANDLERS = {
    "FROM": _handle_from,
    "ENV": _handle_env,
    "RUN": _handle_run,
    "ADD": _handle_copy,
    "COPY": _handle_copy,
    "WORKDIR": _handle_workdir,
    "CMD": _handle_cmd,
}
