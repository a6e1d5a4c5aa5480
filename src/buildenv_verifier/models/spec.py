"""Environment specification models."""

import hashlib
import json
import re
from collections.abc import Mapping
from enum import Enum
from pathlib import Path, PurePosixPath
from string import Template
from types import MappingProxyType

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

# Tags that move over time and therefore cannot pin a toolchain.
FLOATING_TAGS = frozenset({"latest", "stable", "edge", "nightly", "current", "rolling"})

_DIGEST_RE = re.compile(r"^[^@\s]+@sha256:[0-9a-f]{64}$")
_VARIABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class VerifyTiming(str, Enum):
    """When the verify command runs."""

    START = "start"
    BUILD = "build"


class SourceMount(BaseModel):
    """Mapping from an external source tree to the environment's working directory."""

    model_config = ConfigDict(frozen=True)

    source: Path = Field(..., description="Source tree on the host")
    target: str = Field(default="/code", description="Working directory inside the environment")

    @field_validator("target")
    @classmethod
    def _absolute_target(cls, value: str) -> str:
        path = PurePosixPath(value)
        if not path.is_absolute():
            raise ValueError(f"target must be an absolute path, got '{value}'")
        if ".." in path.parts:
            raise ValueError(f"target must not contain '..' segments, got '{value}'")
        return str(path)


def split_image(base_image: str) -> tuple[str, str | None]:
    """
    Split an image reference into repository and tag.

    A colon only denotes a tag when it appears after the last slash, so
    registry ports (``registry:5000/rust``) are not mistaken for tags.

    Returns:
        Tuple of (repository, tag or None)
    """
    reference = base_image.split("@", 1)[0]
    slash = reference.rfind("/")
    colon = reference.rfind(":")
    if colon > slash:
        return reference[:colon], reference[colon + 1 :]
    return reference, None


class EnvironmentSpec(BaseModel):
    """Immutable description of an execution environment."""

    model_config = ConfigDict(frozen=True)

    base_image: str = Field(..., description="Pinned base runtime identifier")
    environment_variables: Mapping[str, str] = Field(
        default_factory=dict,
        validate_default=True,
        description="Variables applied before installation, read-only",
    )
    system_packages: tuple[str, ...] = Field(
        default=(), description="Auxiliary tools to install, in order"
    )
    source_mount: SourceMount = Field(..., description="Source tree to stage")
    verify_command: str = Field(default="cargo check", description="Verification command")
    verify_timing: VerifyTiming = Field(
        default=VerifyTiming.START, description="Run verification at build or start time"
    )
    name: str | None = Field(default=None, description="Optional label for records and cache")

    @field_validator("base_image")
    @classmethod
    def _pinned_image(cls, value: str) -> str:
        value = value.strip()
        if _DIGEST_RE.match(value):
            return value
        repository, tag = split_image(value)
        if not repository or tag is None:
            raise ValueError(f"base image '{value}' must carry an explicit version tag or digest")
        if tag.lower() in FLOATING_TAGS or not any(ch.isdigit() for ch in tag):
            raise ValueError(f"base image '{value}' uses floating tag '{tag}'")
        return value

    @field_validator("environment_variables")
    @classmethod
    def _variable_names(cls, value: Mapping[str, str]) -> Mapping[str, str]:
        for key in value:
            if not _VARIABLE_RE.match(key):
                raise ValueError(f"invalid environment variable name '{key}'")
        return MappingProxyType(dict(value))

    @field_serializer("environment_variables")
    def _serialize_variables(self, value: Mapping[str, str]) -> dict[str, str]:
        return dict(value)

    @field_validator("system_packages")
    @classmethod
    def _unique_packages(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        seen: set[str] = set()
        for package in value:
            if not package or any(ch.isspace() for ch in package):
                raise ValueError(f"invalid package name '{package}'")
            if package in seen:
                raise ValueError(f"package '{package}' listed more than once")
            seen.add(package)
        return value

    @field_validator("verify_command")
    @classmethod
    def _non_empty_command(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("verify command must not be empty")
        return value.strip()

    @property
    def working_dir(self) -> str:
        """Working directory the verify command runs in."""
        return self.source_mount.target

    @property
    def cache_slot(self) -> str:
        """Key under which at most one snapshot of this environment is cached."""
        return self.name or split_image(self.base_image)[0]

    def fingerprint(self) -> str:
        """Stable digest of every field that shapes the environment."""
        payload = {
            "base_image": self.base_image,
            "environment": dict(sorted(self.environment_variables.items())),
            "packages": list(self.system_packages),
            "verify_command": self.verify_command,
        }
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def resolve_environment(self, base: Mapping[str, str]) -> dict[str, str]:
        """
        Expand variable references against the base environment.

        Variables are applied in declaration order, so later values may refer
        to earlier ones as well as to the base environment
        (``PATH=/usr/local/cargo/bin:$PATH``). Unknown references are left as is.

        Args:
            base: Variables already present in the materialized environment

        Returns:
            Only the declared variables, with references expanded
        """
        scope = dict(base)
        resolved: dict[str, str] = {}
        for key, value in self.environment_variables.items():
            expanded = Template(value).safe_substitute(scope)
            scope[key] = expanded
            resolved[key] = expanded
        return resolved
