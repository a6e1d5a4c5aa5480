"""Environment implementations for isolated execution."""

from buildenv_verifier.environments.base import BaseEnvironment
from buildenv_verifier.environments.docker import DockerEnvironment
from buildenv_verifier.environments.local import LocalEnvironment

__all__ = ["BaseEnvironment", "DockerEnvironment", "LocalEnvironment"]
