"""Types for the archive fetcher."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional


@dataclass
class RegistryVersion:
    """One entry of the registry's ``versions[]`` list."""

    package: str
    version: str
    archive_url: str
    pubspec: dict[str, Any] = field(default_factory=dict)

    @property
    def dependencies(self) -> dict[str, Any]:
        deps = self.pubspec.get("dependencies") or {}
        return deps if isinstance(deps, dict) else {}


@dataclass
class PackageClosure:
    """A package version plus the dependency versions selected for it.

    ``dependencies`` maps package name to the pinned version string for
    every transitive hosted dependency.
    """

    package: str
    version: str
    package_dir: Path
    pub_cache_dir: Path
    pubspec: dict[str, Any] = field(default_factory=dict)
    dependencies: dict[str, str] = field(default_factory=dict)

    @property
    def sdk_constraint(self) -> Optional[str]:
        environment = self.pubspec.get("environment") or {}
        if not isinstance(environment, dict):
            return None
        sdk = environment.get("sdk")
        return str(sdk) if sdk is not None else None
