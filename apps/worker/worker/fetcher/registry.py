"""Registry client and dependency-closure fetcher.

Given a package version, queries the registry's metadata endpoint, selects
a version for every transitive hosted dependency (highest version the
registry lists that satisfies the constraint), downloads each archive and
extracts it into the version's workspace:

  requested package → workspace/package/
  dependencies      → workspace/pub-cache/hosted/<host>/<name>-<version>/

Each HTTP call is retried on its own under the transient-failure policy, so
one dropped connection does not restart the whole closure.

Error mapping:
  transport error, timeout, 408/429/5xx → RegistryUnavailableError (retryable)
  404                                   → PackageNotFoundError
  other statuses, undecodable metadata  → RegistryProtocolError
"""

import asyncio
import logging
import shutil
from collections import deque
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

import httpx

from worker.core.errors import (
    DependencyResolutionError,
    PackageNotFoundError,
    RegistryProtocolError,
    RegistryUnavailableError,
)
from worker.execution.retry import RetryPolicy, retry_transient
from worker.fetcher.archive import check_pubspec_identity, extract_archive, read_pubspec
from worker.fetcher.types import PackageClosure, RegistryVersion
from worker.fetcher.versions import is_hosted_dependency, parse_constraint, select_version
from worker.sandbox.workspace import Workspace

logger = logging.getLogger(__name__)

_RETRYABLE_STATUSES: set[int] = {408, 429, 500, 502, 503, 504}


def hosted_cache_dir(pub_cache: Path, registry_base_url: str) -> Path:
    """Return the hosted pub-cache directory for a registry.

    The port separator is escaped the way the pub client names the
    directory (``localhost%588080``).
    """
    parsed = urlparse(registry_base_url)
    host = parsed.hostname or "localhost"
    if parsed.port:
        host = f"{host}%58{parsed.port}"
    return pub_cache / "hosted" / host


class RegistryClient:
    """Thin async client for the registry's package API.

    Package metadata is cached per instance, so one closure fetch reads each
    package's metadata at most once.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        policy: Optional[RetryPolicy] = None,
    ):
        self._client = client
        self.base_url = base_url.rstrip("/")
        self._policy = policy or RetryPolicy()
        self._metadata: dict[str, list[RegistryVersion]] = {}

    async def _get(self, url: str, package: str, version: Optional[str] = None) -> httpx.Response:
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as exc:
            raise RegistryUnavailableError(f"GET {url} failed: {exc}") from exc

        if response.status_code == 404:
            raise PackageNotFoundError(package, version)
        if response.status_code in _RETRYABLE_STATUSES:
            raise RegistryUnavailableError(f"GET {url} returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise RegistryProtocolError(f"GET {url} returned HTTP {response.status_code}")
        return response

    async def list_versions(self, package: str) -> list[RegistryVersion]:
        """Return every version the registry lists for ``package``."""
        if package in self._metadata:
            return self._metadata[package]

        url = f"{self.base_url}/api/packages/{package}"
        response = await retry_transient(
            lambda: self._get(url, package),
            policy=self._policy,
            description=f"GET {url}",
        )
        try:
            document = response.json()
        except ValueError as exc:
            raise RegistryProtocolError(f"Metadata for {package} is not JSON") from exc

        versions = _parse_versions(package, document)
        self._metadata[package] = versions
        return versions

    async def find_version(self, package: str, version: str) -> RegistryVersion:
        for entry in await self.list_versions(package):
            if entry.version == version:
                return entry
        raise PackageNotFoundError(package, version)

    def archive_url(self, entry: RegistryVersion) -> str:
        """Resolve a possibly relative ``archive_url`` against the base URL."""
        return str(httpx.URL(f"{self.base_url}/").join(entry.archive_url))

    async def download_and_extract(self, entry: RegistryVersion, destination: Path) -> dict[str, Any]:
        """Download an archive, extract it, and return its verified pubspec.

        Download and extraction are retried together: a truncated transfer
        surfaces as a malformed archive.
        """
        url = self.archive_url(entry)

        async def _attempt() -> dict[str, Any]:
            response = await self._get(url, entry.package, entry.version)
            if destination.exists():
                shutil.rmtree(destination)
            await asyncio.to_thread(extract_archive, response.content, destination)
            pubspec = read_pubspec(destination)
            check_pubspec_identity(pubspec, entry.package, entry.version)
            return pubspec

        return await retry_transient(
            _attempt,
            policy=self._policy,
            description=f"download {entry.package} {entry.version}",
        )


def _parse_versions(package: str, document: Any) -> list[RegistryVersion]:
    if not isinstance(document, dict) or not isinstance(document.get("versions"), list):
        raise RegistryProtocolError(f"Metadata for {package} has no 'versions' list")

    versions: list[RegistryVersion] = []
    for item in document["versions"]:
        if not isinstance(item, dict):
            raise RegistryProtocolError(f"Metadata for {package} has a non-object version entry")
        version = item.get("version")
        archive_url = item.get("archive_url")
        if not isinstance(version, str) or not isinstance(archive_url, str):
            raise RegistryProtocolError(
                f"Metadata for {package} has a version entry without 'version'/'archive_url'"
            )
        pubspec = item.get("pubspec") if isinstance(item.get("pubspec"), dict) else {}
        versions.append(RegistryVersion(
            package=package,
            version=version,
            archive_url=archive_url,
            pubspec=pubspec,
        ))
    return versions


def _satisfies(version: str, constraint: Any) -> bool:
    try:
        return parse_constraint(constraint).allows(version)
    except DependencyResolutionError:
        return False


async def resolve_dependencies(
    registry: RegistryClient,
    root: RegistryVersion,
) -> dict[str, RegistryVersion]:
    """Select one registry version for every transitive hosted dependency.

    Breadth-first from ``root``'s declared dependencies; the first version
    selected for a package wins. Later constraints it does not satisfy are
    logged and left for the resolver subprocess to report.

    Raises:
        DependencyResolutionError: a dependency is unknown to the registry or
            no listed version satisfies its constraint.
    """
    selected: dict[str, RegistryVersion] = {}
    queue: deque[tuple[str, str, Any]] = deque(
        (root.package, name, constraint) for name, constraint in root.dependencies.items()
    )

    while queue:
        parent, name, constraint = queue.popleft()
        if not is_hosted_dependency(constraint):
            logger.info("Skipping non-hosted dependency %s of %s: %r", name, parent, constraint)
            continue
        if name == root.package:
            continue
        if name in selected:
            if not _satisfies(selected[name].version, constraint):
                logger.warning(
                    "%s %s selected earlier does not satisfy '%s' required by %s",
                    name, selected[name].version, constraint, parent,
                )
            continue

        allowed = parse_constraint(constraint)
        try:
            available = await registry.list_versions(name)
        except PackageNotFoundError as exc:
            raise DependencyResolutionError(
                f"Dependency {name} of {parent} does not exist in the registry"
            ) from exc

        chosen = select_version([v.version for v in available], allowed)
        if chosen is None:
            raise DependencyResolutionError(
                f"No version of {name} satisfies '{constraint}' (required by {parent})"
            )
        entry = next(v for v in available if v.version == chosen)
        selected[name] = entry
        logger.debug("Selected %s %s for %s", name, chosen, parent)
        queue.extend((name, dep, c) for dep, c in entry.dependencies.items())

    return selected


async def fetch_package_closure(
    client: httpx.AsyncClient,
    registry_base_url: str,
    package: str,
    version: str,
    workspace: Workspace,
    policy: Optional[RetryPolicy] = None,
) -> PackageClosure:
    """Download and extract ``package`` ``version`` and its dependency closure."""
    registry = RegistryClient(client, registry_base_url, policy)

    root = await registry.find_version(package, version)
    selected = await resolve_dependencies(registry, root)
    logger.info(
        "Resolved %s %s with %d dependencies: %s",
        package, version, len(selected),
        ", ".join(f"{e.package} {e.version}" for e in selected.values()) or "(none)",
    )

    pubspec = await registry.download_and_extract(root, workspace.package_dir)

    cache_dir = hosted_cache_dir(workspace.pub_cache, registry.base_url)
    for entry in selected.values():
        await registry.download_and_extract(
            entry, cache_dir / f"{entry.package}-{entry.version}"
        )

    return PackageClosure(
        package=package,
        version=version,
        package_dir=workspace.package_dir,
        pub_cache_dir=workspace.pub_cache,
        pubspec=pubspec,
        dependencies={name: entry.version for name, entry in sorted(selected.items())},
    )
