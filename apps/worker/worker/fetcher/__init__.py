"""Archive fetcher: registry metadata, dependency selection, safe extraction.

Public API:
    fetch_package_closure(client, registry_base_url, package, version, workspace, policy)
"""

from worker.fetcher.registry import RegistryClient, fetch_package_closure
from worker.fetcher.types import PackageClosure

__all__ = ["PackageClosure", "RegistryClient", "fetch_package_closure"]
