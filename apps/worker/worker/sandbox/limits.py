"""Per-process resource limits for analysis subprocesses.

Limits are resolved once in the worker and applied in the child between
fork() and exec(), so a runaway analyzer or doc generator is stopped by the
kernel instead of exhausting the host.

Defaults:
  - 8 GB virtual-address-space cap (RLIMIT_AS). The Dart VM reserves large
    virtual mappings up front, so the cap sits well above physical use.
  - 900 CPU seconds per process (RLIMIT_CPU).

Environment overrides:
  - PUB_WORKER_RLIMIT_AS_BYTES: bytes; 0 or negative disables the cap
  - PUB_WORKER_RLIMIT_CPU_SECONDS: seconds; 0 or negative keeps the default
"""

import logging
import os
import sys
from dataclasses import dataclass
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

GIB = 1024 ** 3

DEFAULT_ADDRESS_SPACE_BYTES = 8 * GIB
DEFAULT_CPU_SECONDS = 900

ADDRESS_SPACE_ENV = "PUB_WORKER_RLIMIT_AS_BYTES"
CPU_SECONDS_ENV = "PUB_WORKER_RLIMIT_CPU_SECONDS"


def _read_int(environ: Mapping[str, str], name: str) -> Optional[int]:
    raw = environ.get(name, "").strip()
    return int(raw) if raw else None


@dataclass(frozen=True)
class ResourceLimits:
    """rlimits for one analysis child. ``address_space_bytes=0`` means uncapped."""

    address_space_bytes: int = DEFAULT_ADDRESS_SPACE_BYTES
    cpu_seconds: int = DEFAULT_CPU_SECONDS

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ResourceLimits":
        environ = os.environ if environ is None else environ

        address_space = _read_int(environ, ADDRESS_SPACE_ENV)
        if address_space is None:
            address_space = DEFAULT_ADDRESS_SPACE_BYTES
        cpu = _read_int(environ, CPU_SECONDS_ENV)
        if cpu is None or cpu <= 0:
            cpu = DEFAULT_CPU_SECONDS

        return cls(address_space_bytes=max(address_space, 0), cpu_seconds=cpu)

    def describe(self) -> str:
        memory = f"{self.address_space_bytes / GIB:.1f}GB" if self.address_space_bytes else "unlimited"
        return f"as={memory} cpu={self.cpu_seconds}s"

    def apply(self) -> None:
        """Install the limits in the current process. No-op on Windows.

        Usable directly as ``preexec_fn``. A host that refuses setrlimit
        (hardened containers) gets a warning, never a failed child.
        """
        if sys.platform == "win32":
            return

        try:
            import resource

            if self.address_space_bytes > 0:
                resource.setrlimit(
                    resource.RLIMIT_AS, (self.address_space_bytes, resource.RLIM_INFINITY)
                )
            resource.setrlimit(resource.RLIMIT_CPU, (self.cpu_seconds, resource.RLIM_INFINITY))
        except (ImportError, ValueError, OSError) as exc:
            logger.warning("Could not apply resource limits (%s): %s", self.describe(), exc)


def apply_resource_limits() -> None:
    """Resolve limits from the environment and apply them to this process."""
    ResourceLimits.from_env().apply()
