"""Per-version temporary workspace.

Each version task gets its own directory tree; nothing under it is shared
with sibling tasks. The tree is removed when the task leaves the context,
whether it succeeded or failed.

Layout:
  <root>/package/    extracted source of the version under analysis
  <root>/pub-cache/  hosted pub-cache holding the dependency closure
  <root>/doc/        documentation generator output
"""

import logging
import re
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


@dataclass(frozen=True)
class Workspace:
    root: Path

    @property
    def package_dir(self) -> Path:
        return self.root / "package"

    @property
    def pub_cache(self) -> Path:
        return self.root / "pub-cache"

    @property
    def doc_dir(self) -> Path:
        return self.root / "doc"


@contextmanager
def version_workspace(
    package: str,
    version: str,
    parent: Optional[Path] = None,
    keep: bool = False,
) -> Iterator[Workspace]:
    """Create an isolated workspace for one (package, version) and tear it down.

    ``keep=True`` leaves the tree on disk for debugging.
    """
    if parent is not None:
        Path(parent).mkdir(parents=True, exist_ok=True)

    label = _UNSAFE_CHARS.sub("_", f"{package}-{version}")
    root = Path(tempfile.mkdtemp(prefix=f"pub-worker-{label}-", dir=parent))
    workspace = Workspace(root=root)
    workspace.package_dir.mkdir()
    workspace.pub_cache.mkdir()
    logger.debug("Created workspace %s", root)

    try:
        yield workspace
    finally:
        if keep:
            logger.info("Keeping workspace %s", root)
        else:
            shutil.rmtree(root, ignore_errors=True)
            logger.debug("Removed workspace %s", root)
