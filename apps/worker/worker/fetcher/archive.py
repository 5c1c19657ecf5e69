"""Safe extraction of package archives (gzip-compressed tar).

Extraction uses the tarfile ``data`` filter: absolute paths, ``..``
components, links escaping the destination and device files are rejected
instead of being written.
"""

import io
import logging
import tarfile
import zlib
from pathlib import Path
from typing import Any

import yaml

from worker.core.errors import MalformedArchiveError

logger = logging.getLogger(__name__)

PUBSPEC_FILENAME = "pubspec.yaml"


def extract_archive(data: bytes, destination: Path) -> int:
    """Extract a ``.tar.gz`` archive into ``destination``.

    Returns the number of members extracted.

    Raises:
        MalformedArchiveError: the bytes are not a gzip-compressed tar, or a
            member is unsafe.
    """
    destination.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as archive:
            members = archive.getmembers()
            archive.extractall(destination, filter="data")
    except (tarfile.TarError, EOFError, zlib.error, OSError) as exc:
        raise MalformedArchiveError(f"Could not extract archive: {exc}") from exc

    logger.debug("Extracted %d members into %s", len(members), destination)
    return len(members)


def read_pubspec(package_dir: Path) -> dict[str, Any]:
    """Load ``pubspec.yaml`` from an extracted package.

    Raises:
        MalformedArchiveError: the file is missing or not a YAML mapping.
    """
    path = package_dir / PUBSPEC_FILENAME
    if not path.is_file():
        raise MalformedArchiveError(f"Archive has no {PUBSPEC_FILENAME}")
    try:
        pubspec = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (UnicodeDecodeError, yaml.YAMLError) as exc:
        raise MalformedArchiveError(f"Invalid {PUBSPEC_FILENAME}: {exc}") from exc
    if not isinstance(pubspec, dict):
        raise MalformedArchiveError(f"{PUBSPEC_FILENAME} is not a mapping")
    return pubspec


def check_pubspec_identity(pubspec: dict[str, Any], package: str, version: str) -> None:
    """Raise MalformedArchiveError unless the archive is the expected version."""
    name = pubspec.get("name")
    found = str(pubspec.get("version", ""))
    if name != package or found != version:
        raise MalformedArchiveError(
            f"Archive contains {name} {found or '(no version)'}, expected {package} {version}"
        )
