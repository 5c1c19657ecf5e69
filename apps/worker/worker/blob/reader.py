"""Read-back helpers for documentation stored in an indexed blob.

The doc-serving side receives a request path relative to a package version's
documentation root and needs the matching ``doc/...`` entry.
"""

from typing import Optional

from worker.blob.indexed_blob import BlobIndex

DOC_PREFIX = "doc/"
DEFAULT_PAGE = "index.html"


def doc_entry_name(path: str) -> Optional[str]:
    """Map a documentation request path to its container entry name.

    Empty paths and paths ending in ``/`` resolve to ``index.html`` in that
    directory. Returns None for paths containing ``..`` or empty segments.
    """
    path = path.lstrip("/")
    if not path or path.endswith("/"):
        path = f"{path}{DEFAULT_PAGE}"
    segments = path.split("/")
    if any(s in ("", ".", "..") for s in segments):
        return None
    return f"{DOC_PREFIX}{path}"


def read_doc_page(blob: bytes, index: BlobIndex, path: str) -> Optional[bytes]:
    """Return the decompressed documentation page for ``path``, or None."""
    name = doc_entry_name(path)
    if name is None:
        return None
    return index.read(blob, name)
