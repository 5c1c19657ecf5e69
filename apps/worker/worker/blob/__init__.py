"""Indexed blob container codec.

Public API:
    IndexedBlobBuilder().add_entry(name, data) / .finalize(blob_id)
    BlobIndex.from_bytes(data).lookup(name) / .read(blob, name) / .as_bytes()
    read_entry(blob, byte_range)
    read_doc_page(blob, index, path)
"""

from worker.blob.indexed_blob import BlobIndex, ByteRange, IndexedBlobBuilder, read_entry
from worker.blob.reader import read_doc_page

__all__ = ["BlobIndex", "ByteRange", "IndexedBlobBuilder", "read_entry", "read_doc_page"]
