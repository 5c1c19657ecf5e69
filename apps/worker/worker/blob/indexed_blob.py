"""Indexed blob container: many named byte streams in one blob plus an index.

Layout:
  blob  — concatenation of entries, each one gzip-compressed on its own.
  index — JSON ``{"blobId": str, "entries": {name: {"start": int, "end": int}}}``
          where ``[start, end)`` addresses the *compressed* bytes of an entry.

A consumer resolves a name through the index, slices the blob, and gunzips
that slice alone. Nothing else in the blob has to be read or decompressed,
which keeps random access by documentation path cheap.

The index serialization is canonical (sorted keys, compact separators), so
``BlobIndex.from_bytes(data).as_bytes() == data`` for any index this module
produced.
"""

import gzip
import json
import logging
import zlib
from dataclasses import dataclass
from typing import Optional

from worker.core.errors import (
    CodecError,
    CorruptEntryError,
    DuplicateEntryError,
    MalformedIndexError,
)

logger = logging.getLogger(__name__)

# Fixed mtime keeps compressed output deterministic for identical input.
_GZIP_MTIME = 0


@dataclass(frozen=True)
class ByteRange:
    """Half-open ``[start, end)`` interval of compressed bytes within a blob."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.end < self.start:
            raise ValueError(f"Invalid byte range [{self.start}, {self.end})")

    @property
    def length(self) -> int:
        return self.end - self.start

    def to_dict(self) -> dict:
        return {"start": self.start, "end": self.end}


def _serialize_index(blob_id: str, entries: dict[str, ByteRange]) -> bytes:
    document = {
        "blobId": blob_id,
        "entries": {name: r.to_dict() for name, r in entries.items()},
    }
    return json.dumps(
        document,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


class IndexedBlobBuilder:
    """Append-only writer for one container.

    Entries may be added in any order; names must be unique. The builder is
    finalized once the blob id is known (it is assigned by the control plane
    after assembly).
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._entries: dict[str, ByteRange] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def names(self) -> list[str]:
        return list(self._entries)

    @property
    def size(self) -> int:
        """Current blob length in bytes."""
        return len(self._buffer)

    def add_entry(self, name: str, data: bytes) -> ByteRange:
        """Compress ``data`` and append it under ``name``.

        Raises:
            DuplicateEntryError: ``name`` was already added. The builder is
                left unchanged.
            CodecError: ``name`` is empty or ``data`` is not bytes.
        """
        if not name:
            raise CodecError("Entry name must not be empty")
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise CodecError(
                f"Entry '{name}' must be bytes, got {type(data).__name__}"
            )
        if name in self._entries:
            raise DuplicateEntryError(name)

        compressed = gzip.compress(bytes(data), mtime=_GZIP_MTIME)
        start = len(self._buffer)
        self._buffer.extend(compressed)
        byte_range = ByteRange(start=start, end=len(self._buffer))
        self._entries[name] = byte_range
        return byte_range

    def finalize(self, blob_id: str = "") -> tuple[bytes, bytes]:
        """Return ``(blob_bytes, index_bytes)`` for the entries added so far."""
        blob = bytes(self._buffer)
        index = _serialize_index(blob_id, self._entries)
        logger.debug(
            "Finalized container: %d entries, %d blob bytes, blob_id=%r",
            len(self._entries), len(blob), blob_id,
        )
        return blob, index


def _parse_range(name: str, raw: object) -> ByteRange:
    if not isinstance(raw, dict):
        raise MalformedIndexError(f"Entry '{name}' is not an object")
    start = raw.get("start")
    end = raw.get("end")
    # bool is an int subclass; reject it explicitly.
    for label, value in (("start", start), ("end", end)):
        if not isinstance(value, int) or isinstance(value, bool):
            raise MalformedIndexError(
                f"Entry '{name}' has non-integer {label}: {value!r}"
            )
    if start < 0 or end < start:
        raise MalformedIndexError(f"Entry '{name}' has invalid range [{start}, {end})")
    return ByteRange(start=start, end=end)


class BlobIndex:
    """Parsed index: blob id plus name → ByteRange mapping."""

    def __init__(self, blob_id: str, entries: dict[str, ByteRange]):
        self.blob_id = blob_id
        self._entries = dict(entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    @property
    def names(self) -> list[str]:
        return sorted(self._entries)

    @classmethod
    def from_bytes(cls, data: bytes) -> "BlobIndex":
        """Parse index bytes.

        Raises:
            MalformedIndexError: invalid UTF-8 or JSON, wrong document shape,
                invalid offsets, or overlapping ranges.
        """
        try:
            document = json.loads(bytes(data).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise MalformedIndexError(f"Index is not valid JSON: {exc}") from exc

        if not isinstance(document, dict):
            raise MalformedIndexError("Index must be a JSON object")

        blob_id = document.get("blobId")
        if not isinstance(blob_id, str):
            raise MalformedIndexError("Index is missing a string 'blobId'")

        raw_entries = document.get("entries")
        if not isinstance(raw_entries, dict):
            raise MalformedIndexError("Index is missing an 'entries' object")

        entries = {name: _parse_range(name, raw) for name, raw in raw_entries.items()}

        ordered = sorted(entries.items(), key=lambda item: (item[1].start, item[1].end))
        for (prev_name, prev), (name, current) in zip(ordered, ordered[1:]):
            if current.start < prev.end:
                raise MalformedIndexError(
                    f"Entries '{prev_name}' and '{name}' overlap"
                )

        return cls(blob_id=blob_id, entries=entries)

    def as_bytes(self) -> bytes:
        return _serialize_index(self.blob_id, self._entries)

    def lookup(self, name: str) -> Optional[ByteRange]:
        return self._entries.get(name)

    def validate_blob_length(self, blob_length: int) -> None:
        """Raise MalformedIndexError if any range ends past ``blob_length``."""
        for name, byte_range in self._entries.items():
            if byte_range.end > blob_length:
                raise MalformedIndexError(
                    f"Entry '{name}' ends at {byte_range.end}, "
                    f"past blob length {blob_length}"
                )

    def read(self, blob: bytes, name: str) -> Optional[bytes]:
        """Return the decompressed bytes of ``name``, or None if absent."""
        byte_range = self.lookup(name)
        if byte_range is None:
            return None
        return read_entry(blob, byte_range)


def read_entry(blob: bytes, byte_range: ByteRange) -> bytes:
    """Slice one entry out of ``blob`` and decompress it.

    Raises:
        CorruptEntryError: the range lies outside the blob or the slice is
            not a valid gzip stream.
    """
    if byte_range.end > len(blob):
        raise CorruptEntryError(
            f"Range [{byte_range.start}, {byte_range.end}) exceeds blob length {len(blob)}"
        )
    segment = bytes(blob[byte_range.start:byte_range.end])
    try:
        return gzip.decompress(segment)
    except (OSError, EOFError, zlib.error) as exc:
        raise CorruptEntryError(
            f"Range [{byte_range.start}, {byte_range.end}) is not a valid gzip member: {exc}"
        ) from exc
