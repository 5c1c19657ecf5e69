"""Result assembler — packs analysis outputs into one indexed blob container.

Entries:
- log.txt: combined, step-tagged output of resolve, analyze and dartdoc
- summary.json: structured result with per-step outcomes and timings
- doc/<path>: every file dartdoc generated, when it succeeded

The returned builder is not finalized: the blob id is assigned by the
control plane afterwards and must be embedded in the index.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from worker.analysis.types import AnalysisResult
from worker.blob.indexed_blob import IndexedBlobBuilder

logger = logging.getLogger(__name__)

LOG_ENTRY = "log.txt"
SUMMARY_ENTRY = "summary.json"
DOC_PREFIX = "doc/"


def assemble(
    log: str,
    summary: dict,
    doc_dir: Optional[Path] = None,
) -> IndexedBlobBuilder:
    """Build a container holding the log, summary and doc tree."""
    builder = IndexedBlobBuilder()

    builder.add_entry(LOG_ENTRY, log.encode("utf-8"))
    builder.add_entry(SUMMARY_ENTRY, json.dumps(summary, indent=2).encode("utf-8"))

    doc_count = 0
    if doc_dir is not None:
        for path in sorted(p for p in doc_dir.rglob("*") if p.is_file()):
            relative = path.relative_to(doc_dir).as_posix()
            builder.add_entry(f"{DOC_PREFIX}{relative}", path.read_bytes())
            doc_count += 1

    logger.info(
        "Assembled container: %d entries (%d doc files), %d bytes",
        len(builder), doc_count, builder.size,
    )
    return builder


def assemble_result(result: AnalysisResult) -> IndexedBlobBuilder:
    """Assemble the container for an AnalysisResult."""
    return assemble(result.log, result.summary(), result.doc_dir)
