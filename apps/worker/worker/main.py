"""pub-worker command line entry point.

Usage:
    pub-worker payload.json
    pub-worker - < payload.json

Prints the JSON result report to stdout. Logs go to stderr.

Exit codes:
    0  every version was analyzed, uploaded and reported
    1  at least one version failed
    2  the payload could not be read or is invalid
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from worker.core.config import get_settings
from worker.core.errors import PayloadError
from worker.core.logging import configure_logging
from worker.pipeline.orchestrator import analyze
from worker.pipeline.types import Payload

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID_PAYLOAD = 2


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pub-worker",
        description="Analyze package versions, upload the results and report completion.",
    )
    parser.add_argument("payload", help="Path to the JSON task payload, or '-' for stdin.")
    parser.add_argument("--debug", action="store_true", help="Human-readable debug logging.")
    return parser


def _read_payload(source: str) -> Payload:
    try:
        raw = sys.stdin.read() if source == "-" else Path(source).read_text(encoding="utf-8")
    except OSError as exc:
        raise PayloadError(f"Cannot read payload from {source}: {exc}") from exc
    return Payload.parse(raw)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(debug=args.debug or settings.debug)

    try:
        payload = _read_payload(args.payload)
    except PayloadError as exc:
        logger.error("%s", exc)
        return EXIT_INVALID_PAYLOAD

    result = asyncio.run(analyze(payload, settings=settings))
    print(json.dumps(result.to_dict(), indent=2))
    return EXIT_OK if result.all_succeeded else EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
