"""Pipeline module — payload, per-version state machine and orchestrator.

Public API:
    analyze(payload, settings=None, runner=None, client=None) -> AnalyzeResult
"""

from worker.pipeline.orchestrator import analyze
from worker.pipeline.state import VersionState, VersionTask
from worker.pipeline.types import AnalyzeResult, Payload, VersionOutcome, VersionTokenPair

__all__ = [
    "AnalyzeResult",
    "Payload",
    "VersionOutcome",
    "VersionState",
    "VersionTask",
    "VersionTokenPair",
    "analyze",
]
