"""Types for the analysis runner.

StepResult captures one subprocess step; AnalysisResult aggregates the three
steps of one version together with the rendered log and the doc output.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from pathlib import Path
from typing import Optional

# Increment when the summary.json shape changes
SUMMARY_SCHEMA_VERSION = "1"


class StepOutcome(StrEnum):
    OK = "ok"
    FAILED = "failed"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"


@dataclass
class StepResult:
    """Result of a single analysis step (resolve, analyze, dartdoc).

    ``exit_code`` is None when the step never produced one (timed out or
    skipped).
    """

    name: str
    command: str
    outcome: StepOutcome
    exit_code: Optional[int] = None
    duration_seconds: float = 0.0
    stdout: str = ""
    stderr: str = ""

    @property
    def is_success(self) -> bool:
        return self.outcome == StepOutcome.OK

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "command": self.command,
            "outcome": self.outcome.value,
            "exit_code": self.exit_code,
            "duration_seconds": round(self.duration_seconds, 3),
            "is_success": self.is_success,
        }


@dataclass
class AnalysisResult:
    """Complete analysis of one package version.

    A failed analysis is still a valid result: it is packed and uploaded
    like a successful one, with the failure described in the summary.
    """

    package: str
    version: str
    steps: list[StepResult] = field(default_factory=list)
    log: str = ""
    doc_dir: Optional[Path] = None
    dependencies: dict[str, str] = field(default_factory=dict)
    sdk_constraint: Optional[str] = None
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @property
    def is_success(self) -> bool:
        return bool(self.steps) and all(s.is_success for s in self.steps)

    @property
    def status(self) -> str:
        return "passed" if self.is_success else "failed"

    def step(self, name: str) -> Optional[StepResult]:
        return next((s for s in self.steps if s.name == name), None)

    def summary(self) -> dict:
        """Structured content of summary.json."""
        return {
            "schema_version": SUMMARY_SCHEMA_VERSION,
            "package": self.package,
            "version": self.version,
            "status": self.status,
            "created_at": self.created_at,
            "sdk_constraint": self.sdk_constraint,
            "dependencies": dict(self.dependencies),
            "has_documentation": self.doc_dir is not None,
            "total_duration_seconds": round(
                sum(s.duration_seconds for s in self.steps), 3
            ),
            "steps": [s.to_dict() for s in self.steps],
        }
