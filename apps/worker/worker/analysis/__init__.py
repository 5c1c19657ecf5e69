"""Analysis runner: resolve, analyze and dartdoc as isolated subprocesses.

Public API:
    run_analysis(closure, workspace, settings, runner, registry_base_url) -> AnalysisResult
    SubprocessRunner — production ProcessRunner
"""

from worker.analysis.process import ProcessResult, ProcessRunner, SubprocessRunner
from worker.analysis.runner import run_analysis
from worker.analysis.types import AnalysisResult, StepOutcome, StepResult

__all__ = [
    "AnalysisResult",
    "ProcessResult",
    "ProcessRunner",
    "StepOutcome",
    "StepResult",
    "SubprocessRunner",
    "run_analysis",
]
