"""Analysis pipeline for one extracted package version.

Runs resolve -> analyze -> dartdoc in sequence:
  resolve  — dependency resolution against the pre-fetched pub-cache.
             Both later steps need it; on failure they are skipped.
  analyze  — static analysis. A failure is recorded; dartdoc still runs.
  dartdoc  — documentation generation into the workspace doc dir.

Non-zero exits and timeouts are recorded outcomes: the result is packed and
uploaded either way. Only SubprocessLaunchError (tool missing) escapes, as it
means the worker host itself is broken.
"""

import json
import logging
import shlex
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from worker.analysis.process import ProcessRunner
from worker.analysis.types import AnalysisResult, StepOutcome, StepResult
from worker.core.config import WorkerSettings
from worker.core.errors import SubprocessExitError, SubprocessTimeoutError
from worker.fetcher.types import PackageClosure
from worker.sandbox.workspace import Workspace

logger = logging.getLogger(__name__)

RESOLVE_STEP = "resolve"
ANALYZE_STEP = "analyze"
DARTDOC_STEP = "dartdoc"

CATEGORIES_FILENAME = "categories.json"

_OUTPUT_DIR_PLACEHOLDER = "{output_dir}"


@dataclass
class StepSpec:
    """Concrete command plan for one step."""

    name: str
    argv: list[str]
    timeout: float
    env: Optional[dict[str, str]] = None


def build_step_specs(
    settings: WorkerSettings,
    workspace: Workspace,
    registry_base_url: str,
) -> list[StepSpec]:
    """Return the three step plans for a workspace, in execution order."""
    pub_env = {
        "PUB_CACHE": str(workspace.pub_cache),
        "PUB_HOSTED_URL": registry_base_url.rstrip("/"),
    }
    dartdoc_argv = [
        part.replace(_OUTPUT_DIR_PLACEHOLDER, str(workspace.doc_dir))
        for part in settings.dartdoc_command
    ]
    return [
        StepSpec(RESOLVE_STEP, list(settings.resolve_command), settings.resolve_timeout_seconds, pub_env),
        StepSpec(ANALYZE_STEP, list(settings.analyze_command), settings.analyze_timeout_seconds, pub_env),
        StepSpec(DARTDOC_STEP, dartdoc_argv, settings.dartdoc_timeout_seconds, pub_env),
    ]


async def run_step(
    runner: ProcessRunner,
    name: str,
    argv: list[str],
    cwd: Path,
    timeout: float,
    env: Optional[Mapping[str, str]] = None,
) -> StepResult:
    """Execute a single analysis step.

    Captures stdout, stderr, exit code, and duration. Exit and timeout
    failures come back as a StepResult; SubprocessLaunchError propagates.
    """
    command = shlex.join(argv)
    logger.info("Running step '%s': %s (cwd=%s)", name, command, cwd)
    start = time.monotonic()

    try:
        result = await runner.run(argv[0], argv[1:], cwd, timeout, env)
        result.check_returncode()
        step_result = StepResult(
            name=name,
            command=command,
            outcome=StepOutcome.OK,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
        )
    except SubprocessExitError as exc:
        step_result = StepResult(
            name=name,
            command=command,
            outcome=StepOutcome.FAILED,
            exit_code=exc.exit_code,
            stdout=exc.stdout,
            stderr=exc.stderr,
        )
    except SubprocessTimeoutError as exc:
        step_result = StepResult(
            name=name,
            command=command,
            outcome=StepOutcome.TIMEOUT,
            stdout=exc.stdout,
            stderr=exc.stderr,
        )
    step_result.duration_seconds = time.monotonic() - start

    logger.info(
        "Step '%s' %s (exit=%s, %.1fs)",
        name, step_result.outcome.value, step_result.exit_code, step_result.duration_seconds,
    )
    if not step_result.is_success and step_result.stderr:
        logger.warning(
            "Step '%s' stderr (tail):\n%s",
            name,
            _truncate_output(step_result.stderr),
        )
    return step_result


def _truncate_output(text: str, max_lines: int = 60, max_chars: int = 4000) -> str:
    """Return a concise tail of command output for logs."""
    if not text:
        return ""
    lines = text.splitlines()
    joined = "\n".join(lines[-max_lines:])
    if len(joined) > max_chars:
        joined = joined[-max_chars:]
    return joined


def _skipped(name: str, argv: list[str]) -> StepResult:
    return StepResult(name=name, command=shlex.join(argv), outcome=StepOutcome.SKIPPED)


def format_step_log(step: StepResult, timeout: Optional[float] = None) -> str:
    """Render one step's section of log.txt."""
    if step.outcome == StepOutcome.SKIPPED:
        return f"== {step.name} skipped: {RESOLVE_STEP} did not succeed\n"

    lines = [f"== {step.name}: {step.command}"]
    if step.stdout:
        lines.append(step.stdout.rstrip("\n"))
    if step.stderr:
        lines.append("-- stderr --")
        lines.append(step.stderr.rstrip("\n"))
    if step.outcome == StepOutcome.TIMEOUT:
        limit = f"{timeout:g}s" if timeout is not None else "its time limit"
        lines.append(f"== {step.name} timed out after {limit} and was killed")
    else:
        lines.append(
            f"== {step.name} exited {step.exit_code} in {step.duration_seconds:.1f}s"
        )
    return "\n".join(lines) + "\n"


def _log_header(closure: PackageClosure) -> str:
    deps = ", ".join(f"{name} {version}" for name, version in closure.dependencies.items())
    return (
        f"Analysis of {closure.package} {closure.version}\n"
        f"dependencies: {deps or '(none)'}\n"
        f"sdk: {closure.sdk_constraint or '(unspecified)'}\n"
    )


def _finish_doc_tree(doc_dir: Path) -> Path:
    """Ensure the generated tree has categories.json (empty list if absent)."""
    doc_dir.mkdir(parents=True, exist_ok=True)
    categories = doc_dir / CATEGORIES_FILENAME
    if not categories.exists():
        categories.write_text(json.dumps([]), encoding="utf-8")
    return doc_dir


async def run_analysis(
    closure: PackageClosure,
    workspace: Workspace,
    settings: WorkerSettings,
    runner: ProcessRunner,
    registry_base_url: str,
) -> AnalysisResult:
    """Run resolve, analyze and dartdoc for an extracted package version."""
    specs = build_step_specs(settings, workspace, registry_base_url)
    sections = [_log_header(closure)]
    steps: list[StepResult] = []
    resolved = False

    for spec in specs:
        if spec.name != RESOLVE_STEP and not resolved:
            step = _skipped(spec.name, spec.argv)
        else:
            step = await run_step(
                runner, spec.name, spec.argv, closure.package_dir, spec.timeout, spec.env,
            )
        if spec.name == RESOLVE_STEP:
            resolved = step.is_success
        steps.append(step)
        sections.append(format_step_log(step, spec.timeout))

    dartdoc = next(s for s in steps if s.name == DARTDOC_STEP)
    doc_dir = _finish_doc_tree(workspace.doc_dir) if dartdoc.is_success else None

    result = AnalysisResult(
        package=closure.package,
        version=closure.version,
        steps=steps,
        doc_dir=doc_dir,
        dependencies=dict(closure.dependencies),
        sdk_constraint=closure.sdk_constraint,
    )
    sections.append(f"== analysis {result.status}\n")
    result.log = "\n".join(sections)

    if not result.is_success:
        logger.warning(
            "Analysis of %s %s failed: %s",
            closure.package, closure.version,
            ", ".join(f"{s.name}={s.outcome.value}" for s in steps if not s.is_success),
        )
    return result
