"""Unit tests for the analysis runner (resolve, analyze, dartdoc).

Uses the fake toolchain from conftest; no real subprocesses.
"""

import json
from unittest.mock import AsyncMock

import pytest

from worker.analysis.process import ProcessResult
from worker.analysis.runner import (
    ANALYZE_STEP,
    DARTDOC_STEP,
    RESOLVE_STEP,
    build_step_specs,
    format_step_log,
    run_analysis,
    run_step,
)
from worker.analysis.types import StepOutcome, StepResult
from worker.core.errors import SubprocessLaunchError, SubprocessTimeoutError
from worker.fetcher.types import PackageClosure
from worker.sandbox.workspace import version_workspace


@pytest.fixture
def workspace(tmp_path):
    with version_workspace("retry", "3.0.0", parent=tmp_path) as ws:
        yield ws


@pytest.fixture
def closure(workspace):
    pubspec = {"name": "retry", "version": "3.0.0", "environment": {"sdk": ">=2.12.0 <4.0.0"}}
    (workspace.package_dir / "pubspec.yaml").write_text(json.dumps(pubspec))
    return PackageClosure(
        package="retry",
        version="3.0.0",
        package_dir=workspace.package_dir,
        pub_cache_dir=workspace.pub_cache,
        pubspec=pubspec,
    )


class TestBuildStepSpecs:
    def test_three_steps_in_order(self, worker_settings, workspace):
        specs = build_step_specs(worker_settings, workspace, "http://pub.test/")

        assert [s.name for s in specs] == [RESOLVE_STEP, ANALYZE_STEP, DARTDOC_STEP]
        assert specs[0].env == {"PUB_CACHE": str(workspace.pub_cache), "PUB_HOSTED_URL": "http://pub.test"}

    def test_output_dir_placeholder_substituted(self, worker_settings, workspace):
        dartdoc = build_step_specs(worker_settings, workspace, "http://pub.test")[2]
        assert str(workspace.doc_dir) in dartdoc.argv
        assert "{output_dir}" not in " ".join(dartdoc.argv)

    def test_timeouts_from_settings(self, worker_settings, workspace):
        specs = build_step_specs(worker_settings, workspace, "http://pub.test")
        assert [s.timeout for s in specs] == [
            worker_settings.resolve_timeout_seconds,
            worker_settings.analyze_timeout_seconds,
            worker_settings.dartdoc_timeout_seconds,
        ]


class TestRunStep:
    @pytest.mark.asyncio
    async def test_successful_step(self, tmp_path):
        runner = AsyncMock()
        runner.run.return_value = ProcessResult("dart analyze", 0, "No issues found!\n", "")

        result = await run_step(runner, ANALYZE_STEP, ["dart", "analyze"], tmp_path, 60)

        assert result.is_success
        assert result.exit_code == 0
        assert result.command == "dart analyze"
        assert result.duration_seconds >= 0
        runner.run.assert_awaited_once_with("dart", ["analyze"], tmp_path, 60, None)

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_recorded(self, tmp_path):
        runner = AsyncMock()
        runner.run.return_value = ProcessResult("dart analyze", 2, "", "error • lib/a.dart")

        result = await run_step(runner, ANALYZE_STEP, ["dart", "analyze"], tmp_path, 60)

        assert result.outcome == StepOutcome.FAILED
        assert result.exit_code == 2
        assert "lib/a.dart" in result.stderr

    @pytest.mark.asyncio
    async def test_timeout_is_recorded(self, tmp_path):
        runner = AsyncMock()
        runner.run.side_effect = SubprocessTimeoutError("dart doc", 5, "partial", "")

        result = await run_step(runner, DARTDOC_STEP, ["dart", "doc"], tmp_path, 5)

        assert result.outcome == StepOutcome.TIMEOUT
        assert result.exit_code is None
        assert result.stdout == "partial"

    @pytest.mark.asyncio
    async def test_launch_error_propagates(self, tmp_path):
        runner = AsyncMock()
        runner.run.side_effect = SubprocessLaunchError("dart")

        with pytest.raises(SubprocessLaunchError):
            await run_step(runner, RESOLVE_STEP, ["dart", "pub", "get"], tmp_path, 5)


class TestFormatStepLog:
    def test_exit_line(self):
        step = StepResult(
            name="analyze", command="dart analyze", outcome=StepOutcome.OK,
            exit_code=0, duration_seconds=1.25, stdout="No issues found!\n",
        )
        text = format_step_log(step)

        assert text.startswith("== analyze: dart analyze\n")
        assert "No issues found!" in text
        assert "== analyze exited 0 in 1.2s" in text or "== analyze exited 0 in 1.3s" in text

    def test_stderr_section(self):
        step = StepResult(
            name="resolve", command="dart pub get", outcome=StepOutcome.FAILED,
            exit_code=1, stderr="Because retry depends on meta\n",
        )
        assert "-- stderr --\nBecause retry depends on meta" in format_step_log(step)

    def test_timeout_line(self):
        step = StepResult(name="dartdoc", command="dart doc", outcome=StepOutcome.TIMEOUT)
        assert "== dartdoc timed out after 1200s and was killed" in format_step_log(step, 1200.0)

    def test_skipped_line(self):
        step = StepResult(name="analyze", command="dart analyze", outcome=StepOutcome.SKIPPED)
        assert format_step_log(step) == "== analyze skipped: resolve did not succeed\n"


class TestRunAnalysis:
    @pytest.mark.asyncio
    async def test_all_steps_pass(self, closure, workspace, worker_settings, fake_runner):
        result = await run_analysis(closure, workspace, worker_settings, fake_runner, "http://pub.test")

        assert result.is_success
        assert [s.name for s in result.steps] == [RESOLVE_STEP, ANALYZE_STEP, DARTDOC_STEP]
        assert result.doc_dir == workspace.doc_dir
        assert json.loads((workspace.doc_dir / "categories.json").read_text()) == []
        assert "resolve exited 0" in result.log
        assert result.log.rstrip().endswith("== analysis passed")
        assert result.sdk_constraint == ">=2.12.0 <4.0.0"

    @pytest.mark.asyncio
    async def test_steps_run_in_package_dir(self, closure, workspace, worker_settings, fake_runner):
        await run_analysis(closure, workspace, worker_settings, fake_runner, "http://pub.test")

        assert {c["cwd"] for c in fake_runner.calls} == {workspace.package_dir}
        assert [c["step"] for c in fake_runner.calls] == ["pub", "analyze", "doc"]

    @pytest.mark.asyncio
    async def test_existing_categories_kept(self, closure, workspace, worker_settings, fake_runner):
        original = fake_runner._simulate

        def with_categories(step, args, cwd, env):
            out = original(step, args, cwd, env)
            if step == "doc":
                (workspace.doc_dir / "categories.json").write_text('[{"name": "Core"}]')
            return out

        fake_runner._simulate = with_categories
        await run_analysis(closure, workspace, worker_settings, fake_runner, "http://pub.test")

        assert json.loads((workspace.doc_dir / "categories.json").read_text()) == [{"name": "Core"}]

    @pytest.mark.asyncio
    async def test_resolve_failure_skips_later_steps(self, closure, workspace, worker_settings, fake_runner):
        fake_runner.exit_codes["pub"] = 65

        result = await run_analysis(closure, workspace, worker_settings, fake_runner, "http://pub.test")

        assert not result.is_success
        assert [s.outcome for s in result.steps] == [
            StepOutcome.FAILED, StepOutcome.SKIPPED, StepOutcome.SKIPPED,
        ]
        assert result.doc_dir is None
        assert [c["step"] for c in fake_runner.calls] == ["pub"]
        assert "analyze skipped" in result.log

    @pytest.mark.asyncio
    async def test_analyze_failure_still_runs_dartdoc(self, closure, workspace, worker_settings, fake_runner):
        fake_runner.exit_codes["analyze"] = 3

        result = await run_analysis(closure, workspace, worker_settings, fake_runner, "http://pub.test")

        assert result.step(ANALYZE_STEP).outcome == StepOutcome.FAILED
        assert result.step(DARTDOC_STEP).is_success
        assert result.doc_dir is not None
        assert result.status == "failed"
        assert result.log.rstrip().endswith("== analysis failed")

    @pytest.mark.asyncio
    async def test_dartdoc_timeout_leaves_no_docs(self, closure, workspace, worker_settings, fake_runner):
        fake_runner.timeouts.add("doc")

        result = await run_analysis(closure, workspace, worker_settings, fake_runner, "http://pub.test")

        assert result.step(DARTDOC_STEP).outcome == StepOutcome.TIMEOUT
        assert result.doc_dir is None
        assert "dartdoc timed out after" in result.log

    @pytest.mark.asyncio
    async def test_summary_shape(self, closure, workspace, worker_settings, fake_runner):
        result = await run_analysis(closure, workspace, worker_settings, fake_runner, "http://pub.test")
        summary = result.summary()

        assert summary["package"] == "retry"
        assert summary["status"] == "passed"
        assert summary["has_documentation"] is True
        assert [s["outcome"] for s in summary["steps"]] == ["ok", "ok", "ok"]
        json.dumps(summary)
