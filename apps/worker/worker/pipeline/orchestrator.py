"""Analysis orchestrator — drives every requested version to a terminal state.

Per version:
  1. fetch the package archive and its dependency closure from the registry
  2. run resolve, analyze and dartdoc in an isolated workspace
  3. assemble log.txt, summary.json and the doc tree into one container
  4. request upload targets (the control plane assigns the blob id)
  5. upload the blob, then the index
  6. report the version finished, at most once: only a connect failure
     (request never sent) is retried

Each step is a handler keyed by the state it starts from; a handler's return
value is the next state. Any WorkerError moves the version to ``failed``
with its reason chain. Unexpected exceptions are logged with a traceback and
also recorded as ``failed`` so one broken version never aborts the others.

Concurrency:
  - versions run concurrently as independent asyncio tasks
  - only the analysis step is bounded by ``max_concurrent_analyses``;
    network steps are not
  - each version owns its workspace, so no mutable state is shared
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx

from worker.analysis.process import ProcessRunner, SubprocessRunner
from worker.analysis.runner import run_analysis
from worker.analysis.types import AnalysisResult
from worker.blob.indexed_blob import IndexedBlobBuilder
from worker.core.config import WorkerSettings, get_settings
from worker.core.errors import ControlPlaneUnreachableError, WorkerError
from worker.core.logging import bind_task, unbind_task
from worker.execution.retry import RetryPolicy, retry_transient
from worker.fetcher.registry import fetch_package_closure
from worker.fetcher.types import PackageClosure
from worker.packaging.assembler import assemble_result
from worker.packaging.types import UploadTaskResultResponse
from worker.packaging.uploader import TaskApiClient
from worker.pipeline.state import VersionState, VersionTask
from worker.pipeline.types import AnalyzeResult, Payload, VersionOutcome, VersionTokenPair
from worker.sandbox.workspace import Workspace, version_workspace

logger = logging.getLogger(__name__)

BLOB_FILENAME = "{blob_id}.blob"
INDEX_FILENAME = "index.json"


@dataclass
class VersionContext:
    """Everything one version's handlers read and produce along the way."""

    task: VersionTask
    token: str
    workspace: Workspace
    closure: Optional[PackageClosure] = None
    analysis: Optional[AnalysisResult] = None
    builder: Optional[IndexedBlobBuilder] = None
    targets: Optional[UploadTaskResultResponse] = None
    blob: bytes = b""
    index: bytes = b""


StateHandler = Callable[[VersionContext], Awaitable[VersionState]]


async def drive(ctx: VersionContext, handlers: dict[VersionState, StateHandler]) -> VersionTask:
    """Run handlers until the task reaches a terminal state."""
    task = ctx.task
    while not task.is_terminal:
        handler = handlers[task.state]
        try:
            target = await handler(ctx)
            task.advance(target)
        except WorkerError as exc:
            logger.error(
                "%s %s failed in state %s: %s", task.package, task.version, task.state, exc,
            )
            task.fail(exc)
            break
        except Exception as exc:
            logger.exception(
                "Unexpected error for %s %s in state %s", task.package, task.version, task.state,
            )
            task.fail(exc)
            break
        logger.info("%s %s -> %s", task.package, task.version, task.state)
    return task


class VersionPipeline:
    """Per-state handlers shared by every version of one payload."""

    def __init__(
        self,
        payload: Payload,
        settings: WorkerSettings,
        runner: ProcessRunner,
        client: httpx.AsyncClient,
        analysis_gate: asyncio.Semaphore,
    ):
        self.payload = payload
        self.settings = settings
        self.runner = runner
        self.client = client
        self.analysis_gate = analysis_gate
        self.policy = RetryPolicy.from_settings(settings)
        self.task_api = TaskApiClient(
            client, settings.control_plane_url or payload.registry_base_url,
        )
        self.handlers: dict[VersionState, StateHandler] = {
            VersionState.PENDING: self.fetch,
            VersionState.FETCHED: self.analyze,
            VersionState.ANALYZED: self.assemble,
            VersionState.ASSEMBLED: self.request_upload,
            VersionState.UPLOAD_REQUESTED: self.upload_blob,
            VersionState.BLOB_UPLOADED: self.upload_index,
            VersionState.INDEX_UPLOADED: self.notify,
        }

    async def fetch(self, ctx: VersionContext) -> VersionState:
        ctx.closure = await fetch_package_closure(
            self.client,
            self.payload.registry_base_url,
            ctx.task.package,
            ctx.task.version,
            ctx.workspace,
            self.policy,
        )
        return VersionState.FETCHED

    async def analyze(self, ctx: VersionContext) -> VersionState:
        async with self.analysis_gate:
            ctx.analysis = await run_analysis(
                ctx.closure,
                ctx.workspace,
                self.settings,
                self.runner,
                self.payload.registry_base_url,
            )
        return VersionState.ANALYZED

    async def assemble(self, ctx: VersionContext) -> VersionState:
        # Reads the doc tree and compresses every entry.
        ctx.builder = await asyncio.to_thread(assemble_result, ctx.analysis)
        return VersionState.ASSEMBLED

    async def request_upload(self, ctx: VersionContext) -> VersionState:
        task = ctx.task
        ctx.targets = await retry_transient(
            lambda: self.task_api.request_upload_targets(task.package, task.version, ctx.token),
            policy=self.policy,
            description=f"upload request for {task.package} {task.version}",
        )
        task.blob_id = ctx.targets.blob_id
        ctx.blob, ctx.index = ctx.builder.finalize(ctx.targets.blob_id)
        return VersionState.UPLOAD_REQUESTED

    async def upload_blob(self, ctx: VersionContext) -> VersionState:
        filename = BLOB_FILENAME.format(blob_id=ctx.targets.blob_id)
        await retry_transient(
            lambda: self.task_api.upload_artifact(ctx.targets.blob, ctx.blob, filename),
            policy=self.policy,
            description=f"blob upload for {ctx.task.package} {ctx.task.version}",
        )
        return VersionState.BLOB_UPLOADED

    async def upload_index(self, ctx: VersionContext) -> VersionState:
        await retry_transient(
            lambda: self.task_api.upload_artifact(
                ctx.targets.index, ctx.index, INDEX_FILENAME, "application/json",
            ),
            policy=self.policy,
            description=f"index upload for {ctx.task.package} {ctx.task.version}",
        )
        return VersionState.INDEX_UPLOADED

    async def notify(self, ctx: VersionContext) -> VersionState:
        task = ctx.task
        await retry_transient(
            lambda: self.task_api.notify_finished(task.package, task.version, ctx.token),
            policy=self.policy,
            description=f"completion report for {task.package} {task.version}",
            retry_on=ControlPlaneUnreachableError,
        )
        return VersionState.NOTIFIED

    async def run_version(self, pair: VersionTokenPair) -> VersionTask:
        """Drive one version to a terminal state. Never raises WorkerError."""
        task = VersionTask(package=self.payload.package, version=pair.version)
        label = bind_task(task.package, task.version)
        try:
            with version_workspace(
                task.package,
                task.version,
                parent=self.settings.workspace_root,
                keep=self.settings.keep_workspace,
            ) as workspace:
                ctx = VersionContext(
                    task=task, token=pair.token.get_secret_value(), workspace=workspace,
                )
                await drive(ctx, self.handlers)
        except OSError as exc:
            logger.error("Workspace setup failed for %s %s: %s", task.package, task.version, exc)
            if not task.is_terminal:
                task.fail(exc)
        finally:
            unbind_task(label)
        return task


def _outcome(task: VersionTask) -> VersionOutcome:
    return VersionOutcome(
        version=task.version,
        state=task.state,
        blob_id=task.blob_id,
        reasons=list(task.reasons),
        history=list(task.history),
    )


async def analyze(
    payload: Payload,
    *,
    settings: Optional[WorkerSettings] = None,
    runner: Optional[ProcessRunner] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> AnalyzeResult:
    """Analyze, package, upload and report every version in ``payload``.

    Args:
        payload:  Validated task payload.
        settings: Worker settings; defaults to the environment-backed settings.
        runner:   Subprocess runner; defaults to SubprocessRunner.
        client:   HTTP client for registry and control plane. If omitted one is
                  created for this call and closed before returning.

    Returns:
        AnalyzeResult with one outcome per version, in payload order.
    """
    settings = settings or get_settings()
    runner = runner or SubprocessRunner()
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(
            timeout=settings.http_timeout_seconds,
            headers={"User-Agent": settings.user_agent},
            follow_redirects=True,
        )

    logger.info(
        "Analyzing %s: %d version(s), max %d concurrent analyses",
        payload.package, len(payload.versions), settings.max_concurrent_analyses,
    )

    try:
        pipeline = VersionPipeline(
            payload,
            settings,
            runner,
            client,
            asyncio.Semaphore(max(1, settings.max_concurrent_analyses)),
        )
        tasks = await asyncio.gather(*(pipeline.run_version(pair) for pair in payload.versions))
    finally:
        if owns_client:
            await client.aclose()

    result = AnalyzeResult(package=payload.package, outcomes=[_outcome(t) for t in tasks])
    logger.info(
        "Finished %s: %d succeeded, %d failed",
        payload.package, len(result.succeeded), len(result.failed),
    )
    return result
