"""Shared fixtures for the worker test suite.

Provides an in-process fake of the registry and control plane (a FastAPI app
served through httpx.ASGITransport) and a fake ProcessRunner imitating
``dart pub get``, ``dart analyze`` and ``dart doc``. No network access and
no real subprocesses.
"""

import asyncio
import io
import json
import tarfile
from collections import Counter, deque
from pathlib import Path
from typing import Mapping, Optional, Sequence

import httpx
import pytest
import yaml
from fastapi import FastAPI, Header, HTTPException, Request, Response

from worker.analysis.process import ProcessResult
from worker.core.config import WorkerSettings
from worker.core.errors import SubprocessLaunchError, SubprocessTimeoutError

BASE_URL = "http://pub.test"
DEFAULT_BLOB_ID = "42"


# ---------------------------------------------------------------------------
# Archives
# ---------------------------------------------------------------------------


def make_archive(files: Mapping[str, "str | bytes"]) -> bytes:
    """Build a gzip-compressed tar holding ``files``."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name, content in files.items():
            data = content.encode("utf-8") if isinstance(content, str) else content
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def make_pubspec(name: str, version: str, dependencies: Optional[dict] = None) -> dict:
    return {
        "name": name,
        "version": version,
        "environment": {"sdk": ">=2.12.0 <4.0.0"},
        "dependencies": dependencies or {},
    }


# ---------------------------------------------------------------------------
# Fake registry + control plane
# ---------------------------------------------------------------------------


class FakePubServer:
    """Registry and control plane in one FastAPI app.

    Records every control-plane interaction in ``events`` so tests can assert
    ordering. Queued status codes in ``upload_request_failures`` /
    ``archive_failures`` / ``upload_failures`` are returned before the
    normal response.
    """

    def __init__(self, base_url: str = BASE_URL):
        self.base_url = base_url
        self.pubspecs: dict[str, dict[str, dict]] = {}
        self.archives: dict[tuple[str, str], bytes] = {}
        self.blob_ids: dict[tuple[str, str], str] = {}

        self.uploads: dict[str, bytes] = {}
        self.upload_fields: dict[str, dict[str, str]] = {}
        self.upload_auth: list[str] = []
        self.upload_requests: list[tuple[str, str, str]] = []
        self.finished: Counter = Counter()
        self.finished_auth: list[str] = []
        self.events: list[str] = []
        self.task_hosts: list[str] = []

        self.upload_request_failures: deque[int] = deque()
        self.archive_failures: dict[tuple[str, str], deque[int]] = {}
        self.upload_failures: deque[int] = deque()
        self.metadata_requests: Counter = Counter()

        self.app = self._build_app()

    def add_version(
        self,
        name: str,
        version: str,
        dependencies: Optional[dict] = None,
        extra_files: Optional[dict[str, str]] = None,
        archive: Optional[bytes] = None,
    ) -> None:
        """Publish a version; the pubspec is written as JSON inside pubspec.yaml."""
        pubspec = make_pubspec(name, version, dependencies)
        self.pubspecs.setdefault(name, {})[version] = pubspec
        if archive is None:
            files = {
                "pubspec.yaml": json.dumps(pubspec),
                f"lib/{name}.dart": f"library {name};\n",
                **(extra_files or {}),
            }
            archive = make_archive(files)
        self.archives[(name, version)] = archive

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=httpx.ASGITransport(app=self.app),
            base_url=self.base_url,
        )

    def blob_for(self, package: str, version: str) -> bytes:
        blob_id = self.blob_ids.get((package, version), DEFAULT_BLOB_ID)
        return self.uploads[f"{package}/{version}/{blob_id}.blob"]

    def index_for(self, package: str, version: str) -> bytes:
        return self.uploads[f"{package}/{version}/index.json"]

    def _build_app(self) -> FastAPI:
        app = FastAPI()
        server = self

        @app.get("/api/packages/{package}")
        async def package_metadata(package: str):
            server.metadata_requests[package] += 1
            versions = server.pubspecs.get(package)
            if not versions:
                raise HTTPException(status_code=404, detail="package not found")
            return {
                "name": package,
                "latest": list(versions)[-1],
                "versions": [
                    {
                        "version": version,
                        "archive_url": f"{server.base_url}/packages/{package}/versions/{version}.tar.gz",
                        "pubspec": pubspec,
                    }
                    for version, pubspec in versions.items()
                ],
            }

        @app.get("/packages/{package}/versions/{filename}")
        async def download_archive(package: str, filename: str):
            version = filename.removesuffix(".tar.gz")
            queued = server.archive_failures.get((package, version))
            if queued:
                return Response(status_code=queued.popleft())
            archive = server.archives.get((package, version))
            if archive is None:
                raise HTTPException(status_code=404, detail="archive not found")
            return Response(content=archive, media_type="application/octet-stream")

        @app.post("/api/tasks/{package}/{version}/upload")
        async def request_upload(
            package: str, version: str, request: Request, authorization: str = Header(default=""),
        ):
            server.task_hosts.append(request.url.hostname)
            server.events.append(f"upload-request {package}/{version}")
            server.upload_requests.append((package, version, authorization))
            if server.upload_request_failures:
                return Response(status_code=server.upload_request_failures.popleft())
            blob_id = server.blob_ids.get((package, version), DEFAULT_BLOB_ID)
            target = f"{server.base_url}/upload/{package}/{version}"
            return {
                "blobId": blob_id,
                "blob": {"url": target, "fields": {"key": f"{package}/{version}/{blob_id}.blob"}},
                "index": {"url": target, "fields": {"key": f"{package}/{version}/index.json"}},
            }

        @app.post("/upload/{package}/{version}")
        async def upload(package: str, version: str, request: Request):
            server.upload_auth.append(request.headers.get("authorization", ""))
            if server.upload_failures:
                return Response(status_code=server.upload_failures.popleft())
            form = await request.form()
            file = form["file"]
            name = f"{package}/{version}/{file.filename}"
            server.uploads[name] = await file.read()
            server.upload_fields[name] = {k: v for k, v in form.items() if k != "file"}
            server.events.append(f"upload {name}")
            return Response(status_code=204)

        @app.post("/api/tasks/{package}/{version}/finished")
        async def finished(
            package: str, version: str, request: Request, authorization: str = Header(default=""),
        ):
            server.task_hosts.append(request.url.hostname)
            server.finished[(package, version)] += 1
            server.finished_auth.append(authorization)
            server.events.append(f"finished {package}/{version}")
            return {}

        return app


# ---------------------------------------------------------------------------
# Fake toolchain
# ---------------------------------------------------------------------------


class FakeProcessRunner:
    """ProcessRunner imitating the Dart toolchain.

    Steps are keyed ``pub`` / ``analyze`` / ``doc`` by their first argument.
    ``pub get`` fails unless every dependency in pubspec.yaml has been
    extracted into the hosted pub-cache directory.
    """

    def __init__(self):
        self.exit_codes: dict[str, int] = {}
        self.timeouts: set[str] = set()
        self.launch_failures: set[str] = set()
        self.delay: float = 0.0
        self.calls: list[dict] = []
        self.active = 0
        self.max_active = 0

    async def run(
        self,
        command: str,
        args: Sequence[str],
        cwd: Path,
        timeout: float,
        env: Optional[Mapping[str, str]] = None,
    ) -> ProcessResult:
        step = args[0] if args else command
        label = " ".join([command, *args])
        self.calls.append({"step": step, "args": list(args), "cwd": Path(cwd), "env": dict(env or {})})

        if step in self.launch_failures:
            raise SubprocessLaunchError(command, FileNotFoundError(command))

        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if step in self.timeouts:
                raise SubprocessTimeoutError(label, timeout, "partial output\n", "")
            stdout, stderr, code = self._simulate(step, list(args), Path(cwd), dict(env or {}))
        finally:
            self.active -= 1

        code = self.exit_codes.get(step, code)
        return ProcessResult(command=label, exit_code=code, stdout=stdout, stderr=stderr)

    def _simulate(self, step: str, args: list[str], cwd: Path, env: dict) -> tuple[str, str, int]:
        if step == "pub":
            pubspec = yaml.safe_load((cwd / "pubspec.yaml").read_text())
            hosted = Path(env["PUB_CACHE"]) / "hosted"
            for name in pubspec.get("dependencies") or {}:
                if not list(hosted.glob(f"*/{name}-*/pubspec.yaml")):
                    return "", f"Because {pubspec['name']} depends on {name} which doesn't exist\n", 1
            return "Resolving dependencies...\nGot dependencies!\n", "", 0
        if step == "analyze":
            return "Analyzing package...\nNo issues found!\n", "", 0
        if step == "doc":
            output = Path(args[args.index("--output") + 1])
            name = yaml.safe_load((cwd / "pubspec.yaml").read_text())["name"]
            (output / name).mkdir(parents=True, exist_ok=True)
            (output / "index.html").write_text(f"<html><body>{name}</body></html>")
            (output / name / f"{name}-library.html").write_text(f"<html>{name} library</html>")
            return f"Documenting {name}...\nSuccess! Docs generated into {output}\n", "", 0
        return "", f"unknown command {step}\n", 64


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def pub_server() -> FakePubServer:
    return FakePubServer()


@pytest.fixture
async def http_client(pub_server):
    async with pub_server.client() as client:
        yield client


@pytest.fixture
def fake_runner() -> FakeProcessRunner:
    return FakeProcessRunner()


@pytest.fixture
def worker_settings(tmp_path) -> WorkerSettings:
    return WorkerSettings(
        control_plane_url="",
        max_concurrent_analyses=2,
        retry_max_attempts=3,
        retry_initial_wait_seconds=0.0,
        retry_max_wait_seconds=0.0,
        workspace_root=tmp_path / "workspaces",
    )


@pytest.fixture
def archive_factory():
    return make_archive
