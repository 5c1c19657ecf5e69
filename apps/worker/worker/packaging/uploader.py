"""Control-plane task API client — upload targets, artifact upload, completion.

The upload flow for one version:
1. POST /api/tasks/<package>/<version>/upload (bearer token) → blob id plus
   one presigned target each for the blob and the index
2. POST the blob, then the index, as multipart/form-data to their targets:
   the target's fixed fields first, then the bytes as the ``file`` part
3. POST /api/tasks/<package>/<version>/finished (bearer token)

Presigned targets carry their own authorization; the bearer token is only
sent to the control plane.

Error mapping:
  connect error or connect timeout    → ControlPlaneUnreachableError (never sent)
  other transport error, 408/429/5xx  → ControlPlaneUnavailableError (retryable)
  other 4xx                           → UploadRejectedError
  2xx with an unexpected body         → ProtocolError
"""

import logging
from typing import Optional
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from worker.core.errors import (
    ControlPlaneUnavailableError,
    ControlPlaneUnreachableError,
    ProtocolError,
    UploadRejectedError,
)
from worker.packaging.types import UploadInfo, UploadTaskResultResponse

logger = logging.getLogger(__name__)

_RETRYABLE_STATUSES: set[int] = {408, 429, 500, 502, 503, 504}

# Response bodies quoted in error messages are cut to this many characters.
_BODY_SNIPPET_CHARS = 200


def _snippet(response: httpx.Response) -> str:
    try:
        text = response.text
    except (UnicodeDecodeError, httpx.HTTPError):
        return ""
    return text[:_BODY_SNIPPET_CHARS]


def _check_status(response: httpx.Response, url: str) -> None:
    if response.status_code in _RETRYABLE_STATUSES:
        raise ControlPlaneUnavailableError(f"POST {url} returned HTTP {response.status_code}")
    if response.status_code >= 400:
        raise UploadRejectedError(url, response.status_code, _snippet(response))


class TaskApiClient:
    """Async client for the control plane's task endpoints.

    Wraps a caller-owned `httpx.AsyncClient`; closing it is the caller's job.
    """

    def __init__(self, client: httpx.AsyncClient, base_url: str):
        self._client = client
        self.base_url = base_url.rstrip("/")

    def _task_url(self, package: str, version: str, action: str) -> str:
        return (
            f"{self.base_url}/api/tasks/{quote(package, safe='')}/"
            f"{quote(version, safe='')}/{action}"
        )

    async def _post(self, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.post(url, **kwargs)
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            raise ControlPlaneUnreachableError(f"POST {url} could not connect: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ControlPlaneUnavailableError(f"POST {url} failed: {exc}") from exc
        _check_status(response, url)
        return response

    async def request_upload_targets(
        self,
        package: str,
        version: str,
        token: str,
    ) -> UploadTaskResultResponse:
        """Ask the control plane for a blob id and two upload targets."""
        url = self._task_url(package, version, "upload")
        response = await self._post(url, headers={"Authorization": f"Bearer {token}"})
        try:
            targets = UploadTaskResultResponse.model_validate_json(response.content)
        except ValidationError as exc:
            raise ProtocolError(f"Unexpected response from {url}: {exc}") from exc

        logger.info("Upload targets issued for %s %s: blob_id=%s", package, version, targets.blob_id)
        return targets

    async def upload_artifact(
        self,
        upload_info: UploadInfo,
        data: bytes,
        filename: str,
        content_type: Optional[str] = "application/octet-stream",
    ) -> None:
        """Submit ``data`` as the ``file`` part of a multipart form.

        Safe to repeat: each target accepts the same bytes again.
        """
        await self._post(
            upload_info.url,
            data=dict(upload_info.fields),
            files={"file": (filename, data, content_type)},
        )
        logger.info("Uploaded %s (%d bytes)", filename, len(data))

    async def notify_finished(self, package: str, version: str, token: str) -> None:
        """Tell the control plane this version's artifacts are ready to serve."""
        url = self._task_url(package, version, "finished")
        await self._post(url, headers={"Authorization": f"Bearer {token}"}, json={})
        logger.info("Reported %s %s finished", package, version)
