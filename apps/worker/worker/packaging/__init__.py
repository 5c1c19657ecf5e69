"""Packaging module for container assembly and upload.

Public API:
    assemble(log, summary, doc_dir) -> IndexedBlobBuilder
    TaskApiClient(client, base_url).request_upload_targets / upload_artifact / notify_finished
"""

from worker.packaging.assembler import assemble, assemble_result
from worker.packaging.types import UploadInfo, UploadTaskResultResponse
from worker.packaging.uploader import TaskApiClient

__all__ = [
    "TaskApiClient",
    "UploadInfo",
    "UploadTaskResultResponse",
    "assemble",
    "assemble_result",
]
