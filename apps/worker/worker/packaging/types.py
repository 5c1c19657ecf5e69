"""Wire schemas for the control-plane task API."""

from pydantic import BaseModel, ConfigDict, Field


class UploadInfo(BaseModel):
    """Presigned upload target plus fixed form fields. Single-use."""

    model_config = ConfigDict(frozen=True)

    url: str = Field(..., min_length=1)
    fields: dict[str, str] = Field(default_factory=dict)


class UploadTaskResultResponse(BaseModel):
    """Response to ``POST /api/tasks/<package>/<version>/upload``.

    ``blob_id`` must be embedded in the index before it is serialized.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    blob_id: str = Field(..., alias="blobId", min_length=1)
    blob: UploadInfo
    index: UploadInfo
