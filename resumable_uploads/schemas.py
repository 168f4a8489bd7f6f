from pydantic import BaseModel, ConfigDict, Field

from resumable_uploads.models import UploadStatus


class UploadState(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: UploadStatus
    uploaded_size: int = Field(alias="uploadedSize", ge=0)


class UploadResponse(BaseModel):
    success: bool = True
    status: int = 200
    data: UploadState | None = None


class ErrorResponse(BaseModel):
    success: bool = False
    status: int
    detail: str
    error_code: str
    request_id: str | None = None
    upload_id: str | None = None
    trace_id: str | None = None


class ContentRange(BaseModel):
    """Byte range ``[start, end)`` of a file of ``total`` bytes."""

    start: int = Field(ge=0)
    end: int = Field(ge=0)
    total: int = Field(ge=0)

    @property
    def length(self) -> int:
        return self.end - self.start
