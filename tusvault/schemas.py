from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class UploadView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    size: int
    current_offset: int
    file_name: str
    mime_type: str
    state: str
    created_at: datetime
    updated_at: datetime


class AccessRefCreateRequest(BaseModel):
    upload_id: str = Field(min_length=1)


class AccessRefView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    upload_id: str
    owner_id: str
    created_at: datetime
    url: str


class RecoveryResponse(BaseModel):
    status: str
    requested_by: str
    scanned: int
    finalized: int
    not_applicable: int
    failed: int


class ErrorResponse(BaseModel):
    detail: str
    error_code: str
    request_id: str | None = None
    upload_id: str | None = None
    trace_id: str | None = None
