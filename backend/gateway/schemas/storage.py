from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class FileDescriptor(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_name: str = Field(..., alias="fileName")
    size: int = Field(..., ge=0)
    content_type: str = Field(default="application/octet-stream", alias="contentType")
    url: str | None = None
    uploaded_at: datetime | None = Field(default=None, alias="uploadedAt")
