from typing import Optional
from pydantic import BaseModel, Field


class PendingFile(BaseModel):
    """An upload held in memory until the owning invoice has an id."""

    file_name: str
    content_type: str
    data: bytes = Field(repr=False)

    @property
    def size(self) -> int:
        return len(self.data)


class FileAttachment(BaseModel):
    url: str = ""
    file_name: str = ""
    storage_path: str = ""
    size: Optional[int] = None
    file: Optional[PendingFile] = Field(default=None, exclude=True)


class DownloadUrlResponse(BaseModel):
    url: str
    file_name: str
