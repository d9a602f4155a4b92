from datetime import datetime
from typing import Optional
from pydantic import BaseModel


class LogFileResponse(BaseModel):
    id: int
    project_id: int
    filename: str
    size_bytes: int
    status: str
    encrypted: Optional[bool] = None
    total_lines: Optional[int] = None
    event_count: int
    error_count: int
    invalid_lines: int
    header_lines: int
    decrypt_blocks_total: Optional[int] = None
    decrypt_blocks_failed: Optional[int] = None
    attempts: int
    error: Optional[str] = None
    uploaded_by: Optional[str] = None
    uploaded_at: datetime
    processed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class UploadResponse(BaseModel):
    log_file_id: int
    status: str
