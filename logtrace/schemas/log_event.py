from datetime import datetime
from typing import Any, List, Optional
from pydantic import BaseModel


class LogEventResponse(BaseModel):
    id: int
    log_file_id: int
    project_id: int
    line_number: Optional[int] = None
    timestamp_ms: int
    level: int
    event_name: str
    sdk_version: Optional[str] = None
    app_id: Optional[str] = None
    terminal_info: Optional[str] = None
    thread_name: Optional[str] = None
    thread_id: Optional[int] = None
    is_main_thread: Optional[bool] = None
    msg_json: Optional[Any] = None
    raw_line: Optional[str] = None

    device_sn: Optional[str] = None
    device_mac: Optional[str] = None
    link_code: Optional[str] = None
    request_id: Optional[str] = None
    attempt_id: Optional[str] = None
    error_code: Optional[str] = None
    reason_code: Optional[str] = None
    stage: Optional[str] = None
    op: Optional[str] = None
    result: Optional[str] = None

    created_at: datetime

    model_config = {"from_attributes": True}


class EventContextResponse(BaseModel):
    event: LogEventResponse
    before: List[LogEventResponse]
    after: List[LogEventResponse]


class TrackingValue(BaseModel):
    value: str
    count: int


class TrackingLookupResponse(BaseModel):
    field: str
    items: List[TrackingValue]
