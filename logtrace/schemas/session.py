from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel


class DeviceSessionResponse(BaseModel):
    id: int
    project_id: int
    link_code: str
    device_mac: Optional[str] = None
    device_sn: Optional[str] = None
    start_time_ms: int
    end_time_ms: Optional[int] = None
    duration_ms: Optional[int] = None
    status: str
    outcome: str
    event_count: int
    error_count: int
    command_count: int
    scan_start_ms: Optional[int] = None
    pair_start_ms: Optional[int] = None
    connect_start_ms: Optional[int] = None
    connected_ms: Optional[int] = None
    disconnect_ms: Optional[int] = None
    milestones: Optional[Dict[str, Any]] = None
    sdk_version: Optional[str] = None
    app_id: Optional[str] = None
    terminal_info: Optional[str] = None
    updated_at: datetime

    model_config = {"from_attributes": True}


class AggregateSessionsRequest(BaseModel):
    project_id: int
    start_time: datetime
    end_time: datetime
    force_refresh: bool = False
