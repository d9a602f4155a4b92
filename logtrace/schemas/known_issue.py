from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from logtrace.models.known_issue import IssueCategory
from logtrace.models.analysis_report import ReportType


class KnownIssueCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    solution: str = ""
    category: IssueCategory = IssueCategory.other
    severity: int = Field(2, ge=1, le=5)
    error_code: Optional[str] = Field(None, max_length=128)
    event_pattern: Optional[str] = Field(None, max_length=500)
    msg_pattern: Optional[str] = Field(None, max_length=500)
    is_active: bool = True


class KnownIssueUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    solution: Optional[str] = None
    category: Optional[IssueCategory] = None
    severity: Optional[int] = Field(None, ge=1, le=5)
    error_code: Optional[str] = Field(None, max_length=128)
    event_pattern: Optional[str] = Field(None, max_length=500)
    msg_pattern: Optional[str] = Field(None, max_length=500)
    is_active: Optional[bool] = None


class KnownIssueResponse(BaseModel):
    id: int
    project_id: int
    title: str
    description: str
    solution: str
    category: str
    severity: int
    error_code: Optional[str] = None
    event_pattern: Optional[str] = None
    msg_pattern: Optional[str] = None
    hit_count: int
    is_active: bool
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class MatchEventRequest(BaseModel):
    event_name: str
    error_code: Optional[str] = None
    msg: Optional[Any] = None
    id: Optional[Any] = None


class MatchBatchRequest(BaseModel):
    events: List[MatchEventRequest]


class ReportCreate(BaseModel):
    report_type: ReportType
    title: Optional[str] = Field(None, max_length=255)
    link_code: Optional[str] = None
    device_mac: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class ReportResponse(BaseModel):
    id: int
    project_id: int
    title: str
    report_type: str
    content: Dict[str, Any]
    source_data: Dict[str, Any]
    summary: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}
