from typing import List
from pydantic import BaseModel


class LevelBreakdown(BaseModel):
    level: int
    count: int


class NameCount(BaseModel):
    name: str
    count: int


class StatusCount(BaseModel):
    status: str
    count: int


class StatsSummaryResponse(BaseModel):
    project_id: int
    total_events: int
    total_files: int
    level_breakdown: List[LevelBreakdown]
    top_events: List[NameCount]
    top_error_codes: List[NameCount]
    files_by_status: List[StatusCount]
