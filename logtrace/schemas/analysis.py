from typing import Any, Dict
from pydantic import BaseModel


class ArtifactResponse(BaseModel):
    log_file_id: int
    artifact: str
    template_version: int
    recomputed: bool
    data: Dict[str, Any]


class SnapshotRefreshResponse(BaseModel):
    log_file_id: int
    template_version: int
    status: str


class ProjectRefreshAccepted(BaseModel):
    project_id: int
    template_version: int
    limit: int
    status: str = "scheduled"

