import enum
from datetime import datetime

from sqlalchemy import Integer, String, DateTime, Text, Boolean, Index
from sqlalchemy.orm import Mapped, mapped_column

from logtrace.db.base import Base


class IssueCategory(str, enum.Enum):
    connection = "connection"
    data = "data"
    device = "device"
    app = "app"
    permission = "permission"
    protocol = "protocol"
    other = "other"


class KnownIssue(Base):
    __tablename__ = "known_issues"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    project_id: Mapped[int] = mapped_column(Integer, nullable=False)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    solution: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category: Mapped[str] = mapped_column(String(20), nullable=False, default=IssueCategory.other.value)
    severity: Mapped[int] = mapped_column(Integer, nullable=False, default=2)

    # Signatures; any subset may be set
    error_code: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    event_pattern: Mapped[str | None] = mapped_column(String(500), nullable=True)
    msg_pattern: Mapped[str | None] = mapped_column(String(500), nullable=True)

    hit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_by: Mapped[str | None] = mapped_column(String(150), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        Index("idx_known_issues_project_active", "project_id", "is_active"),
    )
