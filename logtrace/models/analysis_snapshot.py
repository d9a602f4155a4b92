from datetime import datetime
from typing import Any

from sqlalchemy import Integer, String, DateTime, Text, JSON, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from logtrace.db.base import Base


class AnalysisSnapshot(Base):
    __tablename__ = "analysis_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    log_file_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("log_files.id", ondelete="CASCADE"),
        nullable=False, unique=True, index=True
    )
    project_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    template_version: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="completed")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    main_flow_analysis: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    event_coverage_analysis: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    stream_quality: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    analyzed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
