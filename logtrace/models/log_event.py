from datetime import datetime
from typing import Any

from sqlalchemy import (
    Integer, BigInteger, DateTime, ForeignKey, Text, Boolean, JSON,
    Index, UniqueConstraint
)
from sqlalchemy.orm import Mapped, mapped_column
from logtrace.db.base import Base

PARSER_ERROR_EVENT = "PARSER_ERROR"


class LogEvent(Base):
    __tablename__ = "log_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    log_file_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("log_files.id", ondelete="CASCADE"),
        nullable=False, index=True
    )
    project_id: Mapped[int] = mapped_column(Integer, nullable=False)

    # Ordinal of the source line; null for synthetic PARSER_ERROR markers
    line_number: Mapped[int | None] = mapped_column(Integer, nullable=True)

    timestamp_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    event_name: Mapped[str] = mapped_column(Text, nullable=False, index=True)

    sdk_version: Mapped[str | None] = mapped_column(Text, nullable=True)
    app_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    terminal_info: Mapped[str | None] = mapped_column(Text, nullable=True)
    thread_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    thread_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    is_main_thread: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    msg_json: Mapped[Any | None] = mapped_column(JSON, nullable=True)
    msg_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_line: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Tracking fields
    device_sn: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    device_mac: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    link_code: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    request_id: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    attempt_id: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    error_code: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    reason_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    stage: Mapped[str | None] = mapped_column(Text, nullable=True)
    op: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("log_file_id", "line_number", name="uq_log_events_file_line"),
        Index("idx_log_events_project_ts", "project_id", "timestamp_ms"),
        Index("idx_log_events_project_link_ts", "project_id", "link_code", "timestamp_ms"),
        Index("idx_log_events_stage_op_result", "stage", "op", "result"),
    )
