from sqlalchemy import String, Integer, BigInteger, Boolean, DateTime, Text, Index
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime

from logtrace.db.base import Base


class LogFileStatus:
    queued = "queued"
    processing = "processing"
    parsed = "parsed"
    failed = "failed"


class LogFile(Base):
    __tablename__ = "log_files"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    project_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    stored_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    status: Mapped[str] = mapped_column(String(30), nullable=False, default=LogFileStatus.queued)
    encrypted: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    # Running aggregates maintained by the ingestion job
    total_lines: Mapped[int | None] = mapped_column(Integer, nullable=True)
    event_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    invalid_lines: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    header_lines: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    decrypt_blocks_total: Mapped[int | None] = mapped_column(Integer, nullable=True)
    decrypt_blocks_failed: Mapped[int | None] = mapped_column(Integer, nullable=True)

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    uploaded_by: Mapped[str | None] = mapped_column(String(150), nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_log_files_project_uploaded", "project_id", "uploaded_at"),
    )
