import enum
from datetime import datetime
from typing import Any

from sqlalchemy import Integer, BigInteger, String, DateTime, Text, JSON, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from logtrace.db.base import Base


class SessionStatus(str, enum.Enum):
    scanning = "scanning"
    pairing = "pairing"
    connecting = "connecting"
    connected = "connected"
    communicating = "communicating"
    disconnected = "disconnected"
    done = "done"
    timeout = "timeout"
    error = "error"


class DeviceSession(Base):
    """Materialized view of the events sharing one link code in a project."""

    __tablename__ = "device_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    project_id: Mapped[int] = mapped_column(Integer, nullable=False)
    link_code: Mapped[str] = mapped_column(Text, nullable=False)

    device_mac: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    device_sn: Mapped[str | None] = mapped_column(Text, nullable=True)

    start_time_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    end_time_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False, default="incomplete")

    event_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    command_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    scan_start_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    pair_start_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    connect_start_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    connected_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    disconnect_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    milestones: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    sdk_version: Mapped[str | None] = mapped_column(Text, nullable=True)
    app_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    terminal_info: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        UniqueConstraint("project_id", "link_code", name="uq_device_sessions_project_link"),
        Index("idx_device_sessions_project_start", "project_id", "start_time_ms"),
    )
