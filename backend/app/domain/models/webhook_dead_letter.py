from enum import StrEnum

from sqlalchemy import DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.infrastructure.db.base import Base, JSONDocument


class DeadLetterStatus(StrEnum):
    EXHAUSTED = "exhausted"
    PENDING_RETRY = "pending_retry"
    REPLAYED = "replayed"
    MANUALLY_RESOLVED = "manually_resolved"


class WebhookDeadLetter(Base):
    """Notifications that could not be processed automatically.

    Rows are written once when a notification fails for good and are only
    changed afterwards by operator actions (replay, resolve).
    """

    __tablename__ = "webhook_dead_letters"
    __table_args__ = (Index("ix_webhook_dead_letters_status_dead_lettered_at", "status", "dead_lettered_at"),)

    dlq_entry_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    company_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_error: Mapped[str] = mapped_column(Text, nullable=False)
    error_category: Mapped[str] = mapped_column(String(64), nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    processing_history: Mapped[list] = mapped_column(JSONDocument, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=DeadLetterStatus.EXHAUSTED.value)
    resolution: Mapped[str | None] = mapped_column(Text, nullable=True)
    first_failed_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dead_lettered_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    resolved_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
