from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from app.infrastructure.db.base import Base


class Subscription(Base):
    __tablename__ = "subscriptions"

    company_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    subscription_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    paddle_customer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    current_plan: Mapped[str | None] = mapped_column(String(32), nullable=True)
    subscription_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    next_billing_date: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    scheduled_change_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    canceled_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
