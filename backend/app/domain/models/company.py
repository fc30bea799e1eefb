from enum import StrEnum

from sqlalchemy import DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.infrastructure.db.base import Base


class SubscriptionTier(StrEnum):
    TRIAL = "trial"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class SubscriptionStatus(StrEnum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    CANCELED = "canceled"


class Company(Base):
    __tablename__ = "companies"

    company_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    industry: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    company_address: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    company_phone: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    company_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    logo_url: Mapped[str] = mapped_column(String(1024), nullable=False, default="")

    subscription_tier: Mapped[str] = mapped_column(String(32), nullable=False, default=SubscriptionTier.STARTER.value)
    subscription_status: Mapped[str] = mapped_column(String(32), nullable=False, default=SubscriptionStatus.ACTIVE.value)
    subscription_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    paddle_customer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    next_billing_date: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    trial_start_date: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    trial_end_date: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    current_users: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    current_projects: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_month_expenses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
