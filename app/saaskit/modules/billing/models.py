from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.saaskit.models import Base


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"
    __table_args__ = (
        Index("idx_plans_status_order", "status", "display_order"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)  # e.g. "free", "pro"
    plan_name: Mapped[str] = mapped_column(String(128), nullable=False)

    # Stripe price ids (monthly / yearly)
    price_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    annual_discount_price_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    limits: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)  # {"projects": 3, "users": 1, "storage": 1}
    free_trial: Mapped[dict | None] = mapped_column(JSON, nullable=True)  # {"days": 14}
    features: Mapped[list | None] = mapped_column(JSON, nullable=True)

    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=0)
    yearly_price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="EUR")
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")  # active | inactive | deprecated
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_legacy: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("idx_subscriptions_reference", "reference_id"),
        Index("idx_subscriptions_stripe", "stripe_subscription_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    plan: Mapped[str] = mapped_column(String(64), nullable=False)  # SubscriptionPlan.code
    reference_id: Mapped[str] = mapped_column(String(64), nullable=False)  # "user:<id>" or "org:<id>"

    # Owner columns derived from reference_id, for ability conditions and joins.
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    organization_id: Mapped[int | None] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=True)

    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_checkout_session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default="incomplete")
    period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    seats: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    trial_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    trial_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    plan_obj: Mapped[SubscriptionPlan | None] = relationship(
        "SubscriptionPlan",
        primaryjoin="foreign(Subscription.plan) == SubscriptionPlan.code",
        viewonly=True,
        lazy="selectin",
    )

    @property
    def is_live(self) -> bool:
        return self.status in ("active", "trialing")
