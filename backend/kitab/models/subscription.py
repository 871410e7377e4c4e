"""Subscription model: one billing row per user."""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Enum, ForeignKey, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kitab.billing.status import PaymentStatus
from kitab.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A user's billing relationship with a payment provider."""

    __tablename__ = "subscriptions"

    # One subscription per user; the unique index is the upsert conflict target
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )

    # Provider identifiers
    external_subscription_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    external_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Plan snapshot at subscription time
    plan_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    plan_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(10), nullable=True)
    interval: Mapped[str | None] = mapped_column(String(20), nullable=True)

    # Billing period
    subscription_start: Mapped[datetime | None] = mapped_column(nullable=True)
    subscription_end: Mapped[datetime | None] = mapped_column(nullable=True)

    payment_status: Mapped[PaymentStatus | None] = mapped_column(
        Enum(
            PaymentStatus,
            native_enum=False,
            length=20,
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        nullable=True,
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False, default="stripe")
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Set when the relationship is ended on purpose; terminal afterwards
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Relationships
    user: Mapped["User"] = relationship(back_populates="subscription", lazy="selectin")  # type: ignore[name-defined]  # noqa: F821

    @property
    def is_provider_backed(self) -> bool:
        """True when cancellation must go through Stripe first."""
        return self.type == "stripe" and bool(self.external_subscription_id)

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, "
            f"type={self.type}, payment_status={self.payment_status})>"
        )
