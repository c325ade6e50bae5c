"""
Entitlement Models
==================

SQLAlchemy models for the per-user premium snapshot and the webhook
event log used for idempotency.

Both rows are written in the same transaction by the entitlement store.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TimestampMixin
from app.schemas.billing import (
    EntitlementSnapshot,
    EntitlementType,
    SubscriptionState,
)


class WebhookEventStatus:
    """Values stored in ``webhook_events.status``."""
    PROCESSED = "processed"
    STALE = "stale"


class UserPremium(Base, TimestampMixin):
    """
    Premium entitlement snapshot for one RevenueCat app user.

    Holds exactly one row per ``app_user_id``. Enum-like columns are plain
    strings so the table is portable across dialects.
    """

    __tablename__ = "user_premium"

    # Primary Key
    app_user_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Entitlement
    is_premium: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    entitlement_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    subscription_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    subscription_state: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    product_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Ordering
    last_event_timestamp_ms: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        nullable=False,
    )
    last_event_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Billing period
    expires_at_ms: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    purchased_at_ms: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    expired_at_ms: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    base_plan_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Trial
    is_in_trial: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    has_used_trial: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    trial_start_at_ms: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    trial_end_at_ms: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    trial_consumed_at_ms: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    # RevenueCat bookkeeping
    original_app_user_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    reconciliation_source: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    __table_args__ = (
        Index("idx_user_premium_premium_expires", "is_premium", "expires_at_ms"),
    )

    def __repr__(self) -> str:
        return f"<UserPremium(app_user_id={self.app_user_id}, is_premium={self.is_premium})>"

    def to_snapshot(self) -> EntitlementSnapshot:
        """Convert the row into an immutable snapshot."""
        return EntitlementSnapshot(
            is_premium=bool(self.is_premium),
            entitlement_type=EntitlementType(self.entitlement_type) if self.entitlement_type else None,
            subscription_type=self.subscription_type,
            subscription_state=(
                SubscriptionState(self.subscription_state) if self.subscription_state else None
            ),
            product_id=self.product_id,
            last_event_timestamp_ms=self.last_event_timestamp_ms or 0,
            expires_at_ms=self.expires_at_ms,
            purchased_at_ms=self.purchased_at_ms,
            expired_at_ms=self.expired_at_ms,
            order_id=self.order_id,
            base_plan_id=self.base_plan_id,
            is_in_trial=bool(self.is_in_trial),
            has_used_trial=bool(self.has_used_trial),
            trial_start_at_ms=self.trial_start_at_ms,
            trial_end_at_ms=self.trial_end_at_ms,
            trial_consumed_at_ms=self.trial_consumed_at_ms,
            last_event_type=self.last_event_type,
            last_event_id=self.last_event_id,
            original_app_user_id=self.original_app_user_id,
            reconciliation_source=self.reconciliation_source,
        )

    def apply_snapshot(self, snapshot: EntitlementSnapshot) -> None:
        """Overwrite every snapshot column from ``snapshot``."""
        values = snapshot.model_dump(mode="json")
        for column, value in values.items():
            setattr(self, column, value)


class WebhookEvent(Base):
    """
    Log of handled webhook event ids.

    A row here means the event was already processed (or judged stale)
    and must not be applied again.
    """

    __tablename__ = "webhook_events"

    # Primary Key
    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    app_user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    event_timestamp_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default=WebhookEventStatus.PROCESSED,
        nullable=False,
    )

    # Timestamp
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("idx_webhook_events_user_created", "app_user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent(event_id={self.event_id}, status={self.status})>"
