"""Push token model for Expo device registrations."""

import math
from datetime import UTC, datetime

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Enum, Index, Integer, String

from src.database import Base
from src.models.enums import DeviceClass
from src.models.mixins import TimestampMixin


class PushToken(Base, TimestampMixin):
    """One installed app instance that can receive pushed messages.

    Rows are never hard-deleted; liveness is tracked with ``is_active``.
    ``user_id`` is an opaque string so tokens can be registered for users
    this service does not own.
    """

    __tablename__ = "push_tokens"
    __table_args__ = (
        Index("ix_push_tokens_user_active", "user_id", "is_active"),
        Index("ix_push_tokens_device_active", "device_type", "is_active"),
        CheckConstraint("notification_count >= 0", name="ck_push_tokens_count_nonnegative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    token = Column(String(255), unique=True, nullable=False)
    device_type = Column(
        Enum(
            DeviceClass,
            name="deviceclass",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )

    # Device info
    brand = Column(String(100), nullable=True)
    model_name = Column(String(100), nullable=True)
    os_version = Column(String(50), nullable=True)
    app_version = Column(String(50), nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    last_used_at = Column(DateTime(timezone=True), nullable=False, index=True)
    last_notification_sent_at = Column(DateTime(timezone=True), nullable=True)
    notification_count = Column(Integer, default=0, nullable=False)

    # Preferences
    allow_notifications = Column(Boolean, default=True, nullable=False)
    allow_sound = Column(Boolean, default=True, nullable=False)
    allow_vibration = Column(Boolean, default=True, nullable=False)

    @property
    def device_info(self) -> dict:
        """Device metadata as reported by the client."""
        return {
            "brand": self.brand,
            "model_name": self.model_name,
            "os_version": self.os_version,
            "app_version": self.app_version,
        }

    @property
    def days_since_last_used(self) -> int:
        """Whole days since the token was last used, rounded up."""
        last_used = self.last_used_at
        if last_used.tzinfo is None:
            # SQLite drops the offset; values are always stored as UTC
            last_used = last_used.replace(tzinfo=UTC)
        elapsed = abs((datetime.now(UTC) - last_used).total_seconds())
        return math.ceil(elapsed / 86400)
