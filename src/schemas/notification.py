"""Notification-related Pydantic schemas."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from src.models.enums import DeviceClass
from src.services.dispatch import (
    DirectSendResult,
    DispatchReason,
    DispatchResult,
    DispatchStatus,
    Notification,
)


class DeviceInfo(BaseModel):
    """Device metadata reported by the mobile client."""

    brand: str | None = Field(None, max_length=100)
    model_name: str | None = Field(None, max_length=100)
    os_version: str | None = Field(None, max_length=50)
    app_version: str | None = Field(None, max_length=50)


class PushTokenRegister(BaseModel):
    """Schema for registering a push token.

    ``user_id`` defaults to the authenticated user; only admins may set it.
    """

    token: str = Field(..., min_length=1, max_length=255)
    device_type: str
    device_info: DeviceInfo | None = None
    user_id: str | None = Field(None, min_length=1, max_length=64)


class PushTokenResponse(BaseModel):
    """Schema for a registered push token."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    device_type: DeviceClass
    device_info: DeviceInfo
    is_active: bool
    last_used_at: datetime
    last_notification_sent_at: datetime | None
    notification_count: int
    days_since_last_used: int
    allow_notifications: bool
    allow_sound: bool
    allow_vibration: bool
    created_at: datetime


class PushTokenListResponse(BaseModel):
    """Schema for a user's active tokens."""

    user_id: str
    token_count: int
    tokens: list[PushTokenResponse]


class TokenPreferencesUpdate(BaseModel):
    """Schema for updating token delivery preferences."""

    allow_notifications: bool | None = None
    allow_sound: bool | None = None
    allow_vibration: bool | None = None


class TokenPreferencesResponse(BaseModel):
    """Schema for token delivery preferences."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    allow_notifications: bool
    allow_sound: bool
    allow_vibration: bool


class TokenValidateRequest(BaseModel):
    """Schema for checking a push token's format."""

    token: str


class TokenValidateResponse(BaseModel):
    """Schema for push token format check result."""

    token: str
    is_valid: bool
    expected_format: str = "ExponentPushToken[xxxxxxxxxxxxxxxxxxxxxx]"


class NotificationContent(BaseModel):
    """Fields shared by every send request."""

    title: str = Field(..., min_length=1, max_length=255)
    body: str = Field(..., min_length=1, max_length=4000)
    data: dict[str, Any] = Field(default_factory=dict)
    sound: str | None = None
    badge: int | None = Field(None, ge=0)
    channel_id: str | None = None
    subtitle: str | None = None
    category_id: str | None = None
    priority: Literal["default", "normal", "high"] | None = None
    ttl: int | None = Field(None, ge=0)

    def to_notification(self) -> Notification:
        """Convert to the dispatch engine's notification."""
        return Notification(
            title=self.title,
            body=self.body,
            data=self.data,
            sound=self.sound,
            badge=self.badge,
            channel_id=self.channel_id,
            subtitle=self.subtitle,
            category_id=self.category_id,
            priority=self.priority,
            ttl=self.ttl,
        )


class SendToUserRequest(NotificationContent):
    """Send to one user's devices; defaults to the authenticated user."""

    user_id: str | None = Field(None, min_length=1, max_length=64)


class SendToUsersRequest(NotificationContent):
    """Send to several users' devices."""

    user_ids: list[str] = Field(..., min_length=1)


class SendToAllRequest(NotificationContent):
    """Broadcast to every active device."""


class SendByDeviceRequest(NotificationContent):
    """Send to every active device of one class."""

    device_type: str


class SendToTokensRequest(NotificationContent):
    """Send straight to push tokens, bypassing registration."""

    tokens: list[str] = Field(..., min_length=1, max_length=1000)


class DispatchResponse(BaseModel):
    """Schema for the result of a send request."""

    success: bool
    status: Literal["no_targets", "sent", "partial", "failed"]
    message: str
    sent_count: int
    error_count: int
    total_targeted: int
    discarded_count: int
    errors_by_reason: dict[str, int]

    @classmethod
    def from_result(cls, result: DispatchResult) -> "DispatchResponse":
        """Build the response, describing which state the dispatch ended in."""
        status = result.status
        if status == DispatchStatus.NO_TARGETS:
            message = (
                "No valid tokens found"
                if result.reason == DispatchReason.NO_VALID_TOKENS
                else "No active tokens found"
            )
        elif status == DispatchStatus.SENT:
            message = "Notifications sent successfully"
        elif status == DispatchStatus.PARTIAL:
            message = f"Notifications sent with {result.error_count} errors"
        else:
            message = f"All {result.error_count} notifications failed"

        return cls(
            success=result.success,
            status=status.value,
            message=message,
            sent_count=result.sent_count,
            error_count=result.error_count,
            total_targeted=result.total_targeted,
            discarded_count=len(result.discarded_addresses),
            errors_by_reason=result.errors_by_reason,
        )


class DeviceBreakdownResponse(BaseModel):
    """Active token counts for one device class."""

    model_config = ConfigDict(from_attributes=True)

    device_type: DeviceClass
    count: int
    avg_notifications: float


class NotificationStatsResponse(BaseModel):
    """Schema for token and notification statistics."""

    model_config = ConfigDict(from_attributes=True)

    total_count: int
    active_count: int
    total_notifications_sent: int
    avg_notifications_per_token: float
    recently_active_count: int
    device_breakdown: list[DeviceBreakdownResponse]


class CleanupRequest(BaseModel):
    """Schema for the inactive token sweep; defaults to the configured threshold."""

    days_inactive: int | None = Field(None, ge=0)


class CleanupResponse(BaseModel):
    """Schema for the inactive token sweep result."""

    success: bool = True
    days_inactive: int
    deactivated_count: int


class DirectSendResponse(BaseModel):
    """Schema for the result of sending to raw tokens."""

    success: bool = True
    total_tokens: int
    valid_count: int
    invalid_tokens: list[str]
    sent_count: int
    error_count: int
    receipt_ids: list[str]

    @classmethod
    def from_result(cls, result: DirectSendResult) -> "DirectSendResponse":
        return cls(
            total_tokens=result.total_addresses,
            valid_count=len(result.valid_addresses),
            invalid_tokens=result.invalid_addresses,
            sent_count=result.sent_count,
            error_count=result.error_count,
            receipt_ids=result.receipt_ids,
        )
