"""Enums for model fields."""

from enum import Enum


class DeviceClass(str, Enum):
    """Coarse platform category of a registered device."""

    IOS = "ios"
    ANDROID = "android"
    WEB = "web"

    @classmethod
    def parse(cls, value: "str | DeviceClass") -> "DeviceClass | None":
        """Return the matching member, or None if the value is not a device class."""
        try:
            return cls(value)
        except ValueError:
            return None


class DeliveryError(str, Enum):
    """Reason codes the push gateway reports for a rejected message."""

    DEVICE_NOT_REGISTERED = "DeviceNotRegistered"
    MESSAGE_TOO_BIG = "MessageTooBig"
    INVALID_CREDENTIALS = "InvalidCredentials"
    MESSAGE_RATE_EXCEEDED = "MessageRateExceeded"
    OTHER = "Other"

    @property
    def is_permanent(self) -> bool:
        """Check if the address should stop being targeted."""
        return self == DeliveryError.DEVICE_NOT_REGISTERED
