"""Pydantic schemas for API requests and responses."""

from src.schemas.auth import AuthResponse, UserLogin, UserRegister, UserResponse
from src.schemas.notification import (
    DispatchResponse,
    PushTokenRegister,
    PushTokenResponse,
    SendByDeviceRequest,
    SendToAllRequest,
    SendToUserRequest,
    SendToUsersRequest,
)

__all__ = [
    "UserRegister",
    "UserLogin",
    "AuthResponse",
    "UserResponse",
    "PushTokenRegister",
    "PushTokenResponse",
    "SendToUserRequest",
    "SendToUsersRequest",
    "SendToAllRequest",
    "SendByDeviceRequest",
    "DispatchResponse",
]
