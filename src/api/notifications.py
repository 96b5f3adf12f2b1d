"""Notification API endpoints for push tokens, sending and maintenance."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from src.api.dependencies import (
    get_current_user,
    get_dispatch_engine,
    get_token_registry,
    require_admin,
)
from src.config import get_settings
from src.models.push_token import PushToken
from src.models.user import User
from src.schemas.notification import (
    CleanupRequest,
    CleanupResponse,
    DirectSendResponse,
    DispatchResponse,
    NotificationContent,
    NotificationStatsResponse,
    PushTokenListResponse,
    PushTokenRegister,
    PushTokenResponse,
    SendByDeviceRequest,
    SendToAllRequest,
    SendToTokensRequest,
    SendToUserRequest,
    SendToUsersRequest,
    TokenPreferencesResponse,
    TokenPreferencesUpdate,
    TokenValidateRequest,
    TokenValidateResponse,
)
from src.services.dispatch import (
    AllUsers,
    ByDeviceClass,
    ByUser,
    ByUsers,
    DispatchEngine,
    DispatchTimeout,
    InvalidNotification,
    TargetSelector,
    send_to_addresses,
)
from src.services.push_gateway import GatewayAuthenticationError, PushGateway, get_push_gateway
from src.services.token_registry import (
    InvalidAddress,
    InvalidDeviceClass,
    TokenNotFound,
    TokenRegistry,
    parse_device_class,
)
from src.services.token_validator import is_valid_address

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


def ensure_can_act_for(current_user: User, user_id: str) -> None:
    """Allow users to act on their own tokens; admins may act for anyone."""
    if user_id != str(current_user.id) and not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized")


def get_owned_token(registry: TokenRegistry, token_id: int, user: User) -> PushToken:
    """Get a token the current user owns (or any token, for admins)."""
    token = registry.get_by_id(token_id)
    if not token:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Token not found")
    ensure_can_act_for(user, token.user_id)
    return token


def run_dispatch(
    engine: DispatchEngine, selector: TargetSelector, content: NotificationContent
) -> DispatchResponse:
    """Dispatch and translate engine failures into HTTP errors."""
    try:
        result = engine.dispatch(selector, content.to_notification())
    except (InvalidNotification, InvalidDeviceClass) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except GatewayAuthenticationError as e:
        logger.error(f"Push gateway rejected credentials: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Push gateway rejected the service credentials",
        ) from e
    except DispatchTimeout as e:
        raise HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail={
                "message": "Push gateway timed out",
                "sent_count": e.sent_count,
                "error_count": e.error_count,
                "pending_count": e.pending_count,
            },
        ) from e
    return DispatchResponse.from_result(result)


# Token management


@router.post("/token", response_model=PushTokenResponse, status_code=status.HTTP_201_CREATED)
def register_token(
    token_data: PushTokenRegister,
    registry: Annotated[TokenRegistry, Depends(get_token_registry)],
    current_user: Annotated[User, Depends(get_current_user)],
) -> PushToken:
    """Register a push token, or refresh it if already known."""
    user_id = token_data.user_id or str(current_user.id)
    ensure_can_act_for(current_user, user_id)

    device_info = {}
    if token_data.device_info:
        device_info = token_data.device_info.model_dump(exclude_none=True)
    try:
        return registry.upsert_token(user_id, token_data.token, token_data.device_type, device_info)
    except (InvalidAddress, InvalidDeviceClass) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e


@router.get("/tokens/{user_id}", response_model=PushTokenListResponse)
def get_user_tokens(
    user_id: str,
    registry: Annotated[TokenRegistry, Depends(get_token_registry)],
    current_user: Annotated[User, Depends(get_current_user)],
) -> PushTokenListResponse:
    """Get all active tokens for a user."""
    ensure_can_act_for(current_user, user_id)
    tokens = registry.list_for_user(user_id)
    return PushTokenListResponse(
        user_id=user_id,
        token_count=len(tokens),
        tokens=[PushTokenResponse.model_validate(token) for token in tokens],
    )


@router.delete("/token/{token_id}", response_model=PushTokenResponse)
def deactivate_token(
    token_id: int,
    registry: Annotated[TokenRegistry, Depends(get_token_registry)],
    current_user: Annotated[User, Depends(get_current_user)],
) -> PushToken:
    """Deactivate a push token. Tokens are never deleted."""
    get_owned_token(registry, token_id, current_user)
    try:
        return registry.deactivate_by_id(token_id)
    except TokenNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e


@router.put("/token/{token_id}/preferences", response_model=TokenPreferencesResponse)
def update_token_preferences(
    token_id: int,
    preferences: TokenPreferencesUpdate,
    registry: Annotated[TokenRegistry, Depends(get_token_registry)],
    current_user: Annotated[User, Depends(get_current_user)],
) -> PushToken:
    """Update a token's delivery preferences; omitted flags are unchanged."""
    get_owned_token(registry, token_id, current_user)
    try:
        return registry.update_preferences(token_id, **preferences.model_dump(exclude_unset=True))
    except TokenNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e


@router.post("/validate-token", response_model=TokenValidateResponse)
async def validate_token(
    request: TokenValidateRequest,
    current_user: Annotated[User, Depends(get_current_user)],
) -> TokenValidateResponse:
    """Check whether a string is a well-formed Expo push token."""
    return TokenValidateResponse(token=request.token, is_valid=is_valid_address(request.token))


# Sending


@router.post("/send", response_model=DispatchResponse)
def send_to_user(
    request: SendToUserRequest,
    engine: Annotated[DispatchEngine, Depends(get_dispatch_engine)],
    current_user: Annotated[User, Depends(get_current_user)],
) -> DispatchResponse:
    """Send a notification to every active device of one user."""
    user_id = request.user_id or str(current_user.id)
    ensure_can_act_for(current_user, user_id)
    return run_dispatch(engine, ByUser(user_id), request)


@router.post("/send-multiple", response_model=DispatchResponse)
def send_to_users(
    request: SendToUsersRequest,
    engine: Annotated[DispatchEngine, Depends(get_dispatch_engine)],
    current_user: Annotated[User, Depends(require_admin)],
) -> DispatchResponse:
    """Send a notification to the devices of several users."""
    return run_dispatch(engine, ByUsers(tuple(request.user_ids)), request)


@router.post("/send-all", response_model=DispatchResponse)
def send_to_all(
    request: SendToAllRequest,
    engine: Annotated[DispatchEngine, Depends(get_dispatch_engine)],
    current_user: Annotated[User, Depends(require_admin)],
) -> DispatchResponse:
    """Broadcast a notification to every active device."""
    return run_dispatch(engine, AllUsers(), request)


@router.post("/send-by-device", response_model=DispatchResponse)
def send_by_device_type(
    request: SendByDeviceRequest,
    engine: Annotated[DispatchEngine, Depends(get_dispatch_engine)],
    current_user: Annotated[User, Depends(require_admin)],
) -> DispatchResponse:
    """Send a notification to every active device of one class."""
    try:
        device_class = parse_device_class(request.device_type)
    except InvalidDeviceClass as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    return run_dispatch(engine, ByDeviceClass(device_class), request)


@router.post("/send-to-tokens", response_model=DirectSendResponse)
def send_to_tokens(
    request: SendToTokensRequest,
    gateway: Annotated[PushGateway, Depends(get_push_gateway)],
    current_user: Annotated[User, Depends(require_admin)],
) -> DirectSendResponse:
    """Send straight to the given push tokens without touching the registry."""
    try:
        result = send_to_addresses(gateway, request.tokens, request.to_notification())
    except InvalidNotification as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except GatewayAuthenticationError as e:
        logger.error(f"Push gateway rejected credentials: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Push gateway rejected the service credentials",
        ) from e
    return DirectSendResponse.from_result(result)


# Statistics and maintenance


@router.get("/stats", response_model=NotificationStatsResponse)
def get_stats(
    registry: Annotated[TokenRegistry, Depends(get_token_registry)],
    current_user: Annotated[User, Depends(require_admin)],
) -> NotificationStatsResponse:
    """Get token and notification statistics."""
    return NotificationStatsResponse.model_validate(registry.aggregate_stats())


@router.post("/cleanup", response_model=CleanupResponse)
def cleanup_tokens(
    registry: Annotated[TokenRegistry, Depends(get_token_registry)],
    current_user: Annotated[User, Depends(require_admin)],
    request: CleanupRequest | None = None,
) -> CleanupResponse:
    """Deactivate tokens that have not been used for the given number of days."""
    days = get_settings().token_cleanup_days
    if request and request.days_inactive is not None:
        days = request.days_inactive
    count = registry.cleanup_inactive(days)
    return CleanupResponse(days_inactive=days, deactivated_count=count)
