"""FastAPI dependencies for authentication, database and push services."""

from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from src.config import get_settings
from src.database import get_db
from src.models.user import User
from src.services.auth import decode_access_token
from src.services.dispatch import DispatchEngine
from src.services.push_gateway import PushGateway, get_push_gateway
from src.services.token_registry import TokenRegistry

security = HTTPBearer()


def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
    db: Annotated[Session, Depends(get_db)],
) -> User:
    """Get the current authenticated user from JWT token."""
    token = credentials.credentials
    payload = decode_access_token(token)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("sub")
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = db.query(User).filter(User.id == int(user_id)).first()
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or inactive user",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return user


def require_admin(
    current_user: Annotated[User, Depends(get_current_user)],
) -> User:
    """Require the current user to be an administrator."""
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions",
        )
    return current_user


def get_token_registry(
    db: Annotated[Session, Depends(get_db)],
) -> TokenRegistry:
    """Get token registry bound to the request's session."""
    return TokenRegistry(db)


def get_dispatch_engine(
    registry: Annotated[TokenRegistry, Depends(get_token_registry)],
    gateway: Annotated[PushGateway, Depends(get_push_gateway)],
) -> DispatchEngine:
    """Get dispatch engine with dependencies."""
    return DispatchEngine(
        registry,
        gateway,
        timeout_seconds=get_settings().dispatch_timeout_seconds,
    )
