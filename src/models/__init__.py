"""SQLAlchemy models."""

from src.models.push_token import PushToken
from src.models.user import User

__all__ = [
    "User",
    "PushToken",
]
