"""Push token registry backed by the push_tokens table."""

import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from sqlalchemy import case, func
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.models.enums import DeviceClass
from src.models.push_token import PushToken
from src.services.token_validator import is_valid_address, mask_address

logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_DAYS = 30
RECENTLY_ACTIVE_DAYS = 7

DEVICE_INFO_FIELDS = ("brand", "model_name", "os_version", "app_version")

_UPSERT_INSERTS = {
    "postgresql": postgresql_insert,
    "sqlite": sqlite_insert,
}


class TokenRegistryError(Exception):
    """Base error for token registry operations."""


class InvalidAddress(TokenRegistryError):
    """The push address is not a well-formed Expo push token."""

    def __init__(self, address: str):
        super().__init__("Invalid Expo push token format")
        self.address = address


class InvalidDeviceClass(TokenRegistryError):
    """The device class is not one of ios, android or web."""

    def __init__(self, device_class: str):
        super().__init__("Device type must be ios, android, or web")
        self.device_class = device_class


class TokenNotFound(TokenRegistryError):
    """No push token exists with the given id."""

    def __init__(self, token_id: int):
        super().__init__("Token not found")
        self.token_id = token_id


@dataclass
class DeviceClassStats:
    """Active token counts for one device class."""

    device_type: DeviceClass
    count: int
    avg_notifications: float


@dataclass
class TokenStats:
    """Aggregate statistics over all registered tokens."""

    total_count: int = 0
    active_count: int = 0
    total_notifications_sent: int = 0
    avg_notifications_per_token: float = 0.0
    recently_active_count: int = 0
    device_breakdown: list[DeviceClassStats] = field(default_factory=list)


def parse_device_class(device_class: "str | DeviceClass") -> DeviceClass:
    """Convert a raw device class into the enum, raising InvalidDeviceClass."""
    parsed = DeviceClass.parse(device_class)
    if parsed is None:
        raise InvalidDeviceClass(str(device_class))
    return parsed


class TokenRegistry:
    """Queries and mutations for registered push tokens.

    Every mutation is a single statement followed by a commit, so writes to a
    row are atomic without any lock held across the registry. Counters are
    incremented in SQL rather than on a loaded copy.
    """

    def __init__(self, db: Session):
        self.db = db

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        try:
            yield
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

    def _upsert_insert(self):
        dialect = self.db.get_bind().dialect.name
        try:
            return _UPSERT_INSERTS[dialect]
        except KeyError:
            raise NotImplementedError(f"Token upsert is not supported on {dialect}") from None

    def upsert_token(
        self,
        user_id: str,
        address: str,
        device_class: "str | DeviceClass",
        device_info: dict | None = None,
    ) -> PushToken:
        """Register a push address, or refresh the existing registration.

        Re-registering an address moves it to the given user and device class,
        reactivates it and resets last_used_at. Device info fields that are
        supplied overwrite the stored ones; omitted fields are kept.
        """
        if not is_valid_address(address):
            raise InvalidAddress(address)
        device_type = parse_device_class(device_class)

        now = datetime.now(UTC)
        info = {
            key: value
            for key, value in (device_info or {}).items()
            if key in DEVICE_INFO_FIELDS and value is not None
        }

        insert = self._upsert_insert()
        stmt = insert(PushToken).values(
            user_id=str(user_id),
            token=address,
            device_type=device_type,
            is_active=True,
            last_used_at=now,
            notification_count=0,
            **info,
        )
        update_set = {
            "user_id": stmt.excluded.user_id,
            "device_type": stmt.excluded.device_type,
            "is_active": True,
            "last_used_at": now,
            "updated_at": func.now(),
        }
        for key in info:
            update_set[key] = stmt.excluded[key]
        stmt = stmt.on_conflict_do_update(index_elements=[PushToken.token], set_=update_set)

        with self._transaction():
            self.db.execute(stmt)

        logger.info(f"Registered {device_type.value} token {mask_address(address)} for user {user_id}")
        return self.get_by_address(address)

    def get_by_address(self, address: str) -> PushToken | None:
        """Get a token by its push address."""
        return self.db.query(PushToken).filter(PushToken.token == address).first()

    def get_by_id(self, token_id: int) -> PushToken | None:
        """Get a token by its primary key."""
        return self.db.query(PushToken).filter(PushToken.id == token_id).first()

    def _active(self):
        return self.db.query(PushToken).filter(PushToken.is_active.is_(True))

    def find_active_by_user(self, user_id: str) -> list[PushToken]:
        """Get all active tokens owned by a user."""
        return self._active().filter(PushToken.user_id == str(user_id)).order_by(PushToken.id).all()

    def find_active_by_users(self, user_ids: Iterable[str]) -> list[PushToken]:
        """Get active tokens for any of the given users.

        Addresses are unique per row, so the union holds no duplicates.
        """
        ids = list({str(user_id) for user_id in user_ids})
        if not ids:
            return []
        return self._active().filter(PushToken.user_id.in_(ids)).order_by(PushToken.id).all()

    def find_all_active(self) -> list[PushToken]:
        """Get every active token."""
        return self._active().order_by(PushToken.id).all()

    def find_active_by_device_class(self, device_class: "str | DeviceClass") -> list[PushToken]:
        """Get active tokens registered from one device class."""
        device_type = parse_device_class(device_class)
        return (
            self._active()
            .filter(PushToken.device_type == device_type)
            .order_by(PushToken.id)
            .all()
        )

    def list_for_user(self, user_id: str) -> list[PushToken]:
        """Get a user's active tokens, most recently used first."""
        return (
            self._active()
            .filter(PushToken.user_id == str(user_id))
            .order_by(PushToken.last_used_at.desc())
            .all()
        )

    def deactivate(self, address: str) -> bool:
        """Mark an address inactive.

        Idempotent. Returns False only when no token has this address.
        """
        with self._transaction():
            matched = (
                self.db.query(PushToken)
                .filter(PushToken.token == address)
                .update({PushToken.is_active: False}, synchronize_session=False)
            )
        if matched:
            logger.info(f"Deactivated token {mask_address(address)}")
        return bool(matched)

    def deactivate_by_id(self, token_id: int) -> PushToken:
        """Mark a token inactive by id."""
        token = self.get_by_id(token_id)
        if token is None:
            raise TokenNotFound(token_id)
        self.deactivate(token.token)
        self.db.refresh(token)
        return token

    def record_send(self, address: str) -> bool:
        """Count one accepted notification against an address.

        Returns False when the address is unknown.
        """
        with self._transaction():
            matched = (
                self.db.query(PushToken)
                .filter(PushToken.token == address)
                .update(
                    {
                        PushToken.notification_count: PushToken.notification_count + 1,
                        PushToken.last_notification_sent_at: datetime.now(UTC),
                    },
                    synchronize_session=False,
                )
            )
        return bool(matched)

    def update_preferences(
        self,
        token_id: int,
        allow_notifications: bool | None = None,
        allow_sound: bool | None = None,
        allow_vibration: bool | None = None,
    ) -> PushToken:
        """Update the delivery preferences that were supplied."""
        token = self.get_by_id(token_id)
        if token is None:
            raise TokenNotFound(token_id)

        changes = {}
        if allow_notifications is not None:
            changes[PushToken.allow_notifications] = allow_notifications
        if allow_sound is not None:
            changes[PushToken.allow_sound] = allow_sound
        if allow_vibration is not None:
            changes[PushToken.allow_vibration] = allow_vibration

        if changes:
            with self._transaction():
                self.db.query(PushToken).filter(PushToken.id == token_id).update(
                    changes, synchronize_session=False
                )
            self.db.refresh(token)
        return token

    def cleanup_inactive(
        self, days_threshold: int = DEFAULT_CLEANUP_DAYS, now: datetime | None = None
    ) -> int:
        """Deactivate active tokens not used for more than ``days_threshold`` days.

        Returns the number of tokens deactivated. The sweep is a single UPDATE
        so it can run alongside registrations and dispatches.
        """
        cutoff = (now or datetime.now(UTC)) - timedelta(days=days_threshold)
        with self._transaction():
            count = (
                self.db.query(PushToken)
                .filter(PushToken.is_active.is_(True), PushToken.last_used_at < cutoff)
                .update({PushToken.is_active: False}, synchronize_session=False)
            )
        logger.info(f"Deactivated {count} tokens inactive for {days_threshold} days")
        return count

    def aggregate_stats(self, now: datetime | None = None) -> TokenStats:
        """Compute token and notification totals."""
        total, active, total_sent, avg_sent = self.db.query(
            func.count(PushToken.id),
            func.coalesce(func.sum(case((PushToken.is_active.is_(True), 1), else_=0)), 0),
            func.coalesce(func.sum(PushToken.notification_count), 0),
            func.avg(PushToken.notification_count),
        ).one()

        count_col = func.count(PushToken.id)
        breakdown_rows = (
            self.db.query(
                PushToken.device_type,
                count_col,
                func.avg(PushToken.notification_count),
            )
            .filter(PushToken.is_active.is_(True))
            .group_by(PushToken.device_type)
            .order_by(count_col.desc())
            .all()
        )

        recent_cutoff = (now or datetime.now(UTC)) - timedelta(days=RECENTLY_ACTIVE_DAYS)
        recently_active = (
            self._active().filter(PushToken.last_used_at >= recent_cutoff).count()
        )

        return TokenStats(
            total_count=int(total),
            active_count=int(active),
            total_notifications_sent=int(total_sent),
            avg_notifications_per_token=float(avg_sent or 0),
            recently_active_count=recently_active,
            device_breakdown=[
                DeviceClassStats(
                    device_type=device_type,
                    count=int(count),
                    avg_notifications=float(avg or 0),
                )
                for device_type, count, avg in breakdown_rows
            ],
        )
