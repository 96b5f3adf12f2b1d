"""Fan-out dispatch of one notification to every resolved device."""

import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import StrEnum
from time import monotonic
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from src.models.enums import DeliveryError, DeviceClass
from src.models.push_token import PushToken
from src.services.push_gateway import Outcome, PushGateway, PushMessage
from src.services.token_registry import TokenRegistry
from src.services.token_validator import is_valid_address, mask_address

logger = logging.getLogger(__name__)


class DispatchError(Exception):
    """Base error for dispatch failures."""


class InvalidNotification(DispatchError):
    """The notification or target selection is malformed."""


class DispatchTimeout(DispatchError):
    """The dispatch deadline passed before every chunk was submitted.

    Outcomes received before the deadline have already been reconciled.
    """

    def __init__(self, sent_count: int, error_count: int, pending_count: int):
        super().__init__(
            f"Dispatch timed out with {pending_count} messages not submitted "
            f"({sent_count} sent, {error_count} errors)"
        )
        self.sent_count = sent_count
        self.error_count = error_count
        self.pending_count = pending_count


# Target selectors


@dataclass(frozen=True)
class ByUser:
    user_id: str

    def describe(self) -> str:
        return f"user {self.user_id}"


@dataclass(frozen=True)
class ByUsers:
    user_ids: tuple[str, ...]

    def describe(self) -> str:
        return f"{len(self.user_ids)} users"


@dataclass(frozen=True)
class AllUsers:
    def describe(self) -> str:
        return "all users"


@dataclass(frozen=True)
class ByDeviceClass:
    device_class: DeviceClass

    def describe(self) -> str:
        return f"{self.device_class.value} devices"


TargetSelector = ByUser | ByUsers | AllUsers | ByDeviceClass


@dataclass
class Notification:
    """Content of a notification, before it is addressed to devices."""

    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)
    sound: str | None = None
    badge: int | None = None
    channel_id: str | None = None
    subtitle: str | None = None
    category_id: str | None = None
    priority: str | None = None
    ttl: int | None = None

    def to_message(self, address: str) -> PushMessage:
        """Address the notification to one device, filling in defaults."""
        return PushMessage(
            to=address,
            title=self.title,
            body=self.body,
            data=self.data or {},
            sound=self.sound or "default",
            channel_id=self.channel_id or "default",
            priority=self.priority or "high",
            ttl=self.ttl or 0,
            badge=self.badge,
            subtitle=self.subtitle,
            category_id=self.category_id,
        )


class DispatchReason(StrEnum):
    """Why a dispatch did not contact the gateway."""

    NO_ACTIVE_TOKENS = "NoActiveTokens"
    NO_VALID_TOKENS = "NoValidTokens"


class DispatchStatus(StrEnum):
    """Overall state of a dispatch, as reported to callers."""

    NO_TARGETS = "no_targets"
    SENT = "sent"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class DispatchResult:
    """Aggregate outcome of one dispatch call."""

    success: bool
    sent_count: int = 0
    error_count: int = 0
    total_targeted: int = 0
    reason: DispatchReason | None = None
    receipt_ids: list[str] = field(default_factory=list)
    discarded_addresses: list[str] = field(default_factory=list)
    errors_by_reason: dict[str, int] = field(default_factory=dict)

    @property
    def status(self) -> DispatchStatus:
        if not self.success:
            return DispatchStatus.NO_TARGETS
        if self.error_count == 0:
            return DispatchStatus.SENT
        if self.sent_count == 0:
            return DispatchStatus.FAILED
        return DispatchStatus.PARTIAL


class DispatchEngine:
    """Resolves targets, submits messages and reconciles token state.

    The registry and gateway are injected so tests can script the gateway's
    outcomes.
    """

    def __init__(
        self,
        registry: TokenRegistry,
        gateway: PushGateway,
        timeout_seconds: float | None = None,
    ):
        self.registry = registry
        self.gateway = gateway
        self.timeout_seconds = timeout_seconds

    def dispatch(self, selector: TargetSelector, notification: Notification) -> DispatchResult:
        """Send a notification to every active device matched by the selector."""
        self._validate(selector, notification)

        tokens = self._resolve(selector)
        if not tokens:
            logger.info(f"No active tokens found for {selector.describe()}")
            return DispatchResult(success=False, reason=DispatchReason.NO_ACTIVE_TOKENS)

        addresses = self._unique_addresses(tokens)
        valid = [address for address in addresses if is_valid_address(address)]
        invalid = [address for address in addresses if not is_valid_address(address)]
        for address in invalid:
            logger.warning(f"Skipping invalid push token: {mask_address(address)}")

        if not valid:
            return DispatchResult(
                success=False,
                total_targeted=len(invalid),
                reason=DispatchReason.NO_VALID_TOKENS,
                discarded_addresses=invalid,
            )

        messages = [notification.to_message(address) for address in valid]
        logger.info(f"Sending {len(messages)} notifications to {selector.describe()}")

        result = DispatchResult(
            success=True,
            total_targeted=len(valid) + len(invalid),
            discarded_addresses=invalid,
        )
        errors_by_reason: Counter[str] = Counter()
        deadline = (
            monotonic() + self.timeout_seconds if self.timeout_seconds is not None else None
        )

        submitted = 0
        for _, outcomes in self.gateway.iter_chunks(messages):
            for outcome in outcomes:
                self._reconcile(outcome, result, errors_by_reason)
            submitted += len(outcomes)
            result.errors_by_reason = dict(errors_by_reason)

            if deadline is not None and submitted < len(messages) and monotonic() > deadline:
                logger.warning(
                    f"Dispatch to {selector.describe()} timed out after {submitted} of "
                    f"{len(messages)} messages"
                )
                raise DispatchTimeout(
                    result.sent_count, result.error_count, len(messages) - submitted
                )

        logger.info(
            f"Dispatch to {selector.describe()}: sent {result.sent_count}, "
            f"errors {result.error_count}"
        )
        return result

    def _validate(self, selector: TargetSelector, notification: Notification) -> None:
        if not notification.title or not notification.body:
            raise InvalidNotification("title and body are required")
        if isinstance(selector, ByUsers) and not selector.user_ids:
            raise InvalidNotification("user_ids cannot be empty")

    def _resolve(self, selector: TargetSelector) -> list[PushToken]:
        if isinstance(selector, ByUser):
            return self.registry.find_active_by_user(selector.user_id)
        if isinstance(selector, ByUsers):
            return self.registry.find_active_by_users(selector.user_ids)
        if isinstance(selector, AllUsers):
            return self.registry.find_all_active()
        if isinstance(selector, ByDeviceClass):
            return self.registry.find_active_by_device_class(selector.device_class)
        raise InvalidNotification(f"Unknown target selector: {selector!r}")

    @staticmethod
    def _unique_addresses(tokens: list[PushToken]) -> list[str]:
        """Addresses in resolution order, first occurrence wins."""
        return list(dict.fromkeys(token.token for token in tokens))

    def _reconcile(
        self, outcome: Outcome, result: DispatchResult, errors_by_reason: Counter[str]
    ) -> None:
        if outcome.ok:
            result.sent_count += 1
            if outcome.receipt_id:
                result.receipt_ids.append(outcome.receipt_id)
            self._apply(self.registry.record_send, outcome.address)
            return

        result.error_count += 1
        reason = outcome.reason or DeliveryError.OTHER
        errors_by_reason[reason.value] += 1
        logger.warning(
            f"Push to {mask_address(outcome.address)} failed: {reason.value}"
            + (f" ({outcome.message})" if outcome.message else "")
        )
        if reason.is_permanent:
            self._apply(self.registry.deactivate, outcome.address)

    @staticmethod
    def _apply(mutation, address: str) -> None:
        """Run a registry update, logging rather than raising on failure."""
        try:
            mutation(address)
        except SQLAlchemyError as e:
            logger.error(f"Failed to update token {mask_address(address)} after send: {e}")


@dataclass
class DirectSendResult:
    """Outcome of sending to caller-supplied addresses."""

    total_addresses: int
    valid_addresses: list[str]
    invalid_addresses: list[str]
    outcomes: list[Outcome] = field(default_factory=list)

    @property
    def sent_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.ok)

    @property
    def error_count(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.ok)

    @property
    def receipt_ids(self) -> list[str]:
        return [outcome.receipt_id for outcome in self.outcomes if outcome.receipt_id]


def send_to_addresses(
    gateway: PushGateway, addresses: list[str], notification: Notification
) -> DirectSendResult:
    """Send a notification to raw addresses without consulting or updating the registry.

    Raises InvalidNotification when content is missing or no address is valid.
    """
    if not notification.title or not notification.body:
        raise InvalidNotification("title and body are required")
    if not addresses:
        raise InvalidNotification("tokens cannot be empty")

    unique = list(dict.fromkeys(addresses))
    valid = [address for address in unique if is_valid_address(address)]
    invalid = [address for address in unique if not is_valid_address(address)]
    if not valid:
        raise InvalidNotification("No valid Expo push tokens found")

    logger.info(f"Sending {len(valid)} direct notifications, skipping {len(invalid)} invalid")
    outcomes = gateway.send_batch([notification.to_message(address) for address in valid])
    return DirectSendResult(
        total_addresses=len(addresses),
        valid_addresses=valid,
        invalid_addresses=invalid,
        outcomes=outcomes,
    )
