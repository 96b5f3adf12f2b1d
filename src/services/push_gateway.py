"""Push gateway client for the Expo push service.

The gateway accepts a batch of addressed messages and answers with one
outcome per message. Only the first, ticket-producing phase of the Expo
protocol is used; delivery receipts are never polled.
"""

import logging
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx

from src.config import Settings, get_settings
from src.models.enums import DeliveryError
from src.services.token_validator import is_valid_address

logger = logging.getLogger(__name__)

# Expo rejects requests with more than 100 messages
EXPO_MAX_BATCH_SIZE = 100


class PushGatewayError(Exception):
    """Base error for push gateway failures."""


class GatewayAuthenticationError(PushGatewayError):
    """The provider rejected our credentials; no message can be sent."""


@dataclass
class PushMessage:
    """One message addressed to a single push token."""

    to: str
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)
    sound: str = "default"
    channel_id: str = "default"
    priority: str = "high"
    ttl: int = 0
    badge: int | None = None
    subtitle: str | None = None
    category_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the Expo message format.

        Optional fields are left out entirely when unset; the provider treats
        their presence as meaningful.
        """
        payload: dict[str, Any] = {
            "to": self.to,
            "title": self.title,
            "body": self.body,
            "data": self.data,
            "sound": self.sound,
            "channelId": self.channel_id,
            "priority": self.priority,
            "ttl": self.ttl,
        }
        if self.badge is not None:
            payload["badge"] = self.badge
        if self.subtitle:
            payload["subtitle"] = self.subtitle
        if self.category_id:
            payload["categoryId"] = self.category_id
        return payload


@dataclass
class Outcome:
    """Result of submitting one message to the gateway."""

    address: str
    ok: bool
    receipt_id: str | None = None
    reason: DeliveryError | None = None
    message: str | None = None

    @classmethod
    def accepted(cls, address: str, receipt_id: str | None) -> "Outcome":
        return cls(address=address, ok=True, receipt_id=receipt_id)

    @classmethod
    def rejected(
        cls, address: str, reason: DeliveryError, message: str | None = None
    ) -> "Outcome":
        return cls(address=address, ok=False, reason=reason, message=message)


def parse_delivery_error(code: str | None) -> DeliveryError:
    """Map a provider error code onto a DeliveryError, defaulting to Other."""
    try:
        return DeliveryError(code)
    except ValueError:
        return DeliveryError.OTHER


def chunk_messages(
    messages: Sequence[PushMessage], size: int
) -> Iterator[tuple[int, Sequence[PushMessage]]]:
    """Split messages into consecutive chunks, yielding each with its offset."""
    for offset in range(0, len(messages), size):
        yield offset, messages[offset : offset + size]


class PushGateway:
    """Abstract push delivery capability.

    Subclasses implement ``submit_chunk`` for at most ``max_batch_size``
    messages. Chunking, ordering and failure isolation live here.
    """

    max_batch_size: int = EXPO_MAX_BATCH_SIZE

    def is_valid_address(self, address: str) -> bool:
        """Check an address with the same rule the registry uses."""
        return is_valid_address(address)

    def submit_chunk(self, messages: Sequence[PushMessage]) -> list[Outcome]:
        """Submit one provider-sized chunk and return its outcomes in order."""
        raise NotImplementedError

    def iter_chunks(
        self, messages: Sequence[PushMessage]
    ) -> Iterator[tuple[int, list[Outcome]]]:
        """Submit messages chunk by chunk, yielding (offset, outcomes) as each completes.

        A chunk that fails as a whole yields an ``Other`` outcome for each of
        its messages, and later chunks are still submitted. Only
        GatewayAuthenticationError propagates.
        """
        for offset, chunk in chunk_messages(messages, self.max_batch_size):
            try:
                outcomes = self.submit_chunk(chunk)
            except GatewayAuthenticationError:
                raise
            except Exception as e:
                logger.warning(f"Push chunk at offset {offset} ({len(chunk)} messages) failed: {e}")
                outcomes = [
                    Outcome.rejected(message.to, DeliveryError.OTHER, str(e)) for message in chunk
                ]
            yield offset, outcomes

    def send_batch(self, messages: Sequence[PushMessage]) -> list[Outcome]:
        """Submit any number of messages; outcome[i] corresponds to messages[i]."""
        outcomes: list[Outcome] = []
        for _, chunk_outcomes in self.iter_chunks(messages):
            outcomes.extend(chunk_outcomes)
        return outcomes


class ExpoPushGateway(PushGateway):
    """Push gateway that talks to the Expo push HTTP API."""

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self.max_batch_size = min(self.settings.push_batch_size, EXPO_MAX_BATCH_SIZE)
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }
        if self.settings.expo_access_token:
            headers["Authorization"] = f"Bearer {self.settings.expo_access_token}"
        return headers

    def submit_chunk(self, messages: Sequence[PushMessage]) -> list[Outcome]:
        with httpx.Client(
            timeout=self.settings.push_request_timeout_seconds,
            transport=self._transport,
        ) as client:
            response = client.post(
                self.settings.expo_push_url,
                json=[message.to_payload() for message in messages],
                headers=self._headers(),
            )

        if response.status_code in (401, 403):
            raise GatewayAuthenticationError(
                f"Expo rejected credentials with HTTP {response.status_code}"
            )
        response.raise_for_status()

        body = response.json()
        if body.get("errors"):
            raise PushGatewayError(f"Expo request error: {body['errors']}")

        tickets = body.get("data")
        if not isinstance(tickets, list) or len(tickets) != len(messages):
            raise PushGatewayError(
                f"Expected {len(messages)} tickets, got "
                f"{len(tickets) if isinstance(tickets, list) else 'none'}"
            )

        return [self._parse_ticket(message, ticket) for message, ticket in zip(messages, tickets)]

    @staticmethod
    def _parse_ticket(message: PushMessage, ticket: dict[str, Any]) -> Outcome:
        if ticket.get("status") == "ok":
            return Outcome.accepted(message.to, ticket.get("id"))

        details = ticket.get("details") or {}
        reason = parse_delivery_error(details.get("error"))
        return Outcome.rejected(message.to, reason, ticket.get("message"))


def get_push_gateway() -> PushGateway:
    """Get the push gateway for the configured provider."""
    return ExpoPushGateway(get_settings())
