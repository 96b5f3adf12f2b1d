"""Tests for the fan-out dispatch engine."""

import logging
from datetime import UTC, datetime
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from src.models.enums import DeliveryError, DeviceClass
from src.models.push_token import PushToken
from src.services.dispatch import (
    AllUsers,
    ByDeviceClass,
    ByUser,
    ByUsers,
    DispatchEngine,
    DispatchReason,
    DispatchStatus,
    DispatchTimeout,
    InvalidNotification,
    Notification,
    send_to_addresses,
)
from src.schemas.notification import DispatchResponse
from src.services.push_gateway import GatewayAuthenticationError
from src.services.token_registry import InvalidDeviceClass


@pytest.fixture
def notification():
    return Notification(title="Hello", body="World", data={"screen": "home"})


def _count(registry, address: str) -> int:
    return registry.get_by_address(address).notification_count


def _raw_token(user_id: str, address: str) -> PushToken:
    """Insert path that skips validation, as rows written before it existed would."""
    return PushToken(
        user_id=user_id,
        token=address,
        device_type=DeviceClass.IOS,
        last_used_at=datetime.now(UTC),
    )


class TestResolution:
    """Tests for turning selectors into targets."""

    def test_no_active_tokens(self, dispatch_engine, gateway, notification):
        """A user without tokens gets a no-targets result and no gateway call."""
        result = dispatch_engine.dispatch(ByUser("ghost"), notification)

        assert result.success is False
        assert result.sent_count == 0
        assert result.error_count == 0
        assert result.reason == DispatchReason.NO_ACTIVE_TOKENS
        assert result.status == DispatchStatus.NO_TARGETS
        assert gateway.call_count == 0

    def test_inactive_tokens_are_not_targeted(
        self, dispatch_engine, registry, gateway, add_token, notification
    ):
        """Deactivated tokens are skipped during resolution."""
        token = add_token("alice")
        registry.deactivate(token.token)

        result = dispatch_engine.dispatch(ByUser("alice"), notification)

        assert result.reason == DispatchReason.NO_ACTIVE_TOKENS
        assert gateway.call_count == 0

    def test_all_users(self, dispatch_engine, gateway, add_token, notification):
        """The broadcast selector reaches every active token."""
        tokens = [add_token("alice"), add_token("bob"), add_token("carol", "web")]

        result = dispatch_engine.dispatch(AllUsers(), notification)

        assert result.sent_count == 3
        assert {m.to for m in gateway.messages} == {t.token for t in tokens}

    def test_by_device_class(self, dispatch_engine, gateway, add_token, notification):
        """Only devices of the requested class are targeted."""
        android = add_token("alice", "android")
        add_token("alice", "ios")

        result = dispatch_engine.dispatch(ByDeviceClass(DeviceClass.ANDROID), notification)

        assert result.sent_count == 1
        assert [m.to for m in gateway.messages] == [android.token]


class TestSend:
    """Tests for message building and reconciliation."""

    def test_single_token_round_trip(self, dispatch_engine, registry, add_token, notification):
        """One accepted message counts once against the token."""
        token = add_token("alice")

        result = dispatch_engine.dispatch(ByUser("alice"), notification)

        assert result.success is True
        assert result.sent_count == 1
        assert result.error_count == 0
        assert result.total_targeted == 1
        assert result.status == DispatchStatus.SENT
        assert result.receipt_ids == [f"receipt-{token.token}"]

        stored = registry.get_by_address(token.token)
        assert stored.notification_count == 1
        assert stored.last_notification_sent_at is not None

    def test_defaults_applied_to_messages(self, dispatch_engine, gateway, add_token, notification):
        """Sound, channel, priority and ttl get defaults; unset optionals are omitted."""
        add_token("alice")

        dispatch_engine.dispatch(ByUser("alice"), notification)

        payload = gateway.messages[0].to_payload()
        assert payload["sound"] == "default"
        assert payload["channelId"] == "default"
        assert payload["priority"] == "high"
        assert payload["ttl"] == 0
        assert payload["data"] == {"screen": "home"}
        assert "subtitle" not in payload
        assert "categoryId" not in payload
        assert "badge" not in payload

    def test_explicit_fields_are_kept(self, dispatch_engine, gateway, add_token):
        """Values supplied on the notification override the defaults."""
        add_token("alice")
        notification = Notification(
            title="Hi",
            body="There",
            sound="chime.wav",
            badge=3,
            channel_id="alerts",
            subtitle="Sub",
            category_id="reply",
            priority="normal",
            ttl=60,
        )

        dispatch_engine.dispatch(ByUser("alice"), notification)

        payload = gateway.messages[0].to_payload()
        assert payload["sound"] == "chime.wav"
        assert payload["badge"] == 3
        assert payload["channelId"] == "alerts"
        assert payload["subtitle"] == "Sub"
        assert payload["categoryId"] == "reply"
        assert payload["priority"] == "normal"
        assert payload["ttl"] == 60

    def test_device_not_registered_deactivates(
        self, dispatch_engine, registry, gateway, add_token, notification
    ):
        """A permanently undeliverable address stops being targeted."""
        token = add_token("alice")
        gateway.fail(token.token, DeliveryError.DEVICE_NOT_REGISTERED)

        result = dispatch_engine.dispatch(ByUser("alice"), notification)

        assert result.success is True
        assert result.sent_count == 0
        assert result.error_count == 1
        assert result.status == DispatchStatus.FAILED
        assert result.errors_by_reason == {"DeviceNotRegistered": 1}
        assert token.token not in {t.token for t in registry.find_all_active()}
        assert _count(registry, token.token) == 0

    @pytest.mark.parametrize(
        "reason",
        [
            DeliveryError.MESSAGE_RATE_EXCEEDED,
            DeliveryError.MESSAGE_TOO_BIG,
            DeliveryError.INVALID_CREDENTIALS,
            DeliveryError.OTHER,
        ],
    )
    def test_other_errors_leave_token_alone(
        self, dispatch_engine, registry, gateway, add_token, notification, reason
    ):
        """Transient or request-shaped failures neither count nor deactivate."""
        token = add_token("alice")
        gateway.fail(token.token, reason)

        result = dispatch_engine.dispatch(ByUser("alice"), notification)

        assert result.error_count == 1
        stored = registry.get_by_address(token.token)
        assert stored.is_active is True
        assert stored.notification_count == 0

    def test_mixed_users_scenario(self, dispatch_engine, registry, gateway, add_token, notification):
        """Two tokens for A, none for B, one rate-limited token for C."""
        a1 = add_token("user-a")
        a2 = add_token("user-a")
        c1 = add_token("user-c")
        gateway.fail(c1.token, DeliveryError.MESSAGE_RATE_EXCEEDED)

        result = dispatch_engine.dispatch(ByUsers(("user-a", "user-b", "user-c")), notification)

        assert len(gateway.messages) == 3
        assert result.sent_count == 2
        assert result.error_count == 1
        assert result.total_targeted == 3
        assert result.status == DispatchStatus.PARTIAL
        assert _count(registry, a1.token) == 1
        assert _count(registry, a2.token) == 1
        assert _count(registry, c1.token) == 0
        assert registry.get_by_address(c1.token).is_active is True

    def test_duplicate_addresses_sent_once(
        self, dispatch_engine, registry, gateway, add_token, notification, monkeypatch
    ):
        """An address resolved twice yields one message and one increment."""
        shared = add_token("alice")
        other = add_token("bob")
        resolved = [shared, other, shared]
        monkeypatch.setattr(registry, "find_active_by_users", lambda user_ids: resolved)

        result = dispatch_engine.dispatch(ByUsers(("alice", "bob")), notification)

        assert [m.to for m in gateway.messages] == [shared.token, other.token]
        assert result.sent_count == 2
        assert result.total_targeted == 2
        assert _count(registry, shared.token) == 1

    def test_invalid_addresses_are_discarded(
        self, dispatch_engine, registry, gateway, add_token, db, notification
    ):
        """Stored addresses that fail validation are excluded and reported."""
        valid = add_token("alice")
        db.add(_raw_token("alice", "legacy-token-format"))
        db.commit()

        result = dispatch_engine.dispatch(ByUser("alice"), notification)

        assert [m.to for m in gateway.messages] == [valid.token]
        assert result.sent_count == 1
        assert result.total_targeted == 2
        assert result.discarded_addresses == ["legacy-token-format"]
        assert _count(registry, "legacy-token-format") == 0

    def test_only_invalid_addresses(self, dispatch_engine, gateway, db, notification):
        """When nothing valid remains the gateway is not contacted."""
        db.add(_raw_token("alice", "garbage"))
        db.commit()

        result = dispatch_engine.dispatch(ByUser("alice"), notification)

        assert result.success is False
        assert result.reason == DispatchReason.NO_VALID_TOKENS
        assert result.discarded_addresses == ["garbage"]
        assert gateway.call_count == 0


class TestFailureIsolation:
    """Tests for partial failures and whole-call faults."""

    def test_unreachable_chunk_isolated(self, registry, add_token, notification, make_gateway):
        """A chunk that cannot be submitted does not stop the others."""
        gateway = make_gateway(max_batch_size=2)
        gateway.failing_chunks = {0}
        engine = DispatchEngine(registry, gateway)
        tokens = [add_token("alice") for _ in range(3)]

        result = engine.dispatch(ByUser("alice"), notification)

        assert gateway.call_count == 2
        assert result.sent_count == 1
        assert result.error_count == 2
        assert result.errors_by_reason == {"Other": 2}
        assert [_count(registry, t.token) for t in tokens] == [0, 0, 1]
        assert all(registry.get_by_address(t.token).is_active for t in tokens)

    def test_registry_failure_does_not_mask_send(
        self, dispatch_engine, registry, add_token, notification, monkeypatch, caplog
    ):
        """Bookkeeping errors are logged and the send result is still reported."""
        add_token("alice")
        add_token("alice")

        def broken_record_send(address):
            raise OperationalError("UPDATE push_tokens", {}, Exception("database is locked"))

        monkeypatch.setattr(registry, "record_send", broken_record_send)

        with caplog.at_level(logging.ERROR, logger="src.services.dispatch"):
            result = dispatch_engine.dispatch(ByUser("alice"), notification)

        assert result.sent_count == 2
        assert result.error_count == 0
        assert len([r for r in caplog.records if r.levelno == logging.ERROR]) == 2

    def test_gateway_auth_failure_propagates(self, registry, gateway, add_token, notification):
        """Rejected provider credentials fail the whole call."""
        add_token("alice")
        gateway.raise_on_submit = GatewayAuthenticationError("bad access token")
        engine = DispatchEngine(registry, gateway)

        with pytest.raises(GatewayAuthenticationError):
            engine.dispatch(ByUser("alice"), notification)

    def test_timeout_keeps_reconciled_outcomes(
        self, registry, add_token, notification, make_gateway
    ):
        """Outcomes learned before the deadline are applied; the rest are reported pending."""
        gateway = make_gateway(max_batch_size=1)
        engine = DispatchEngine(registry, gateway, timeout_seconds=10)
        tokens = [add_token("alice") for _ in range(3)]

        with patch("src.services.dispatch.monotonic", side_effect=[0.0, 5.0, 100.0]):
            with pytest.raises(DispatchTimeout) as exc_info:
                engine.dispatch(ByUser("alice"), notification)

        assert exc_info.value.sent_count == 2
        assert exc_info.value.pending_count == 1
        assert gateway.call_count == 2
        assert [_count(registry, t.token) for t in tokens] == [1, 1, 0]


class TestValidation:
    """Tests for request validation before any gateway contact."""

    @pytest.mark.parametrize(
        "title,body", [("", "World"), ("Hello", ""), ("", "")]
    )
    def test_title_and_body_required(self, dispatch_engine, gateway, add_token, title, body):
        """Missing title or body is rejected up front."""
        add_token("alice")

        with pytest.raises(InvalidNotification):
            dispatch_engine.dispatch(ByUser("alice"), Notification(title=title, body=body))
        assert gateway.call_count == 0

    def test_empty_user_list_rejected(self, dispatch_engine, gateway, notification):
        """A multi-user send needs at least one user."""
        with pytest.raises(InvalidNotification):
            dispatch_engine.dispatch(ByUsers(()), notification)
        assert gateway.call_count == 0

    def test_unknown_device_class_rejected(self, dispatch_engine, gateway, notification):
        """Device class selectors outside ios, android and web are rejected."""
        with pytest.raises(InvalidDeviceClass):
            dispatch_engine.dispatch(ByDeviceClass("desktop"), notification)
        assert gateway.call_count == 0


class TestDispatchResponse:
    """Tests for describing results to API callers."""

    def test_no_valid_tokens_message(self, dispatch_engine, db, notification):
        """Invalid stored addresses are described differently from no tokens at all."""
        db.add(_raw_token("alice", "garbage"))
        db.commit()

        response = DispatchResponse.from_result(
            dispatch_engine.dispatch(ByUser("alice"), notification)
        )

        assert response.status == "no_targets"
        assert response.message == "No valid tokens found"
        assert response.discarded_count == 1

    def test_partial_message(self, dispatch_engine, gateway, add_token, notification):
        """Mixed outcomes report the error count."""
        add_token("alice")
        failing = add_token("alice")
        gateway.fail(failing.token, DeliveryError.MESSAGE_TOO_BIG)

        response = DispatchResponse.from_result(
            dispatch_engine.dispatch(ByUser("alice"), notification)
        )

        assert response.status == "partial"
        assert response.message == "Notifications sent with 1 errors"


class TestSendToAddresses:
    """Tests for sending to raw addresses."""

    def test_splits_valid_and_invalid(self, gateway, notification):
        """Only valid, distinct addresses are submitted."""
        good = "ExponentPushToken[raw-1]"

        result = send_to_addresses(gateway, [good, "bad", good], notification)

        assert result.total_addresses == 3
        assert result.valid_addresses == [good]
        assert result.invalid_addresses == ["bad"]
        assert result.sent_count == 1
        assert result.receipt_ids == [f"receipt-{good}"]

    def test_no_valid_addresses(self, gateway, notification):
        """Nothing valid means nothing sent."""
        with pytest.raises(InvalidNotification):
            send_to_addresses(gateway, ["bad"], notification)
        assert gateway.call_count == 0
