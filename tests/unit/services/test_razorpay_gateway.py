"""Unit tests for RazorpayGateway - orders, payment verification and webhooks."""

import hashlib
import hmac
import json
from unittest.mock import patch

import httpx
import pytest

from app.core.exceptions import ProviderError, SignatureError
from app.services.payments.base import EventKind
from app.services.payments.razorpay_gateway import RazorpayGateway
from tests.helpers.mock_factories import make_mock_plan, make_mock_user

KEY_SECRET = "rzp_secret"
WEBHOOK_SECRET = "rzp_webhook_secret"


@pytest.fixture
def rzp_settings():
    with patch("app.services.payments.razorpay_gateway.settings") as mock_settings:
        mock_settings.razorpay_enabled = True
        mock_settings.razorpay_api_base = "https://api.razorpay.test/v1"
        mock_settings.razorpay_key_id = "rzp_key"
        mock_settings.razorpay_key_secret = KEY_SECRET
        mock_settings.razorpay_webhook_secret = WEBHOOK_SECRET
        mock_settings.provider_timeout_seconds = 5
        yield mock_settings


def _sign(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def _gateway(handler) -> RazorpayGateway:
    return RazorpayGateway(transport=httpx.MockTransport(handler))


class TestCreateCheckout:
    """Tests for order creation."""

    async def test_creates_order_in_minor_units(self, rzp_settings):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(
                200, json={"id": "order_1", "amount": 18000, "currency": "USD"}
            )

        plan = make_mock_plan("monthly", price_minor_units=18000, currency="USD")
        result = await _gateway(handler).create_checkout(
            make_mock_user(id="user_1"), plan, "s", "c"
        )

        assert seen["path"] == "/v1/orders"
        assert seen["body"]["amount"] == 18000
        assert seen["body"]["notes"] == {"user_id": "user_1", "plan_id": "monthly"}
        assert seen["auth"].startswith("Basic ")
        assert result.order_id == "order_1"
        assert result.amount_minor_units == 18000
        assert result.key_id == "rzp_key"
        assert result.redirect_url is None

    async def test_http_error_becomes_provider_error(self, rzp_settings):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400,
                json={"error": {"code": "BAD_REQUEST_ERROR", "description": "amount too low"}},
            )

        with pytest.raises(ProviderError) as exc_info:
            await _gateway(handler).create_checkout(make_mock_user(), make_mock_plan(), "s", "c")

        assert exc_info.value.provider_code == "BAD_REQUEST_ERROR"
        assert "amount too low" in exc_info.value.detail

    async def test_timeout_becomes_provider_error(self, rzp_settings):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(ProviderError) as exc_info:
            await _gateway(handler).fetch_payment("pay_1")
        assert exc_info.value.provider_code == "timeout"

    async def test_disabled_raises(self, rzp_settings):
        rzp_settings.razorpay_enabled = False
        with pytest.raises(ProviderError, match="not configured"):
            await _gateway(lambda r: httpx.Response(200, json={})).fetch_payment("pay_1")


class TestFetchPayment:
    async def test_maps_payment(self, rzp_settings):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/payments/pay_1"
            return httpx.Response(
                200,
                json={
                    "id": "pay_1",
                    "status": "captured",
                    "amount": 18000,
                    "currency": "usd",
                    "order_id": "order_1",
                    "method": "upi",
                    "notes": {"user_id": "user_1", "plan_id": "monthly"},
                },
            )

        payment = await _gateway(handler).fetch_payment("pay_1")

        assert payment.captured
        assert payment.currency == "USD"
        assert payment.order_id == "order_1"
        assert payment.notes["plan_id"] == "monthly"

    async def test_authorized_is_not_captured(self, rzp_settings):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"id": "pay_1", "status": "authorized", "amount": 1})

        payment = await _gateway(handler).fetch_payment("pay_1")
        assert payment.captured is False


class TestVerifyPayment:
    """Client-side confirmation: HMAC-SHA256 of ``order_id|payment_id``."""

    def test_valid_signature(self, rzp_settings):
        signature = _sign(KEY_SECRET, b"order_1|pay_1")
        assert RazorpayGateway().verify_payment("pay_1", "order_1", signature) is True

    def test_swapped_ids_rejected(self, rzp_settings):
        signature = _sign(KEY_SECRET, b"pay_1|order_1")
        assert RazorpayGateway().verify_payment("pay_1", "order_1", signature) is False

    def test_missing_fields_rejected(self, rzp_settings):
        assert RazorpayGateway().verify_payment("pay_1", "", "sig") is False


class TestWebhooks:
    """Tests for webhook verification and event mapping."""

    def _payload(self, event: str, **entities) -> bytes:
        return json.dumps(
            {"event": event, "payload": {name: {"entity": e} for name, e in entities.items()}}
        ).encode()

    def test_valid_signature_returns_event(self, rzp_settings):
        payload = self._payload("payment.captured", payment={"id": "pay_1"})
        event = RazorpayGateway().verify_webhook(payload, _sign(WEBHOOK_SECRET, payload))
        assert event["event"] == "payment.captured"

    def test_invalid_signature_rejected(self, rzp_settings):
        payload = self._payload("payment.captured", payment={"id": "pay_1"})
        with pytest.raises(SignatureError):
            RazorpayGateway().verify_webhook(payload, _sign("wrong", payload))

    def test_missing_signature_rejected(self, rzp_settings):
        with pytest.raises(SignatureError, match="Missing"):
            RazorpayGateway().verify_webhook(b"{}", "")

    def test_event_id_prefers_header(self):
        gateway = RazorpayGateway()
        assert gateway.event_id({}, b"{}", {"x-razorpay-event-id": "evt_1"}) == "evt_1"
        assert gateway.event_id({}, b"{}", {}) == hashlib.sha256(b"{}").hexdigest()

    def test_payment_captured(self):
        event = json.loads(
            self._payload(
                "payment.captured",
                payment={
                    "id": "pay_1",
                    "order_id": "order_1",
                    "amount": 18000,
                    "currency": "usd",
                    "method": "card",
                    "notes": {"user_id": "user_1", "plan_id": "monthly"},
                },
            )
        )

        parsed = RazorpayGateway().parse_event(event, "evt_1")

        assert parsed.kind == EventKind.PAYMENT_SUCCEEDED
        assert parsed.provider_payment_id == "pay_1"
        assert parsed.order_id == "order_1"
        assert parsed.user_id == "user_1"
        assert parsed.amount_minor_units == 18000
        assert parsed.currency == "USD"

    def test_subscription_payment_events_are_ignored(self):
        event = json.loads(
            self._payload(
                "payment.captured",
                payment={"id": "pay_1", "order_id": "order_1", "invoice_id": "inv_1"},
            )
        )
        assert RazorpayGateway().parse_event(event, "evt_1") is None

    def test_subscription_charged_renews(self):
        event = json.loads(
            self._payload(
                "subscription.charged",
                subscription={
                    "id": "sub_1",
                    "current_start": 1780000000,
                    "current_end": 1790000000,
                    "notes": {"user_id": "user_1", "plan_id": "yearly"},
                },
                payment={"id": "pay_9", "amount": 140000, "currency": "usd"},
            )
        )

        parsed = RazorpayGateway().parse_event(event, "evt_2")

        assert parsed.kind == EventKind.SUBSCRIPTION_RENEWED
        assert parsed.provider_subscription_id == "sub_1"
        assert parsed.provider_payment_id == "pay_9"
        assert parsed.period_end.timestamp() == 1790000000

    @pytest.mark.parametrize(
        ("event_type", "kind"),
        [
            ("subscription.cancelled", EventKind.SUBSCRIPTION_CANCELLED),
            ("subscription.halted", EventKind.SUBSCRIPTION_PAST_DUE),
            ("payment.failed", None),
            ("refund.created", None),
        ],
    )
    def test_event_mapping(self, event_type, kind):
        event = json.loads(self._payload(event_type, subscription={"id": "sub_1"}))
        parsed = RazorpayGateway().parse_event(event, "evt_3")
        assert (parsed.kind if parsed else None) == kind
