"""
Tests for the webhook and poll verifier.

1. MAC computation and verification
2. Webhook: tampered payloads are rejected before any state change
3. Webhook: order lookup by request id, then by buyer email
4. Poll: terminal orders answer without calling the provider
5. Poll: pending orders are resolved through the provider
"""
import pytest

from conftest import WEBHOOK_SALT, FakeGateway, make_order, make_payment, run
from payments.gateway_client import GatewayUnavailable
from payments.webhooks import (
    OrderNotFoundError,
    PaymentVerifier,
    WebhookPayloadError,
    WebhookSignatureError,
    compute_webhook_mac,
    verify_webhook_mac,
)
from schemas.ledger_models import OrderStatus


def signed(payload: dict, secret: str = WEBHOOK_SALT) -> dict:
    payload = dict(payload)
    payload["mac"] = compute_webhook_mac(payload, secret)
    return payload


WEBHOOK = {
    "payment_id": "PAY1",
    "payment_request_id": "REQ1",
    "status": "Credit",
    "amount": "20.00",
    "buyer": "buyer@example.com",
    "currency": "INR",
}


# =============================================================================
# TEST: MAC
# =============================================================================

class TestMac:

    def test_mac_ignores_key_order_and_mac_field(self):
        a = compute_webhook_mac({"b": "2", "a": "1"}, "s")
        b = compute_webhook_mac({"a": "1", "mac": "whatever", "b": "2"}, "s")
        assert a == b

    def test_mac_is_hmac_sha1_over_sorted_values(self):
        import hashlib
        import hmac
        expected = hmac.new(b"s", b"1|2|", hashlib.sha1).hexdigest()
        assert compute_webhook_mac({"b": "2", "a": "1", "c": None}, "s") == expected

    def test_valid_mac_passes_case_insensitively(self):
        payload = signed(WEBHOOK)
        payload["mac"] = payload["mac"].upper()
        verify_webhook_mac(payload, WEBHOOK_SALT, hardened=True)

    def test_missing_mac_rejected(self):
        with pytest.raises(WebhookSignatureError):
            verify_webhook_mac(dict(WEBHOOK), WEBHOOK_SALT, hardened=True)

    def test_missing_secret_rejected_when_hardened(self):
        with pytest.raises(WebhookSignatureError):
            verify_webhook_mac(signed(WEBHOOK), None, hardened=True)

    def test_missing_secret_skipped_in_development(self):
        verify_webhook_mac(dict(WEBHOOK), None, hardened=False)


# =============================================================================
# TEST: WEBHOOK
# =============================================================================

class TestHandleWebhook:

    def test_valid_webhook_fulfills(self, repository, gateway, verifier, email_service):
        run(repository.create_order(make_order()))
        gateway.payments["PAY1"] = make_payment()

        assert run(verifier.handle_webhook(signed(WEBHOOK))) == "SUCCESS"
        assert run(repository.get_order("order_1")).status == OrderStatus.SUCCESS
        assert len(email_service.sent) == 1

    def test_tampered_webhook_changes_nothing(self, repository, gateway, verifier):
        run(repository.create_order(make_order()))
        gateway.payments["PAY1"] = make_payment()
        payload = signed(WEBHOOK)
        payload["amount"] = "1.00"

        with pytest.raises(WebhookSignatureError) as exc:
            run(verifier.handle_webhook(payload))

        assert exc.value.status_code == 403
        assert gateway.calls == []
        assert run(repository.get_order("order_1")).status == OrderStatus.PENDING
        assert run(repository.list_access_codes()) == []
        assert run(repository.recent_events(severity="WARN"))[0]["event_type"] == "FRAUD_SIGNAL"

    def test_missing_request_id(self, verifier):
        payload = signed({k: v for k, v in WEBHOOK.items() if k != "payment_request_id"})
        with pytest.raises(WebhookPayloadError):
            run(verifier.handle_webhook(payload))

    def test_order_found_by_buyer_email(self, repository, gateway, verifier):
        run(repository.create_order(make_order(request_id=None)))
        gateway.payments["PAY1"] = make_payment(request_id="REQ1")

        assert run(verifier.handle_webhook(signed(WEBHOOK))) == "SUCCESS"

    def test_unknown_order(self, verifier):
        with pytest.raises(OrderNotFoundError):
            run(verifier.handle_webhook(signed(WEBHOOK)))

    def test_gateway_outage_acknowledged(self, repository, gateway, verifier):
        run(repository.create_order(make_order()))

        async def unavailable(payment_id):
            raise GatewayUnavailable("down")
        gateway.get_payment = unavailable

        assert run(verifier.handle_webhook(signed(WEBHOOK))) == "GATEWAY_ERROR"
        assert run(repository.get_order("order_1")).status == OrderStatus.PENDING

    def test_development_mode_without_secret(self, repository, gateway, engine):
        verifier = PaymentVerifier(repository, gateway, engine, secret=None, hardened=False)
        run(repository.create_order(make_order()))
        gateway.payments["PAY1"] = make_payment()
        assert run(verifier.handle_webhook(dict(WEBHOOK))) == "SUCCESS"


# =============================================================================
# TEST: POLL
# =============================================================================

class TestVerifyPayment:

    def test_unknown_order(self, verifier):
        with pytest.raises(OrderNotFoundError):
            run(verifier.verify_payment("missing"))

    @pytest.mark.parametrize("status,message", [
        (OrderStatus.EXPIRED, "Payment session expired. Please try again."),
        (OrderStatus.FAILED, "Payment failed."),
    ])
    def test_terminal_orders_skip_provider(self, repository, gateway, verifier, status, message):
        run(repository.create_order(make_order()))
        run(repository.transition_order("order_1", status))

        result = run(verifier.verify_payment("order_1"))
        assert result.payment_status == status.value
        assert result.message == message
        assert gateway.calls == []

    def test_success_order_reports_services(self, repository, gateway, verifier):
        run(repository.create_order(make_order()))
        run(repository.transition_order("order_1", OrderStatus.SUCCESS))

        body = run(verifier.verify_payment("order_1")).to_response()
        assert body == {
            "success": True,
            "paymentStatus": "SUCCESS",
            "message": "Payment verified successfully",
            "services": ["ring", "message"],
        }
        assert gateway.calls == []

    def test_pending_without_payment(self, repository, verifier):
        run(repository.create_order(make_order()))
        result = run(verifier.verify_payment("order_1"))
        assert result.payment_status == "PENDING"
        assert result.message == "Payment is still being processed..."

    def test_pending_with_credited_payment(self, repository, gateway, verifier):
        run(repository.create_order(make_order()))
        gateway.requests["REQ1"] = {
            "id": "REQ1",
            "payments": [
                {"payment_id": "PAY0", "status": "Failed", "amount": "20.00"},
                {"payment_id": "PAY1", "status": "Credit", "amount": "20.00", "payment_request": "REQ1"},
            ],
        }

        result = run(verifier.verify_payment("order_1"))
        assert result.payment_status == "SUCCESS"
        stored = run(repository.get_order("order_1"))
        assert stored.status == OrderStatus.SUCCESS
        assert stored.payment_id == "PAY1"

    def test_mismatch_reported_as_failed(self, repository, gateway, verifier):
        run(repository.create_order(make_order()))
        gateway.requests["REQ1"] = {"payments": [{"payment_id": "PAY1", "status": "Credit", "amount": "5.00"}]}

        body = run(verifier.verify_payment("order_1")).to_response()
        assert body["success"] is False
        assert body["paymentStatus"] == "FAILED"
        assert body["message"] == "Verification failed: AMOUNT_MISMATCH"
        assert run(repository.get_order("order_1")).status == OrderStatus.PENDING

    def test_recorded_failed_payment(self, repository, gateway, verifier):
        run(repository.create_order(make_order(payment_id="PAY9")))
        gateway.payments["PAY9"] = make_payment("PAY9", status="Failed")

        result = run(verifier.verify_payment("order_1"))
        assert result.payment_status == "FAILED"
        assert run(repository.get_order("order_1")).status == OrderStatus.FAILED


def test_fake_gateway_finds_first_credit():
    gateway = FakeGateway()
    gateway.requests["R"] = {"payments": [{"status": "Failed"}, {"status": "Credit", "payment_id": "P"}]}
    assert run(gateway.find_credited_payment("R")).resolved_id == "P"
