"""
Tests for the HTTP surface.

1. Catalog and payment creation (server-side pricing)
2. Webhook and verify-payment round trips
3. Code redemption and lookup
4. Service-gated push routes
5. Admin authentication and admin operations
6. Rate limits and error envelopes
"""
from conftest import ADMIN_PASSWORD, FakePushTransport, make_code, make_order, make_payment, run
from api.rate_limit import DEFAULT_RULES, RateLimiter, RateLimitRule
from payments.gateway_client import GatewayError, GatewayUnavailable
from payments.webhooks import compute_webhook_mac
from schemas.ledger_models import OrderStatus
from services.push_service import PushService

ADMIN = {"x-admin-password": ADMIN_PASSWORD}
BUYER = {"Authorization": "Bearer good-token"}


def _signed(payload, salt="test-salt"):
    payload = dict(payload)
    payload["mac"] = compute_webhook_mac(payload, salt)
    return payload


# =============================================================================
# TEST: CHECKOUT
# =============================================================================

class TestCheckout:

    def test_health(self, app_client):
        response = app_client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["firebaseReady"] is True
        assert response.headers["X-Request-ID"]
        assert "X-Response-Time-Ms" in response.headers

    def test_services_catalog(self, app_client):
        body = app_client.get("/api/services").json()
        assert [s["id"] for s in body["services"]] == ["ring", "message", "broadcast"]
        assert body["pricePerService"] == 10
        assert body["currency"] == "INR"
        assert body["freeServices"] == [{"id": "statistics", "name": "Statistics & Insights"}]

    def test_create_payment_prices_on_server(self, app_client, gateway, repository):
        response = app_client.post("/api/create-payment", json={
            "email": "Buyer@Example.com",
            "services": ["ring", "message", "ring"],
            "amount": 1,
        })
        body = response.json()

        assert response.status_code == 200
        assert body["amount"] == 20
        assert body["services"] == ["ring", "message"]
        assert body["paymentUrl"] == "https://pay.example.com/REQ1"
        assert gateway.created[0]["amount"] == 20
        assert gateway.created[0]["email"] == "buyer@example.com"
        assert gateway.created[0]["redirect_url"].endswith(f"/success.html?order_id={body['orderId']}")

        order = run(repository.get_order(body["orderId"]))
        assert order.amount == 2000
        assert order.status == OrderStatus.PENDING
        assert order.payment_request_id == "REQ1"

    def test_create_payment_validation(self, app_client, gateway):
        response = app_client.post("/api/create-payment", json={"email": "buyer@example.com", "services": []})
        assert response.status_code == 400
        assert response.json() == {
            "success": False,
            "error": "Validation failed",
            "message": "At least one service must be selected",
        }

        response = app_client.post("/api/create-payment", json={"email": "not-an-email", "services": ["ring"]})
        assert response.json()["message"] == "Invalid email address"
        assert gateway.calls == []

    def test_gateway_rejection_fails_order(self, app_client, gateway, repository):
        gateway.create_error = GatewayError("Amount too low", status_code=400)
        response = app_client.post("/api/create-payment", json={"email": "buyer@example.com", "services": ["ring"]})

        assert response.status_code == 400
        assert response.json()["error"] == "Amount too low"
        assert response.json()["message"] == "Payment gateway error: Amount too low"
        orders = run(repository.list_orders())
        assert orders[0].status == OrderStatus.FAILED

    def test_gateway_outage(self, app_client, gateway):
        gateway.create_error = GatewayUnavailable("timeout")
        response = app_client.post("/api/create-payment", json={"email": "buyer@example.com", "services": ["ring"]})
        assert response.status_code == 503

    def test_gateway_not_configured(self, app_client, gateway):
        gateway._configured = False
        response = app_client.post("/api/create-payment", json={"email": "buyer@example.com", "services": ["ring"]})
        assert response.status_code == 500
        assert response.json()["error"] == "Payment gateway not configured."


# =============================================================================
# TEST: WEBHOOK & POLL
# =============================================================================

WEBHOOK = {
    "payment_id": "PAY1",
    "payment_request_id": "REQ1",
    "status": "Credit",
    "amount": "20.00",
    "buyer": "buyer@example.com",
}


class TestWebhookRoutes:

    def test_form_webhook_fulfills(self, app_client, gateway, repository, email_service):
        run(repository.create_order(make_order()))
        gateway.payments["PAY1"] = make_payment()

        response = app_client.post("/api/payment-webhook", data=_signed(WEBHOOK))
        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Webhook processed", "status": "SUCCESS"}
        assert len(email_service.sent) == 1

    def test_tampered_webhook_forbidden(self, app_client, gateway, repository):
        run(repository.create_order(make_order()))
        gateway.payments["PAY1"] = make_payment()
        payload = _signed(WEBHOOK)
        payload["status"] = "Credit "

        response = app_client.post("/api/payment-webhook", data=payload)
        assert response.status_code == 403
        assert response.json() == {"success": False, "message": "Invalid webhook signature"}
        assert run(repository.get_order("order_1")).status == OrderStatus.PENDING

    def test_webhook_unknown_order(self, app_client):
        response = app_client.post("/api/payment-webhook", json=_signed(WEBHOOK))
        assert response.status_code == 404

    def test_verify_unknown_order(self, app_client):
        response = app_client.post("/api/verify-payment", json={"orderId": "order_missing"})
        assert response.status_code == 200
        assert response.json() == {"success": False, "message": "Order not found"}

    def test_verify_after_webhook(self, app_client, gateway, repository):
        run(repository.create_order(make_order()))
        gateway.payments["PAY1"] = make_payment()
        app_client.post("/api/payment-webhook", data=_signed(WEBHOOK))
        gateway.calls.clear()

        body = app_client.post("/api/verify-payment", json={"orderId": "order_1"}).json()
        assert body["paymentStatus"] == "SUCCESS"
        assert body["services"] == ["ring", "message"]
        assert gateway.calls == []


# =============================================================================
# TEST: ACCESS CODES
# =============================================================================

class TestAccessRoutes:

    def test_validate_code(self, app_client, repository):
        run(repository.create_access_code(make_code()))
        response = app_client.post("/api/validate-code", json={
            "code": "abcdefgh1234", "email": "buyer@example.com", "accountId": "acct-1",
        })
        body = response.json()
        assert body["valid"] is True
        assert body["services"] == ["ring", "statistics"]

        again = app_client.post("/api/validate-code", json={
            "code": "ABCDEFGH1234", "email": "buyer@example.com", "accountId": "acct-2",
        }).json()
        assert again == {"success": False, "valid": False, "message": "This access code has already been used"}

    def test_validate_code_missing_field(self, app_client):
        response = app_client.post("/api/validate-code", json={"email": "buyer@example.com"})
        assert response.status_code == 400
        assert response.json()["message"] == "Missing required field: code"

    def test_get_code_info(self, app_client, repository):
        run(repository.create_access_code(make_code()))
        body = app_client.post("/api/get-code-info", json={"email": "buyer@example.com"}).json()
        assert body["code"] == "ABCDEFGH1234"
        assert body["used"] is False
        assert body["services"] == ["ring", "statistics"]

        missing = app_client.post("/api/get-code-info", json={"email": "nobody@example.com"}).json()
        assert missing["success"] is False

    def test_test_email(self, app_client, email_service):
        body = app_client.post("/api/test-email", json={"email": "buyer@example.com"}).json()
        assert body["success"] is True
        assert email_service.sent[0][1] == "TEST123456"

        email_service.result = False
        response = app_client.post("/api/test-email", json={"email": "buyer@example.com"})
        assert response.status_code == 500


# =============================================================================
# TEST: NOTIFICATIONS
# =============================================================================

RING = {"fcmTopicName": "village_north", "bundleName": "Village", "topicName": "North"}


class TestNotificationRoutes:

    def test_requires_sign_in(self, app_client):
        response = app_client.post("/api/send-ring", json=RING)
        assert response.status_code == 401
        assert response.json()["message"] == "Authentication required. Please sign in with Google."

    def test_requires_access_code(self, app_client):
        response = app_client.post("/api/send-ring", json=RING, headers=BUYER)
        assert response.status_code == 403
        assert response.json()["message"] == "Server access not authorized for this account."

    def test_service_not_purchased(self, app_client, repository):
        run(repository.create_access_code(make_code(services=("message",))))
        response = app_client.post("/api/send-ring", json=RING, headers=BUYER)
        assert response.status_code == 403
        assert response.json()["requiredService"] == "ring"

    def test_ring_sent(self, app_client, repository, push_transport):
        run(repository.create_access_code(make_code(services=("ring",))))
        response = app_client.post("/api/send-ring", json=RING, headers=BUYER)
        assert response.status_code == 200
        assert response.json()["messageId"] == "projects/tlangau/messages/1"
        assert push_transport.sent[0].topic == "village_north"

    def test_ring_missing_fields(self, app_client, repository):
        run(repository.create_access_code(make_code(services=("ring",))))
        response = app_client.post("/api/send-ring", json={"bundleName": "Village"}, headers=BUYER)
        assert response.status_code == 400

    def test_ring_delivery_failure(self, app_client, repository, push_transport):
        run(repository.create_access_code(make_code(services=("ring",))))
        push_transport.fail = True
        response = app_client.post("/api/send-ring", json=RING, headers=BUYER)
        assert response.status_code == 500
        assert response.json()["message"] == "Failed to send ring notification"

    def test_broadcast_needs_broadcast_service(self, app_client, repository, push_transport):
        run(repository.create_access_code(make_code(services=("message",))))
        body = {"fcmTopicNames": ["a", "b"], "bundleName": "Village", "messageText": "hello"}

        assert app_client.post("/api/send-message", json=body, headers=BUYER).status_code == 200
        assert len(push_transport.sent) == 2

        response = app_client.post("/api/send-message", json={**body, "isBroadcast": True}, headers=BUYER)
        assert response.status_code == 403
        assert response.json()["requiredService"] == "broadcast"

    def test_push_not_ready(self, services, repository):
        from fastapi.testclient import TestClient
        from api.server import create_app

        services.push = PushService(FakePushTransport(ready=False))
        with TestClient(create_app(services, start_background_tasks=False)) as client:
            response = client.post("/api/send-ring", json=RING, headers=BUYER)
        assert response.status_code == 503


# =============================================================================
# TEST: ADMIN
# =============================================================================

class TestAdminRoutes:

    def test_password_required(self, app_client):
        response = app_client.get("/api/admin/orders")
        assert response.status_code == 401
        assert response.json() == {"success": False, "error": "Unauthorized", "message": "Admin password required"}

        response = app_client.get("/api/admin/orders", headers={"x-admin-password": "wrong"})
        assert response.json()["message"] == "Invalid admin password"

    def test_password_in_query(self, app_client):
        assert app_client.get(f"/api/admin/statistics?password={ADMIN_PASSWORD}").status_code == 200

    def test_login(self, app_client):
        assert app_client.post("/api/admin/login", json={"password": ADMIN_PASSWORD}).json()["success"] is True
        response = app_client.post("/api/admin/login", json={"password": "nope"})
        assert response.status_code == 401
        assert response.json()["error"] == "Invalid password"

    def test_list_orders_and_codes(self, app_client, repository):
        run(repository.create_order(make_order()))
        run(repository.create_access_code(make_code(order_id="order_1")))

        orders = app_client.get("/api/admin/orders", headers=ADMIN).json()
        assert orders["count"] == 1
        assert orders["orders"][0]["order_id"] == "order_1"

        codes = app_client.get("/api/admin/access-codes", headers=ADMIN).json()
        assert codes["codes"][0]["code"] == "ABCDEFGH1234"

    def test_delete_order_cascades(self, app_client, repository):
        run(repository.create_order(make_order()))
        run(repository.create_access_code(make_code(order_id="order_1")))

        response = app_client.delete("/api/admin/orders/order_1", headers=ADMIN)
        assert response.status_code == 200
        assert run(repository.get_access_code("ABCDEFGH1234")) is None
        assert app_client.delete("/api/admin/orders/order_1", headers=ADMIN).status_code == 404

        events = app_client.get("/api/admin/events?severity=WARN", headers=ADMIN).json()["events"]
        assert events[0]["event_type"] == "ADMIN_ORDER_DELETED"

    def test_delete_code(self, app_client, repository):
        run(repository.create_access_code(make_code()))
        assert app_client.delete("/api/admin/access-codes/abcdefgh1234", headers=ADMIN).status_code == 200
        assert app_client.delete("/api/admin/access-codes/ABCDEFGH1234", headers=ADMIN).status_code == 404

    def test_delete_user(self, app_client, repository):
        run(repository.create_order(make_order()))
        run(repository.create_access_code(make_code(order_id="order_1")))

        body = app_client.delete("/api/admin/users/buyer@example.com", headers=ADMIN).json()
        assert body["deletedOrders"] == 1
        assert body["deletedCodes"] == 1
        assert app_client.delete("/api/admin/users/buyer@example.com", headers=ADMIN).status_code == 404

    def test_resend_email(self, app_client, repository, email_service):
        run(repository.create_order(make_order(status=OrderStatus.SUCCESS)))
        run(repository.create_access_code(make_code(order_id="order_1")))

        body = app_client.post("/api/admin/resend-email", json={"email": "buyer@example.com"}, headers=ADMIN).json()
        assert body["success"] is True
        assert email_service.sent[0][1] == "ABCDEFGH1234"

        response = app_client.post("/api/admin/resend-email", json={"email": "nobody@example.com"}, headers=ADMIN)
        assert response.status_code == 404

    def test_statistics_and_users(self, app_client, repository):
        run(repository.create_order(make_order(status=OrderStatus.SUCCESS)))
        stats = app_client.get("/api/admin/statistics", headers=ADMIN).json()["statistics"]
        assert stats["successfulOrders"] == 1
        assert stats["totalRevenue"] == 20.0

        users = app_client.get("/api/admin/users", headers=ADMIN).json()
        assert users["users"][0]["email"] == "buyer@example.com"

    def test_bundles(self, app_client, repository):
        run(repository.save_bundle("b1", "Village"))
        run(repository.save_topic("b1", "t1", "North", "village_north"))

        bundles = app_client.get("/api/admin/bundles", headers=ADMIN).json()["bundles"]
        assert bundles[0]["topicsCount"] == 1
        assert app_client.delete("/api/admin/bundles/b1/topics/t1", headers=ADMIN).status_code == 200
        assert app_client.delete("/api/admin/bundles/b1/topics/t1", headers=ADMIN).status_code == 404
        assert app_client.delete("/api/admin/bundles/b1", headers=ADMIN).status_code == 200


# =============================================================================
# TEST: LIMITS & ENVELOPES
# =============================================================================

class TestLimitsAndErrors:

    def test_login_rate_limited(self, app_client, services):
        rules = dict(DEFAULT_RULES)
        rules["auth"] = RateLimitRule(2, DEFAULT_RULES["auth"].message)
        services.rate_limiter = RateLimiter(rules)

        for _ in range(2):
            app_client.post("/api/admin/login", json={"password": "nope"})
        response = app_client.post("/api/admin/login", json={"password": ADMIN_PASSWORD})

        assert response.status_code == 429
        assert response.json()["message"] == "Too many login attempts. Please try again later."
        assert int(response.headers["Retry-After"]) > 0

    def test_forwarded_for_ignored_without_proxy(self, app_client, services):
        rules = dict(DEFAULT_RULES)
        rules["auth"] = RateLimitRule(2, DEFAULT_RULES["auth"].message)
        services.rate_limiter = RateLimiter(rules, trust_proxy=False)

        statuses = [
            app_client.post("/api/admin/login", json={"password": "nope"},
                            headers={"x-forwarded-for": f"10.0.0.{i}"}).status_code
            for i in range(4)
        ]
        assert statuses == [401, 401, 429, 429]
        assert len(services.rate_limiter) == 2

    def test_trusted_proxy_uses_appended_address(self, app_client, services):
        rules = dict(DEFAULT_RULES)
        rules["general"] = RateLimitRule(1, DEFAULT_RULES["general"].message)
        services.rate_limiter = RateLimiter(rules, trust_proxy=True)

        first = app_client.get("/api/health", headers={"x-forwarded-for": "1.1.1.1, 10.0.0.9"})
        spoofed = app_client.get("/api/health", headers={"x-forwarded-for": "2.2.2.2, 10.0.0.9"})
        other = app_client.get("/api/health", headers={"x-forwarded-for": "10.0.0.10"})

        assert first.status_code == 200
        assert spoofed.status_code == 429
        assert other.status_code == 200

    def test_undecodable_webhook_body(self, app_client):
        response = app_client.post(
            "/api/payment-webhook",
            content=b"payment_id=\xff\xfe",
            headers={"content-type": "application/x-www-form-urlencoded"},
        )
        assert response.status_code == 400
        assert response.json() == {"success": False, "message": "Invalid form body"}

    def test_unknown_api_route(self, app_client):
        response = app_client.get("/api/does-not-exist")
        assert response.status_code == 404
        assert response.json() == {"success": False, "error": "API endpoint not found"}

    def test_rolled_over_windows_purged(self):
        clock = FakeClock()
        limiter = RateLimiter(clock=clock, max_keys=2)
        limiter.check("auth", "10.0.0.1")
        limiter.check("auth", "10.0.0.2")
        assert len(limiter) == 2

        clock.now += DEFAULT_RULES["auth"].window_seconds
        limiter.check("auth", "10.0.0.3")
        assert len(limiter) == 1


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now
