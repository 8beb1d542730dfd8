"""
API tests for payment, subscription, entitlement, webhook and admin routes.
In-process TestClient; MongoDB replaced by the in-memory double and Stripe
by a mock gateway.
"""
import hashlib
import hmac
import json
import time

import pytest
from unittest.mock import MagicMock, patch

from services.billing_errors import GatewayError

WEBHOOK_SECRET = "whsec_api_secret"


def _sign(payload: bytes) -> str:
    timestamp = int(time.time())
    digest = hmac.new(WEBHOOK_SECRET.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def _event(event_type="payment_intent.succeeded", event_id="evt_1", intent_id="pi_1", amount=2900):
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "livemode": False,
        "data": {"object": {
            "id": intent_id,
            "object": "payment_intent",
            "amount": amount,
            "currency": "eur",
            "metadata": {"user_id": "user-1", "plan_id": "2", "billing_frequency": "monthly"},
        }},
    }).encode()


def _intent(status="succeeded", intent_id="pi_1", amount=2900, user_id="user-1"):
    return {
        "intent_id": intent_id,
        "client_secret": f"{intent_id}_secret_abc",
        "status": status,
        "gateway_status": status,
        "amount": amount,
        "currency": "eur",
        "metadata": {"user_id": user_id},
    }


@pytest.fixture
def gateway():
    gw = MagicMock()
    gw.create_payment_intent.return_value = _intent("requires_confirmation")
    gw.confirm_payment_intent.return_value = _intent("succeeded")
    gw.retrieve_payment_intent.return_value = _intent("succeeded")
    with patch("services.subscription_lifecycle.payment_gateway", gw), \
         patch("routes.payments.payment_gateway", gw):
        yield gw


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_subscriptions_require_auth(client, memory_db):
    response = client.post("/api/subscriptions", json={"planId": 1, "billingFrequency": "monthly"})
    assert response.status_code == 401


def test_invalid_token_rejected(client, memory_db):
    response = client.get("/api/subscription", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


def test_list_plans_with_vat_display(client, memory_db):
    response = client.get("/api/subscription-plans")
    assert response.status_code == 200
    plans = response.json()["plans"]
    assert [p["plan_id"] for p in plans] == [1, 2, 3]
    assert plans[1]["pricing"]["monthly"]["gross"] == "35.38"


def test_get_plan_not_found(client, memory_db):
    response = client.get("/api/subscription-plans/99")
    assert response.status_code == 404
    assert response.json()["error_code"] == "PLAN_NOT_FOUND"


def test_card_subscription_end_to_end_and_retry(client, memory_db, gateway, auth_headers):
    body = {
        "planId": 2,
        "billingFrequency": "monthly",
        "paymentMethod": "credit_card",
        "paymentIntentId": "pi_1",
    }
    first = client.post("/api/subscriptions", json=body, headers=auth_headers())
    assert first.status_code == 200
    data = first.json()
    assert data["status"] == "active"
    assert data["plan_id"] == 2
    assert first.headers["X-Lifecycle-State"] == "done"
    assert first.headers["X-Lifecycle-Amount"] == "2900 eur"
    
    second = client.post("/api/subscriptions", json=body, headers=auth_headers())
    assert second.status_code == 200
    assert second.json() == first.json()
    assert second.headers["X-Lifecycle-Attempt-Id"] != first.headers["X-Lifecycle-Attempt-Id"]
    assert len(memory_db.subscriptions.docs) == 1
    
    current = client.get("/api/subscription", headers=auth_headers()).json()
    current.pop("plan")
    assert current == first.json()


def test_free_plan_subscription(client, memory_db, gateway, auth_headers):
    response = client.post(
        "/api/subscriptions",
        json={"planId": 1, "billingFrequency": "monthly", "paymentMethod": None},
        headers=auth_headers(),
    )
    assert response.status_code == 200
    assert response.json()["status"] == "active"
    gateway.create_payment_intent.assert_not_called()
    
    current = client.get("/api/subscription", headers=auth_headers())
    assert current.status_code == 200
    assert current.json()["plan"]["name"] == "Free"


def test_no_subscription_is_404(client, memory_db, auth_headers):
    response = client.get("/api/subscription", headers=auth_headers("fresh-user"))
    assert response.status_code == 404


@pytest.mark.parametrize("body,status", [
    ({"planId": "abc", "billingFrequency": "monthly"}, 400),
    ({"planId": 99, "billingFrequency": "monthly"}, 404),
    ({"planId": 2, "billingFrequency": "weekly", "paymentMethod": "credit_card"}, 400),
    ({"planId": 2, "billingFrequency": "monthly", "paymentMethod": None}, 400),
    ({"planId": 2, "billingFrequency": "monthly", "paymentMethod": "credit_card"}, 400),
])
def test_subscription_validation_errors(client, memory_db, gateway, auth_headers, body, status):
    response = client.post("/api/subscriptions", json=body, headers=auth_headers())
    assert response.status_code == status
    assert "error" in response.json()
    assert memory_db.subscriptions.docs == []


def test_requires_action_surfaces_client_secret(client, memory_db, gateway, auth_headers):
    gateway.confirm_payment_intent.return_value = _intent("requires_action")
    response = client.post(
        "/api/subscriptions",
        json={
            "planId": 2,
            "billingFrequency": "monthly",
            "paymentMethod": "credit_card",
            "paymentMethodToken": "tok_3ds",
        },
        headers=auth_headers(),
    )
    assert response.status_code == 402
    data = response.json()
    assert data["requires_action"] is True
    assert data["client_secret"] == "pi_1_secret_abc"
    assert memory_db.subscriptions.docs == []


def test_bank_transfer_then_admin_verifies(client, memory_db, gateway, auth_headers):
    response = client.post(
        "/api/subscriptions",
        json={"planId": 3, "billingFrequency": "yearly", "paymentMethod": "bank_transfer"},
        headers=auth_headers(),
    )
    assert response.status_code == 200
    subscription = response.json()
    assert subscription["status"] == "pending_verification"
    
    denied = client.post(
        f"/api/admin/subscriptions/{subscription['subscription_id']}/verify-payment",
        headers=auth_headers(),
    )
    assert denied.status_code == 403
    
    pending = client.get(
        "/api/admin/subscriptions?status=pending_verification",
        headers=auth_headers("admin-1", "ROLE_ADMIN"),
    )
    assert pending.json()["count"] == 1
    
    verified = client.post(
        f"/api/admin/subscriptions/{subscription['subscription_id']}/verify-payment",
        headers=auth_headers("admin-1", "ROLE_ADMIN"),
    )
    assert verified.status_code == 200
    assert verified.json()["subscription"]["status"] == "active"
    
    audit = client.get(
        f"/api/admin/subscriptions/{subscription['subscription_id']}/audit",
        headers=auth_headers("admin-1", "ROLE_ADMIN"),
    )
    actions = [log["action"] for log in audit.json()["audit_logs"]]
    assert "SUBSCRIPTION_PAYMENT_VERIFIED" in actions


def test_plan_change_on_foreign_subscription_forbidden(client, memory_db, gateway, auth_headers):
    created = client.post(
        "/api/subscriptions",
        json={"planId": 1, "billingFrequency": "monthly"},
        headers=auth_headers("owner"),
    ).json()
    response = client.put(
        f"/api/subscriptions/{created['subscription_id']}",
        json={"planId": 2, "billingFrequency": "monthly", "paymentMethod": "bank_transfer"},
        headers=auth_headers("intruder"),
    )
    assert response.status_code == 403
    assert memory_db.subscriptions.docs[0]["plan_id"] == 1


def test_plan_change_with_put(client, memory_db, gateway, auth_headers):
    created = client.post(
        "/api/subscriptions",
        json={"planId": 1, "billingFrequency": "monthly"},
        headers=auth_headers(),
    ).json()
    response = client.put(
        f"/api/subscriptions/{created['subscription_id']}",
        json={
            "planId": 2,
            "billingFrequency": "monthly",
            "paymentMethod": "credit_card",
            "paymentMethodToken": "tok_valid",
        },
        headers=auth_headers(),
    )
    assert response.status_code == 200
    assert response.json()["plan_id"] == 2
    assert response.json()["subscription_id"] == created["subscription_id"]


def test_create_payment_intent(client, memory_db, gateway, auth_headers):
    response = client.post(
        "/api/payment-intents",
        json={
            "amountMinorUnits": 2900,
            "currency": "eur",
            "paymentMethodToken": "tok_valid",
            "planId": 2,
            "billingFrequency": "monthly",
        },
        headers=auth_headers(),
    )
    assert response.status_code == 200
    assert response.json() == {
        "clientSecret": "pi_1_secret_abc",
        "status": "requires_confirmation",
        "intentId": "pi_1",
    }
    metadata = gateway.create_payment_intent.call_args.kwargs["metadata"]
    assert metadata["user_id"] == "user-1"
    assert metadata["plan_id"] == "2"
    assert memory_db.payment_attempts.docs[0]["intent_id"] == "pi_1"


def test_create_payment_intent_amount_must_match_plan(client, memory_db, gateway, auth_headers):
    response = client.post(
        "/api/payment-intents",
        json={"amountMinorUnits": 100, "paymentMethodToken": "tok_valid", "planId": 2},
        headers=auth_headers(),
    )
    assert response.status_code == 400
    gateway.create_payment_intent.assert_not_called()


@pytest.mark.parametrize("body", [
    {"amountMinorUnits": 0, "paymentMethodToken": "tok_valid"},
    {"amountMinorUnits": 2900},
])
def test_create_payment_intent_bad_body_is_400(client, memory_db, gateway, auth_headers, body):
    response = client.post("/api/payment-intents", json=body, headers=auth_headers())
    assert response.status_code == 400
    assert response.json()["error_code"] == "VALIDATION_ERROR"


def test_confirm_payment_intent(client, memory_db, gateway, auth_headers):
    response = client.post(
        "/api/payment-intents/confirm",
        json={"clientSecret": "pi_1_secret_abc"},
        headers=auth_headers(),
    )
    assert response.status_code == 200
    assert response.json() == {"status": "succeeded", "intentId": "pi_1"}


def test_confirm_foreign_intent_rejected(client, memory_db, gateway, auth_headers):
    gateway.retrieve_payment_intent.return_value = _intent(user_id="someone-else")
    response = client.post(
        "/api/payment-intents/confirm",
        json={"clientSecret": "pi_1_secret_abc"},
        headers=auth_headers(),
    )
    assert response.status_code == 400
    gateway.confirm_payment_intent.assert_not_called()


def test_webhook_signature_and_ack(client, memory_db, monkeypatch):
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    payload = _event(event_type="customer.created", event_id="evt_api")
    
    bad = client.post("/api/payment-webhook", content=payload, headers={"Stripe-Signature": "t=1,v1=bad"})
    assert bad.status_code == 400
    assert "error" in bad.json()
    
    ok = client.post("/api/payment-webhook", content=payload, headers={"Stripe-Signature": _sign(payload)})
    assert ok.status_code == 200
    assert ok.json() == {"received": True}


def test_webhook_activation_visible_in_entitlements(client, memory_db, monkeypatch, auth_headers):
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    memory_db.user_permissions.docs.append({"user_id": "user-1", "canViewJobs": False})
    payload = _event()
    response = client.post("/api/payment-webhook", content=payload, headers={"Stripe-Signature": _sign(payload)})
    assert response.json() == {"received": True}
    
    entitlements = client.get("/api/entitlements", headers=auth_headers()).json()
    assert entitlements["plan_id"] == 2
    assert entitlements["computed"]["can_view_jobs"] is True
    assert entitlements["computed"]["can_manage_collaborators"] is False
    
    check = client.get("/api/entitlements/can_view_reports", headers=auth_headers())
    assert check.json() == {"capability": "can_view_reports", "allowed": True}
    assert client.get("/api/entitlements/can_fly", headers=auth_headers()).status_code == 400
    
    permissions = client.get("/api/permissions", headers=auth_headers()).json()
    assert permissions == {"permissions": {"canViewJobs": False}}
    
    config = client.get("/api/plan-configuration", headers=auth_headers()).json()
    assert config["plan_id"] == 2
    assert config["features"]["permissions"]["job.view_all"] is True


def test_admin_reconciliation_flags(client, memory_db, auth_headers):
    memory_db.reconciliation_flags.docs.append({
        "flag_id": "RCF-1",
        "intent_id": "pi_1",
        "user_id": "user-1",
        "plan_id": 2,
        "billing_frequency": "monthly",
        "source": "lifecycle",
        "error": "boom",
        "status": "open",
        "created_at": "2026-01-01T00:00:00+00:00",
    })
    admin = auth_headers("admin-1", "ROLE_ADMIN")
    listed = client.get("/api/admin/reconciliation-flags", headers=admin).json()
    assert listed["count"] == 1
    
    resolved = client.post(
        "/api/admin/reconciliation-flags/RCF-1/resolve",
        json={"note": "activated manually"},
        headers=admin,
    )
    assert resolved.status_code == 200
    assert resolved.json()["flag"]["status"] == "resolved"
    assert client.get("/api/admin/reconciliation-flags", headers=admin).json()["count"] == 0


def test_bank_transfer_keeps_billing_contact_not_card_data(client, memory_db, gateway, auth_headers):
    response = client.post(
        "/api/subscriptions",
        json={
            "planId": 2,
            "billingFrequency": "monthly",
            "paymentMethod": "bank_transfer",
            "paymentInfo": {
                "fullName": "Ana Ruiz",
                "email": "ana@example.com",
                "companyName": "Ruiz SL",
                "vatNumber": "ESB12345678",
                "iban": "ES9121000418450200051332",
                "swift": "CAIXESBBXXX",
                "cardNumber": "4242424242424242",
                "cvc": "123",
            },
        },
        headers=auth_headers(),
    )
    assert response.status_code == 200
    info = response.json()["payment_info"]
    assert info["full_name"] == "Ana Ruiz"
    assert info["iban"] == "ES9121000418450200051332"
    assert "cardNumber" not in info
    assert "card_number" not in info
    assert "cvc" not in info
    
    pending = client.get(
        "/api/admin/subscriptions?status=pending_verification",
        headers=auth_headers("admin-1", "ROLE_ADMIN"),
    ).json()
    assert pending["subscriptions"][0]["payment_info"]["vat_number"] == "ESB12345678"
    assert "4242424242424242" not in json.dumps(memory_db.subscriptions.docs, default=str)


def test_card_subscription_ignores_billing_contact(client, memory_db, gateway, auth_headers):
    response = client.post(
        "/api/subscriptions",
        json={
            "planId": 2,
            "billingFrequency": "monthly",
            "paymentMethod": "credit_card",
            "paymentIntentId": "pi_1",
            "paymentInfo": {"fullName": "Ana Ruiz", "iban": "ES9121000418450200051332"},
        },
        headers=auth_headers(),
    )
    assert response.status_code == 200
    assert response.json()["payment_info"] is None


def test_refused_payment_intent_is_400(client, memory_db, gateway, auth_headers):
    gateway.create_payment_intent.side_effect = GatewayError("Your card was declined.")
    response = client.post(
        "/api/payment-intents",
        json={"amountMinorUnits": 2900, "currency": "eur", "paymentMethodToken": "tok_bad"},
        headers=auth_headers(),
    )
    assert response.status_code == 400
    assert response.json()["error"] == "Your card was declined."
    assert response.json()["error_code"] == "INTENT_REFUSED"
    assert memory_db.payment_attempts.docs == []


def test_subscription_audit_records_transition(client, memory_db, gateway, auth_headers):
    created = client.post(
        "/api/subscriptions",
        json={"planId": 1, "billingFrequency": "monthly"},
        headers=auth_headers(),
    ).json()
    client.put(
        f"/api/subscriptions/{created['subscription_id']}",
        json={"planId": 2, "billingFrequency": "monthly", "paymentMethod": "credit_card", "paymentIntentId": "pi_1"},
        headers=auth_headers(),
    )
    logs = client.get(
        f"/api/admin/subscriptions/{created['subscription_id']}/audit",
        headers=auth_headers("admin-1", "ROLE_ADMIN"),
    ).json()["audit_logs"]
    change = next(log for log in logs if log["action"] == "SUBSCRIPTION_PLAN_CHANGED")
    assert change["transition"]["plan_id"] == {"from": 1, "to": 2}
    assert change["transition"]["payment_intent_id"] == {"from": None, "to": "pi_1"}
    assert "status" not in change["transition"]
