"""HTTP surface tests: routing, auth seams and the normalized error contract."""

import jwt
from fastapi.testclient import TestClient

from marketbill.core.config import settings
from marketbill.features.billing import payments as payment_store
from marketbill.main import app
from marketbill.tests.mocks import VALID_SIGNATURE, TEST_ADMIN_KEY, stripe_event


SELLER = {"X-User-Id": "seller_1"}
ADMIN = {"X-Admin-Key": TEST_ADMIN_KEY}


def test_healthz():
    client = TestClient(app)
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_readyz_reports_tables():
    client = TestClient(app)
    resp = client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json()["db"] is True


def test_startup_prepares_the_database_the_engine_uses(monkeypatch):
    calls = []
    monkeypatch.setattr(settings, "DATABASE_URL", None)
    monkeypatch.setattr(settings, "SWEEP_ENABLED", False)
    monkeypatch.setenv("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")
    monkeypatch.setattr("marketbill.main.create_all_tables", lambda: calls.append("create"))

    with TestClient(app) as client:
        assert client.get("/healthz").status_code == 200

    assert calls == ["create"]


def test_plans_for_role_in_camel_case(make_plan):
    make_plan(name="Basic", price=0)
    make_plan(name="Pro", price=19.99, features={"featured_listings_count": 3})
    client = TestClient(app)

    resp = client.get("/api/subscriptions/plans", params={"role": "ecommerceSeller"})

    assert resp.status_code == 200
    plans = resp.json()["plans"]
    assert [p["name"] for p in plans] == ["Basic", "Pro"]
    assert plans[1]["features"]["featuredListingsCount"] == 3
    assert plans[1]["targetRole"] == "both"


def test_invalid_role_has_standard_error_shape():
    client = TestClient(app)
    resp = client.get("/api/subscriptions/plans", params={"role": "buyer"})

    assert resp.status_code == 400
    body = resp.json()
    rid = resp.headers.get("x-request-id")
    assert body["error"]["code"] == "invalid_role"
    assert body["error"]["request_id"] == rid


def test_missing_identity_is_unauthorized(make_plan):
    plan = make_plan(name="Basic", price=0)
    client = TestClient(app)

    resp = client.post("/api/subscriptions/subscribe", json={"planId": plan.plan_id, "role": "ecommerceSeller"})

    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"


def test_bearer_token_identifies_caller(make_user, make_plan, monkeypatch):
    monkeypatch.setattr(settings, "AUTH_JWT_SECRET", "jwt-test-secret-0123456789abcdef0123")
    make_user("seller_1")
    plan = make_plan(name="Basic", price=0)
    token = jwt.encode({"sub": "seller_1"}, "jwt-test-secret-0123456789abcdef0123", algorithm="HS256")
    client = TestClient(app)

    resp = client.post(
        "/api/subscriptions/subscribe",
        headers={"Authorization": f"Bearer {token}"},
        json={"planId": plan.plan_id, "role": "ecommerceSeller"},
    )

    assert resp.status_code == 201
    assert resp.json()["subscription"]["userId"] == "seller_1"


def test_user_id_header_refused_in_production(make_plan, monkeypatch):
    monkeypatch.setattr(settings, "ENV", "production")
    plan = make_plan(name="Basic", price=0)
    client = TestClient(app)

    resp = client.post(
        "/api/subscriptions/subscribe",
        headers=SELLER,
        json={"planId": plan.plan_id, "role": "ecommerceSeller"},
    )

    assert resp.status_code == 401


def test_free_subscribe_then_mine_then_cancel(make_user, make_plan):
    make_user("seller_1")
    plan = make_plan(name="Basic", price=0)
    client = TestClient(app)

    created = client.post(
        "/api/subscriptions/subscribe",
        headers=SELLER,
        json={"planId": plan.plan_id, "role": "ecommerceSeller"},
    )
    assert created.status_code == 201
    assert created.json()["subscription"]["status"] == "active"

    mine = client.get("/api/subscriptions/mine", headers=SELLER, params={"role": "ecommerceSeller"})
    assert mine.json()["subscription"]["plan"]["name"] == "Basic"

    cancelled = client.post("/api/subscriptions/cancel", headers=SELLER, json={"role": "ecommerceSeller"})
    assert cancelled.status_code == 200
    assert cancelled.json()["subscription"]["autoRenew"] is False

    mine = client.get("/api/subscriptions/mine", headers=SELLER, params={"role": "ecommerceSeller"})
    assert mine.json() == {"subscription": None}


def test_paid_subscribe_requires_payment(make_user, make_plan):
    make_user("seller_1")
    plan = make_plan(name="Pro", price=19.99)
    client = TestClient(app)

    resp = client.post(
        "/api/subscriptions/subscribe",
        headers=SELLER,
        json={"planId": plan.plan_id, "role": "ecommerceSeller"},
    )

    assert resp.status_code == 402
    body = resp.json()
    assert body["requiresPayment"] is True
    assert body["error"]["code"] == "payment_required"


def test_intent_then_webhook_activates(make_user, make_plan, provider):
    make_user("seller_1")
    plan = make_plan(name="Pro", price=19.99)
    client = TestClient(app)

    intent = client.post(
        "/api/subscriptions/intent",
        headers=SELLER,
        json={"planId": plan.plan_id, "role": "ecommerceSeller"},
    )
    assert intent.status_code == 200
    body = intent.json()
    assert body["freePlan"] is False
    assert body["clientSecret"] == "pi_test_1_secret"

    hook = client.post(
        "/api/webhooks/payments",
        headers={"stripe-signature": VALID_SIGNATURE},
        content=stripe_event("payment_intent.succeeded", body["intentId"]),
    )
    assert hook.status_code == 200
    assert hook.json() == {"received": True, "status": "processed"}

    mine = client.get("/api/subscriptions/mine", headers=SELLER, params={"role": "ecommerceSeller"})
    assert mine.json()["subscription"]["plan"]["name"] == "Pro"


def test_free_intent_signals_free_plan(make_user, make_plan, provider):
    make_user("seller_1")
    plan = make_plan(name="Basic", price=0)
    client = TestClient(app)

    resp = client.post(
        "/api/subscriptions/intent",
        headers=SELLER,
        json={"planId": plan.plan_id, "role": "ecommerceSeller"},
    )

    assert resp.json()["freePlan"] is True
    assert provider.intents == []


def test_webhook_bad_signature(provider):
    client = TestClient(app)

    resp = client.post(
        "/api/webhooks/payments",
        headers={"stripe-signature": "bogus"},
        content=stripe_event("payment_intent.succeeded", "pi_x"),
    )

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_signature"


def test_feature_and_featured_listing(make_user, make_plan, make_subscription, make_listing):
    make_user("seller_1")
    plan = make_plan(name="Pro", price=19.99, features={"featured_listings_count": 1})
    make_subscription("seller_1", plan.plan_id)
    make_listing("p1")
    make_listing("p2")
    client = TestClient(app)

    first = client.post(
        "/api/listings/feature",
        headers=SELLER,
        json={"itemId": "p1", "itemType": "product", "duration": 7},
    )
    assert first.status_code == 201
    assert first.json()["featuredListing"]["priorityScore"] == 10

    second = client.post("/api/listings/feature", headers=SELLER, json={"itemId": "p2", "itemType": "product"})
    assert second.status_code == 409
    assert second.json()["error"]["code"] == "quota_exceeded"

    listed = client.get("/api/listings/featured", params={"itemType": "product"})
    assert [f["itemId"] for f in listed.json()["featuredListings"]] == ["p1"]


def test_boost_denied_without_plan_feature(make_user, make_plan, make_subscription, make_listing):
    make_user("seller_1")
    plan = make_plan(name="Pro", price=19.99)
    make_subscription("seller_1", plan.plan_id)
    make_listing("p1")
    client = TestClient(app)

    resp = client.post("/api/listings/boost", headers=SELLER, json={"itemId": "p1", "itemType": "product"})

    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "boost_not_included"


class TestAdmin:

    def test_requires_admin_key(self):
        client = TestClient(app)

        missing = client.get("/api/admin/subscriptions/plans")
        wrong = client.get("/api/admin/subscriptions/plans", headers={"X-Admin-Key": "nope"})

        assert missing.status_code == 403
        assert wrong.status_code == 403
        assert missing.json()["error"]["code"] == "admin_auth_required"

    def test_plan_crud(self):
        client = TestClient(app)

        created = client.post(
            "/api/admin/subscriptions/plans",
            headers=ADMIN,
            json={"name": "Pro", "targetRole": "both", "price": 9.5, "features": {"featuredListingsCount": 3}},
        )
        assert created.status_code == 201
        plan = created.json()["plan"]
        assert plan["durationDays"] == 30

        updated = client.put(
            f"/api/admin/subscriptions/plans/{plan['planId']}",
            headers=ADMIN,
            json={"features": {"boostedVisibility": True}},
        )
        features = updated.json()["plan"]["features"]
        assert features["boostedVisibility"] is True
        assert features["featuredListingsCount"] == 3

        deleted = client.delete(f"/api/admin/subscriptions/plans/{plan['planId']}", headers=ADMIN)
        assert deleted.status_code == 200
        assert client.get("/api/admin/subscriptions/plans", headers=ADMIN).json() == {"plans": []}

    def test_delete_plan_with_active_subscribers_conflicts(self, make_user, make_plan, make_subscription):
        make_user("seller_1")
        plan = make_plan(name="Pro", price=19.99)
        make_subscription("seller_1", plan.plan_id)
        client = TestClient(app)

        resp = client.delete(f"/api/admin/subscriptions/plans/{plan.plan_id}", headers=ADMIN)

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "plan_has_active_subscriptions"

    def test_override_and_list(self, make_user, make_plan, make_subscription):
        make_user("seller_1")
        plan = make_plan(name="Pro", price=19.99)
        sub_id = make_subscription("seller_1", plan.plan_id)
        client = TestClient(app)

        resp = client.put(
            f"/api/admin/subscriptions/users/{sub_id}",
            headers=ADMIN,
            json={"status": "cancelled"},
        )
        assert resp.status_code == 200
        assert resp.json()["subscription"]["status"] == "cancelled"

        listed = client.get("/api/admin/subscriptions/users", headers=ADMIN, params={"status": "cancelled"})
        body = listed.json()
        assert body["pagination"]["total"] == 1
        assert body["subscriptions"][0]["subscriptionId"] == sub_id

    def test_analytics_and_payments(self, make_user, make_plan, make_subscription, provider):
        make_user("seller_1")
        plan = make_plan(name="Pro", price=20.0)
        make_subscription("seller_1", plan.plan_id)
        client = TestClient(app)
        client.post(
            "/api/subscriptions/intent",
            headers=SELLER,
            json={"planId": plan.plan_id, "role": "realEstateSeller"},
        )

        analytics = client.get("/api/admin/subscriptions/analytics", headers=ADMIN).json()["analytics"]
        assert analytics["overview"]["activeSubscriptions"] == 1
        assert analytics["overview"]["totalRevenue"] == 20.0
        assert analytics["subscriptionsByPlan"] == [{"planName": "Pro", "count": 1}]

        pending = client.get("/api/admin/subscriptions/payments", headers=ADMIN, params={"status": "pending"})
        assert [p["intentId"] for p in pending.json()["payments"]] == ["pi_test_1"]
        assert payment_store.get_by_intent("pi_test_1").role == "realEstateSeller"

    def test_manual_sweep(self, make_user, make_plan, make_subscription):
        make_user("seller_1")
        plan = make_plan(name="Pro", price=19.99)
        make_subscription("seller_1", plan.plan_id, days_left=-1)
        client = TestClient(app)

        resp = client.post("/api/admin/subscriptions/sweep", headers=ADMIN)

        assert resp.json() == {"expiringCount": 0, "expiredCount": 1, "skipped": False}


def test_malformed_body_is_a_validation_error(make_user):
    make_user("seller_1")
    client = TestClient(app)

    resp = client.post("/api/subscriptions/subscribe", headers=SELLER, json={"role": "ecommerceSeller"})

    assert resp.status_code == 400
    body = resp.json()
    assert body["error"]["code"] == "validation_error"
    assert "planId" in body["error"]["message"]


def test_request_id_is_echoed_when_well_formed():
    client = TestClient(app)

    kept = client.get("/healthz", headers={"x-request-id": "req-12345678"})
    replaced = client.get("/healthz", headers={"x-request-id": "<script>"})

    assert kept.headers["x-request-id"] == "req-12345678"
    assert replaced.headers["x-request-id"] != "<script>"
