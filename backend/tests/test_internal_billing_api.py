from __future__ import annotations

from tenantsync.models.billing import StripeCustomer
from tenantsync.models.directory import Organization
from tenantsync.services import stripe as stripe_module

SUBSCRIPTION = {
    "id": "sub_1",
    "status": "trialing",
    "cancel_at_period_end": False,
    "cancel_at": None,
    "items": {"data": [{"price": {"id": "price_pro_year"}, "current_period_end": 1_762_592_000}]},
}


def _fake_list(self, customer_id):
    return [SUBSCRIPTION] if customer_id == "cus_acme" else []


def test_internal_routes_require_token(client):
    resp = client.get("/internal/billing/organizations/org_acme/deletion-check")
    assert resp.status_code == 401
    assert resp.json()["error"] == "UNAUTHORIZED"

    resp = client.get(
        "/internal/billing/organizations/org_acme/deletion-check",
        headers={"x-internal-token": "wrong"},
    )
    assert resp.status_code == 401


def test_post_checkout_sync_by_customer(client, internal_headers, stripe_customer, monkeypatch):
    monkeypatch.setattr(stripe_module.StripeService, "list_subscriptions", _fake_list, raising=False)

    resp = client.post("/internal/billing/sync", json={"customer_id": "cus_acme"}, headers=internal_headers)

    assert resp.status_code == 200
    body = resp.json()
    assert body["linked"] is True
    assert body["customer_id"] == "cus_acme"
    assert [s["stripe_subscription_id"] for s in body["subscriptions"]] == ["sub_1"]
    assert body["subscriptions"][0]["tier"] == "pro"
    assert body["subscriptions"][0]["billing_interval"] == "year"


def test_post_checkout_sync_by_session(client, internal_headers, stripe_customer, monkeypatch):
    monkeypatch.setattr(stripe_module.StripeService, "list_subscriptions", _fake_list, raising=False)
    monkeypatch.setattr(
        stripe_module.StripeService,
        "retrieve_checkout_session",
        lambda self, session_id: {"id": session_id, "customer": "cus_acme"},
        raising=False,
    )

    resp = client.post("/internal/billing/sync", json={"checkout_session_id": "cs_123"}, headers=internal_headers)

    assert resp.status_code == 200
    assert resp.json()["customer_id"] == "cus_acme"


def test_post_checkout_sync_for_unlinked_customer(client, internal_headers, db_session, monkeypatch):
    monkeypatch.setattr(stripe_module.StripeService, "list_subscriptions", _fake_list, raising=False)

    resp = client.post("/internal/billing/sync", json={"customer_id": "cus_unknown"}, headers=internal_headers)

    assert resp.status_code == 200
    assert resp.json() == {"customer_id": "cus_unknown", "linked": False, "subscriptions": []}


def test_post_checkout_sync_requires_an_identifier(client, internal_headers, db_session):
    resp = client.post("/internal/billing/sync", json={}, headers=internal_headers)

    assert resp.status_code == 422
    assert resp.json()["error"] == "VALIDATION_ERROR"


def test_pending_checkout_then_deletion_check(client, internal_headers, organization):
    resp = client.post(
        "/internal/billing/pending-checkout",
        json={
            "organization_external_id": "org_acme",
            "customer_id": "cus_acme",
            "checkout_session_id": "cs_123",
            "price_id": "price_pro_month",
        },
        headers=internal_headers,
    )
    assert resp.status_code == 201
    assert resp.json()["pending_checkout_session_id"] == "cs_123"

    check = client.get("/internal/billing/organizations/org_acme/deletion-check", headers=internal_headers)
    assert check.status_code == 200
    body = check.json()
    assert body["can_delete"] is True
    assert body["is_pending_setup"] is True


def test_deletion_check_unknown_org(client, internal_headers, db_session):
    resp = client.get("/internal/billing/organizations/org_missing/deletion-check", headers=internal_headers)

    assert resp.status_code == 404
    assert resp.json()["error"] == "NOT_FOUND"


def test_bind_customer(client, internal_headers, db_session, organization):
    resp = client.post(
        "/internal/billing/customers",
        json={"organization_external_id": "org_acme", "customer_id": "cus_new"},
        headers=internal_headers,
    )

    assert resp.status_code == 200
    assert resp.json()["linked"] is True
    assert db_session.query(StripeCustomer).one().stripe_customer_id == "cus_new"


def test_bind_customer_before_org_is_deferred(client, internal_headers, db_session, scheduled_syncs):
    resp = client.post(
        "/internal/billing/customers",
        json={"organization_external_id": "org_late", "customer_id": "cus_late"},
        headers=internal_headers,
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["linked"] is False
    assert body["workflow_id"] == scheduled_syncs[-1]["kwargs"]["workflow_id"]
    assert scheduled_syncs[-1]["kwargs"]["operation"] == "bind_customer"


def test_bind_customer_owned_by_another_org_conflicts(client, internal_headers, db_session, stripe_customer):
    db_session.add(Organization(external_id="org_other", name="Other", metadata_={}))
    db_session.commit()

    resp = client.post(
        "/internal/billing/customers",
        json={"organization_external_id": "org_other", "customer_id": "cus_acme"},
        headers=internal_headers,
    )

    assert resp.status_code == 409
    assert resp.json()["error"] == "CONFLICT"
