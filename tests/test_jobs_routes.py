from __future__ import annotations

from decimal import Decimal

import pytest

from settlement.services.ledger_store import LedgerStore

AUTH = {"Authorization": "Bearer test-cron-secret"}

JOB_CALLS = [
    ("post", "/jobs/affiliate-commissions"),
    ("get", "/jobs/affiliate-commissions"),
    ("post", "/jobs/settle-payments"),
    ("get", "/jobs/consistency"),
]


@pytest.mark.parametrize("method,path", JOB_CALLS)
def test_jobs_require_service_token(client, method, path):
    r = getattr(client, method)(path)
    assert r.status_code == 401
    assert r.get_json() == {"ok": False, "error": "unauthorized"}


@pytest.mark.parametrize("method,path", JOB_CALLS)
def test_jobs_reject_wrong_token(client, method, path):
    r = getattr(client, method)(path, headers={"Authorization": "Bearer nope"})
    assert r.status_code == 401


def test_jobs_closed_when_secret_not_configured(app, client):
    app.config["CRON_SECRET"] = ""

    r = client.post("/jobs/affiliate-commissions", headers={"Authorization": "Bearer "})
    assert r.status_code == 401
    r = client.post("/jobs/affiliate-commissions", headers=AUTH)
    assert r.status_code == 401


def test_user_session_is_not_a_service_credential(client, make_user, login):
    login(make_user(is_admin=True))

    assert client.get("/jobs/consistency").status_code == 401


def test_release_job_endpoint(client, make_affiliate, make_order):
    aff = make_affiliate(rate="10")
    order = make_order(affiliate=aff, subtotal="120.00")

    r = client.post("/jobs/affiliate-commissions", json={"order_ids": [order.id]}, headers=AUTH)

    assert r.status_code == 200
    body = r.get_json()
    assert body["ok"] is True
    assert body["counts"]["credited"] == 1
    assert body["credited_total"] == "12.00"
    assert LedgerStore.get_balance(aff.account.id).balance == Decimal("12.00")

    again = client.get("/jobs/affiliate-commissions", headers=AUTH).get_json()
    assert again["processed"] == 0


def test_release_job_rejects_bad_order_ids(client):
    r = client.post("/jobs/affiliate-commissions", json={"order_ids": "1,2"}, headers=AUTH)
    assert r.status_code == 400
    assert r.get_json()["error"] == "invalid_order_ids"


def test_settle_payments_endpoint(client, make_seller, make_order):
    seller = make_seller()
    make_order(seller=seller)

    body = client.post("/jobs/settle-payments", headers=AUTH).get_json()

    # ítem sin precio calculado: queda informado como error, sin asientos
    assert body["counts"]["error"] == 1
    assert LedgerStore.list_entries(seller.account.id) == []


def test_consistency_endpoint(client, make_order):
    bad = make_order(with_items=False)

    body = client.get("/jobs/consistency", headers=AUTH).get_json()

    assert body["healthy"] is False
    assert body["findings"]["orders_without_items"]["sample_ids"] == [bad.id]
