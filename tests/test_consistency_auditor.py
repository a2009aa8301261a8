from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

from sqlalchemy import func, select

from settlement.models import ItemType, LedgerEntry, Order, OrderItem, OrderStatus, PaymentStatus, db
from settlement.services.consistency_auditor import CATEGORIES, ConsistencyAuditor
from conftest import NOW


def _audit():
    return ConsistencyAuditor().audit(now=NOW)


def test_healthy_data_has_no_findings(make_seller, make_order, fund):
    seller = make_seller()
    fund(seller.account.id, "50.00")
    make_order(seller=seller)

    report = _audit()

    assert set(report.findings) == set(CATEGORIES)
    assert report.healthy
    assert report.to_dict()["total_issues"] == 0


def test_stuck_processing_uses_last_update(make_order):
    stuck = make_order(status=OrderStatus.PROCESSING, updated_at=NOW - timedelta(hours=49))
    make_order(status=OrderStatus.PROCESSING, updated_at=NOW - timedelta(hours=1))

    finding = _audit().findings["stuck_processing"]
    assert finding.count == 1
    assert finding.sample_ids == [stuck.id]


def test_missing_buyer(make_order):
    no_buyer = make_order(buyer_id=None)
    ghost = make_order(buyer_id=987654)

    finding = _audit().findings["missing_buyer"]
    assert finding.count == 2
    assert finding.sample_ids == [no_buyer.id, ghost.id]


def test_missing_shipping_only_for_orders_in_fulfilment(make_order):
    bad = make_order(status=OrderStatus.SHIPPED, shipping_method=None)
    make_order(status=OrderStatus.PENDING, payment_status=PaymentStatus.PENDING, shipping_method=None)

    finding = _audit().findings["missing_shipping"]
    assert finding.sample_ids == [bad.id]


def test_high_fraud_score_without_status(make_order):
    flagged = make_order(fraud_score=80)
    make_order(fraud_score=80, fraud_status="review")
    make_order(fraud_score=5)

    finding = _audit().findings["missing_fraud_status"]
    assert finding.sample_ids == [flagged.id]


def test_processing_without_payment(make_order):
    bad = make_order(status=OrderStatus.PROCESSING, payment_status=PaymentStatus.PENDING)
    make_order(status=OrderStatus.PROCESSING, payment_status=PaymentStatus.APPROVED)

    finding = _audit().findings["processing_without_payment"]
    assert finding.sample_ids == [bad.id]


def test_drop_items_without_seller_and_orders_without_items(make_order):
    drop = make_order()
    db.session.add(OrderItem(order_id=drop.id, item_type=ItemType.DROPSHIPPING, unit_price=Decimal("10"), quantity=1))
    db.session.commit()
    empty = make_order(with_items=False)

    report = _audit()
    assert report.findings["drop_items_without_seller"].sample_ids == [drop.id]
    assert report.findings["orders_without_items"].sample_ids == [empty.id]


def test_sample_is_capped(app, make_order):
    ids = [make_order(with_items=False).id for _ in range(4)]

    finding = ConsistencyAuditor(sample_size=2).audit(now=NOW).findings["orders_without_items"]
    assert finding.count == 4
    assert finding.sample_ids == ids[:2]


def test_ledger_corruption_is_reported(make_seller, fund):
    seller = make_seller()
    fund(seller.account.id, "10.00")
    fund(seller.account.id, "5.00")

    db.session.execute(
        LedgerEntry.__table__.update()
        .where(LedgerEntry.account_id == seller.account.id, LedgerEntry.seq == 1)
        .values(amount=Decimal("9.00"))
    )
    db.session.commit()

    report = _audit()
    assert report.findings["ledger_chain_breaks"].sample_ids == [seller.account.id]
    assert report.findings["balance_mismatches"].count == 0


def test_audit_is_read_only(make_order, make_seller, fund):
    seller = make_seller()
    fund(seller.account.id, "10.00")
    order = make_order(status=OrderStatus.PROCESSING, payment_status=PaymentStatus.PENDING, updated_at=NOW - timedelta(days=5))
    before = db.session.get(Order, order.id).updated_at

    _audit()
    _audit()

    assert not db.session.dirty
    assert not db.session.new
    assert db.session.get(Order, order.id).updated_at == before
    assert db.session.execute(select(func.count(LedgerEntry.id))).scalar_one() == 1
