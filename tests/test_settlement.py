from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from settlement.errors import AccountNotEligible
from settlement.models import ItemType, Order, OrderItem, OrderStatus, PaymentStatus, db
from settlement.models.ledger import LedgerEntryType
from settlement.services.affiliate_release import CREDITED, HOLDBACK
from settlement.services.commission_calculator import CommissionCalculator
from settlement.services.ledger_store import LedgerStore
from settlement.services.settlement import SettlementService
from conftest import NOW


@pytest.fixture()
def priced_order(make_seller, make_product, make_order):
    """
    Pedido con dos ítems del mismo vendedor (tasa de plan 12%):
    - stock 100 x 3            -> receita 264
    - dropshipping 150 x 2 (costo 100, 10%) -> receita 120
    """
    def _make(*, seller=None, paid: bool = True) -> Order:
        seller = seller or make_seller(rate="12")
        stock = make_product(seller, price="100")
        drop = make_product(seller, dropshipping=True, cost="100", drop_rate="10", price="150")

        order = make_order(
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            subtotal="600.00",
            with_items=False,
        )
        for product, unit, qty in ((stock, "100", 3), (drop, "150", 2)):
            item = OrderItem(order_id=order.id, product_id=product.id, unit_price=Decimal(unit), quantity=qty)
            db.session.add(item)
            db.session.flush()
            CommissionCalculator.price_order_item(item)

        if paid:
            order.payment_status = PaymentStatus.APPROVED
            order.status = OrderStatus.PROCESSING
        db.session.commit()
        return order

    return _make


def test_settle_posts_entries_per_item(make_seller, priced_order):
    seller = make_seller(rate="12")
    order = priced_order(seller=seller)

    result = SettlementService.settle_paid_order(order.id, now=NOW)

    assert result.outcome == "settled"
    assert len(result.entry_ids) == 5

    entries = list(reversed(LedgerStore.list_entries(seller.account.id)))
    assert [(e.entry_type, e.amount) for e in entries] == [
        # stock: la plataforma cobra su comisión
        (LedgerEntryType.SALE, Decimal("300.00")),
        (LedgerEntryType.COMMISSION, Decimal("-36.00")),
        # dropshipping: costo bruto al proveedor, el descuento vuelve como comisión
        (LedgerEntryType.SALE, Decimal("300.00")),
        (LedgerEntryType.FEE, Decimal("-200.00")),
        (LedgerEntryType.COMMISSION, Decimal("20.00")),
    ]
    assert all(e.order_id == order.id for e in entries)

    # cada ítem suma exactamente su seller_revenue (264 + 120)
    items = {i.item_type: i for i in db.session.get(Order, order.id).items}
    assert items[ItemType.STOCK].commission_amount == Decimal("36.00")
    assert items[ItemType.DROPSHIPPING].commission_amount == Decimal("20.00")

    bal = LedgerStore.get_balance(seller.account.id)
    assert bal.balance == Decimal("384.00")
    assert bal.total_received == Decimal("600.00")
    assert LedgerStore.verify_chain(seller.account.id).ok

    fresh = db.session.get(Order, order.id)
    assert fresh.settled_at is not None
    assert fresh.paid_at is not None


def test_free_item_does_not_block_the_order(make_seller, make_product, make_order):
    seller = make_seller(rate="12")
    product = make_product(seller, price="100")
    order = make_order(status=OrderStatus.PENDING, payment_status=PaymentStatus.PENDING, with_items=False)
    for unit in ("100", "0"):
        item = OrderItem(order_id=order.id, product_id=product.id, unit_price=Decimal(unit), quantity=1)
        db.session.add(item)
        db.session.flush()
        CommissionCalculator.price_order_item(item)
    order.payment_status = PaymentStatus.APPROVED
    order.status = OrderStatus.PROCESSING
    db.session.commit()

    report = SettlementService.settle_paid_orders(now=NOW)

    assert [(r.order_id, r.outcome) for r in report.results] == [(order.id, "settled")]
    assert len(report.results[0].entry_ids) == 2
    assert LedgerStore.get_balance(seller.account.id).balance == Decimal("88.00")


def test_settle_is_idempotent(make_seller, priced_order):
    seller = make_seller()
    order = priced_order(seller=seller)

    SettlementService.settle_paid_order(order.id, now=NOW)
    again = SettlementService.settle_paid_order(order.id, now=NOW)

    assert again.outcome == "already_settled"
    assert LedgerStore.get_balance(seller.account.id).balance == Decimal("384.00")
    assert len(LedgerStore.list_entries(seller.account.id)) == 5


def test_unpaid_order_is_not_settled(make_seller, priced_order):
    seller = make_seller()
    order = priced_order(seller=seller, paid=False)

    assert SettlementService.settle_paid_order(order.id, now=NOW).outcome == "not_paid"
    assert LedgerStore.list_entries(seller.account.id) == []


def test_seller_without_account(make_seller, priced_order):
    seller = make_seller(with_account=False)
    order = priced_order(seller=seller)

    with pytest.raises(AccountNotEligible):
        SettlementService.settle_paid_order(order.id, now=NOW)
    assert db.session.get(Order, order.id).settled_at is None


def test_batch_settles_and_reports_errors(make_seller, make_order, priced_order):
    seller = make_seller()
    good = priced_order(seller=seller)
    unpriced = make_order(seller=seller)
    priced_order(seller=seller, paid=False)

    report = SettlementService.settle_paid_orders(now=NOW)

    by_order = {r.order_id: r for r in report.results}
    assert set(by_order) == {good.id, unpriced.id}
    assert by_order[good.id].outcome == "settled"
    assert by_order[unpriced.id].outcome == "error"
    assert by_order[unpriced.id].reason == "invalid_ledger_operation"

    # el pedido con error no dejó asientos a medias
    assert LedgerStore.get_balance(seller.account.id).balance == Decimal("384.00")
    assert SettlementService.settle_paid_orders(now=NOW).counts["settled"] == 0


def test_batch_survives_unexpected_errors(monkeypatch, make_seller, priced_order):
    seller = make_seller()
    broken = priced_order(seller=seller)
    good = priced_order(seller=seller)

    original = SettlementService.settle_paid_order

    def flaky(order_id, *, now=None):
        if order_id == broken.id:
            raise RuntimeError("db caída")
        return original(order_id, now=now)

    monkeypatch.setattr(SettlementService, "settle_paid_order", flaky)

    report = SettlementService.settle_paid_orders(now=NOW)

    by_order = {r.order_id: r for r in report.results}
    assert by_order[broken.id].outcome == "error"
    assert by_order[broken.id].reason == "RuntimeError"
    assert by_order[good.id].outcome == "settled"
    assert db.session.get(Order, broken.id).settled_at is None


def test_on_delivered_marks_and_releases(make_affiliate, make_order):
    aff = make_affiliate(rate="10")
    order = make_order(affiliate=aff, status=OrderStatus.SHIPPED, subtotal="300.00")

    report = SettlementService.on_delivered(order.id, delivered_at=NOW - timedelta(days=8), now=NOW)

    assert [r.outcome for r in report.results] == [CREDITED]
    fresh = db.session.get(Order, order.id)
    assert fresh.status == OrderStatus.DELIVERED
    assert LedgerStore.get_balance(aff.account.id).balance == Decimal("30.00")


def test_on_delivered_inside_holdback(make_affiliate, make_order):
    aff = make_affiliate()
    order = make_order(affiliate=aff, status=OrderStatus.SHIPPED)

    report = SettlementService.on_delivered(order.id, delivered_at=NOW - timedelta(days=1), now=NOW)

    assert [r.outcome for r in report.results] == [HOLDBACK]
    assert LedgerStore.get_balance(aff.account.id).balance == Decimal("0.00")
