from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select

from settlement.models import AffiliateSale, AffiliateSaleStatus, OrderStatus, db
from settlement.models.ledger import LedgerEntry, LedgerEntryType
from settlement.services.affiliate_release import (
    ALREADY_PROCESSED,
    CREDITED,
    ERROR,
    HOLDBACK,
    SKIPPED,
    AffiliateCommissionReleaseJob,
    commission_for,
)
from settlement.services.ledger_store import LedgerStore
from conftest import NOW


def _sale_for(order_id: int) -> AffiliateSale:
    return db.session.execute(select(AffiliateSale).where(AffiliateSale.order_id == order_id)).scalar_one()


def test_commission_for_rounds_half_up():
    assert commission_for("250.00", "10") == Decimal("25.00")
    assert commission_for("99.95", "7.5") == Decimal("7.50")


def test_credits_once_and_only_once(make_affiliate, make_order):
    aff = make_affiliate(rate="10")
    order = make_order(affiliate=aff, subtotal="250.00")

    first = AffiliateCommissionReleaseJob().run(now=NOW)
    assert first.counts[CREDITED] == 1
    assert first.credited_total == Decimal("25.00")

    # segunda corrida: ya no es candidato
    second = AffiliateCommissionReleaseJob().run(now=NOW)
    assert second.results == []

    # forzado por id: informa, no vuelve a acreditar
    forced = AffiliateCommissionReleaseJob().run([order.id, order.id], now=NOW)
    assert [r.outcome for r in forced.results] == [ALREADY_PROCESSED]

    wallet = aff.account
    assert LedgerStore.get_balance(wallet.id).balance == Decimal("25.00")

    sale = _sale_for(order.id)
    entries = LedgerStore.list_entries(wallet.id)
    assert len(entries) == 1
    assert entries[0].entry_type == LedgerEntryType.COMMISSION
    assert entries[0].idempotency_key == f"affiliate-sale:{sale.id}"
    assert sale.credited_entry_id == entries[0].id
    assert sale.status == AffiliateSaleStatus.CONFIRMED


def test_holdback_then_credit(make_affiliate, make_order):
    aff = make_affiliate()
    order = make_order(affiliate=aff, subtotal="100.00", delivered_at=NOW - timedelta(days=2))

    report = AffiliateCommissionReleaseJob().run(now=NOW)
    assert [r.outcome for r in report.results] == [HOLDBACK]

    sale = _sale_for(order.id)
    assert sale.credited_entry_id is None
    assert LedgerStore.get_balance(aff.account.id).balance == Decimal("0.00")

    later = AffiliateCommissionReleaseJob().run(now=NOW + timedelta(days=5))
    assert [r.outcome for r in later.results] == [CREDITED]
    assert LedgerStore.get_balance(aff.account.id).balance == Decimal("10.00")


def test_available_at_is_fixed_at_creation(make_affiliate, make_order):
    aff = make_affiliate()
    order = make_order(affiliate=aff, delivered_at=NOW - timedelta(days=1))
    AffiliateCommissionReleaseJob().run([order.id], now=NOW)
    before = _sale_for(order.id).available_at

    # mover la fecha de entrega no adelanta la liberación
    order.delivered_at = NOW - timedelta(days=60)
    db.session.commit()

    report = AffiliateCommissionReleaseJob().run([order.id], now=NOW)
    assert report.results[0].outcome == HOLDBACK
    assert _sale_for(order.id).available_at == before


def test_skips_ineligible_orders(make_affiliate, make_order):
    aff = make_affiliate()
    shipped = make_order(affiliate=aff, status=OrderStatus.SHIPPED)
    no_affiliate = make_order()

    report = AffiliateCommissionReleaseJob().run([shipped.id, no_affiliate.id, 999999], now=NOW)

    assert [r.outcome for r in report.results] == [SKIPPED, SKIPPED, SKIPPED]
    assert report.results[2].reason == "order_not_found"


def test_rejected_sale_is_not_credited(make_affiliate, make_order):
    aff = make_affiliate()
    order = make_order(affiliate=aff, delivered_at=NOW - timedelta(days=1))
    AffiliateCommissionReleaseJob().run([order.id], now=NOW)

    sale = _sale_for(order.id)
    sale.status = AffiliateSaleStatus.REJECTED
    db.session.commit()

    assert AffiliateCommissionReleaseJob().run(now=NOW + timedelta(days=30)).results == []
    forced = AffiliateCommissionReleaseJob().run([order.id], now=NOW + timedelta(days=30))
    assert forced.results[0].outcome == SKIPPED
    assert forced.results[0].reason == "sale_rejected"


def test_error_on_one_order_does_not_stop_batch(make_affiliate, make_order):
    broken = make_affiliate(with_account=False)
    good = make_affiliate()
    bad_order = make_order(affiliate=broken, delivered_at=NOW - timedelta(days=20))
    good_order = make_order(affiliate=good, delivered_at=NOW - timedelta(days=10))

    report = AffiliateCommissionReleaseJob().run(now=NOW)

    by_order = {r.order_id: r for r in report.results}
    assert by_order[bad_order.id].outcome == ERROR
    assert by_order[bad_order.id].reason == "account_not_eligible"
    assert by_order[good_order.id].outcome == CREDITED


def test_batch_limit_stops_early(make_affiliate, make_order):
    aff = make_affiliate()
    for days in (30, 20, 10):
        make_order(affiliate=aff, delivered_at=NOW - timedelta(days=days))

    report = AffiliateCommissionReleaseJob().run(now=NOW, limit=2)

    assert len(report.results) == 2
    assert report.stopped_early is True

    rest = AffiliateCommissionReleaseJob().run(now=NOW, limit=2)
    assert len(rest.results) == 1
    assert rest.stopped_early is False


def test_past_deadline_processes_nothing(make_affiliate, make_order):
    aff = make_affiliate()
    make_order(affiliate=aff)

    report = AffiliateCommissionReleaseJob().run(now=NOW, deadline=datetime(2000, 1, 1, tzinfo=timezone.utc))

    assert report.results == []
    assert report.stopped_early is True
    assert db.session.execute(select(LedgerEntry)).first() is None


def test_rate_snapshot_survives_rate_change(make_affiliate, make_order):
    aff = make_affiliate(rate="10")
    order = make_order(affiliate=aff, subtotal="200.00", delivered_at=NOW - timedelta(days=1))
    AffiliateCommissionReleaseJob().run([order.id], now=NOW)

    aff.commission_rate = Decimal("50")
    db.session.commit()

    report = AffiliateCommissionReleaseJob().run([order.id], now=NOW + timedelta(days=7))
    assert report.results[0].outcome == CREDITED
    assert report.results[0].amount == Decimal("20.00")
