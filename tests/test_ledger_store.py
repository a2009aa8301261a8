from __future__ import annotations

from decimal import Decimal

import pytest

from settlement.errors import (
    AccountNotEligible,
    BelowMinimumAmount,
    InsufficientBalance,
    InvalidLedgerOperation,
)
from settlement.models import Account, AccountStatus, db
from settlement.models.ledger import LedgerEntry, LedgerEntryType
from settlement.services.ledger_store import LedgerStore


@pytest.fixture()
def seller_account(make_seller):
    return make_seller().account


def test_chain_links_every_entry(seller_account, fund):
    fund(seller_account.id, "100.00")
    LedgerStore.post(seller_account.id, LedgerEntryType.COMMISSION, "-12.00", "Corte plataforma")
    LedgerStore.post(seller_account.id, LedgerEntryType.BONUS, "5.50", "Bônus")

    entries = list(reversed(LedgerStore.list_entries(seller_account.id)))
    assert [e.seq for e in entries] == [1, 2, 3]
    assert entries[0].balance_before == Decimal("0.00")
    for prev, cur in zip(entries, entries[1:]):
        assert cur.balance_before == prev.balance_after
    for e in entries:
        assert e.balance_after == e.balance_before + e.amount

    bal = LedgerStore.get_balance(seller_account.id)
    assert bal.balance == Decimal("93.50")
    assert bal.total_received == Decimal("100.00")

    report = LedgerStore.verify_chain(seller_account.id)
    assert report.ok
    assert report.entries == 3


def test_debit_never_goes_negative(seller_account, fund):
    fund(seller_account.id, "10.00")

    with pytest.raises(InsufficientBalance):
        LedgerStore.post(seller_account.id, LedgerEntryType.FEE, "-10.01", "Tarifa")

    assert LedgerStore.get_balance(seller_account.id).balance == Decimal("10.00")
    assert len(LedgerStore.list_entries(seller_account.id)) == 1


def test_sign_rules(seller_account, fund):
    with pytest.raises(InvalidLedgerOperation):
        LedgerStore.post(seller_account.id, LedgerEntryType.SALE, "-1.00", "venta negativa")
    with pytest.raises(InvalidLedgerOperation):
        LedgerStore.post(seller_account.id, LedgerEntryType.WITHDRAWAL, "1.00", "retiro positivo")
    with pytest.raises(InvalidLedgerOperation):
        LedgerStore.post(seller_account.id, LedgerEntryType.COMMISSION, "0", "comisión cero")
    with pytest.raises(InvalidLedgerOperation):
        LedgerStore.post(seller_account.id, "NOT_A_TYPE", "1.00", "tipo raro")


def test_idempotency_key_returns_same_entry(seller_account):
    a = LedgerStore.post(seller_account.id, LedgerEntryType.SALE, "40.00", "venta", idempotency_key="k-1")
    b = LedgerStore.post(seller_account.id, LedgerEntryType.SALE, "40.00", "venta", idempotency_key="k-1")

    assert a.id == b.id
    assert LedgerStore.get_balance(seller_account.id).balance == Decimal("40.00")


def test_idempotency_key_reuse_with_other_amount(seller_account):
    LedgerStore.post(seller_account.id, LedgerEntryType.SALE, "40.00", "venta", idempotency_key="k-2")

    with pytest.raises(InvalidLedgerOperation):
        LedgerStore.post(seller_account.id, LedgerEntryType.SALE, "41.00", "venta", idempotency_key="k-2")


def test_balance_cannot_be_edited_directly(seller_account):
    acct = db.session.get(Account, seller_account.id)
    acct.balance = Decimal("999.00")

    with pytest.raises(InvalidLedgerOperation):
        db.session.commit()
    db.session.rollback()

    assert LedgerStore.get_balance(seller_account.id).balance == Decimal("0.00")


def test_entries_are_immutable(seller_account, fund):
    fund(seller_account.id, "10.00")
    entry = LedgerStore.list_entries(seller_account.id)[0]

    entry.amount = Decimal("1000.00")
    with pytest.raises(InvalidLedgerOperation):
        db.session.commit()
    db.session.rollback()

    assert db.session.get(LedgerEntry, entry.id).amount == Decimal("10.00")


def test_hold_blocks_regular_debits(seller_account, fund):
    fund(seller_account.id, "100.00")
    acct = LedgerStore.lock_account(seller_account.id)
    LedgerStore.hold(acct, "80.00")
    db.session.commit()

    bal = LedgerStore.get_balance(seller_account.id)
    assert bal.blocked == Decimal("80.00")
    assert bal.available == Decimal("20.00")

    with pytest.raises(InsufficientBalance):
        LedgerStore.post(seller_account.id, LedgerEntryType.FEE, "-20.01", "Tarifa")

    # el débito que consume la retención sí pasa
    LedgerStore.post(seller_account.id, LedgerEntryType.WITHDRAWAL, "-80.00", "Saque", consume_hold=True)
    bal = LedgerStore.get_balance(seller_account.id)
    assert bal.balance == Decimal("20.00")
    assert bal.blocked == Decimal("0.00")
    assert bal.total_withdrawn == Decimal("80.00")


def test_transfer_moves_money_with_shared_reference(make_seller, fund):
    a = make_seller().account
    b = make_seller().account
    fund(a.id, "50.00")

    out, inn = LedgerStore.transfer(a.id, b.id, "20.00", idempotency_key="tr-1")

    assert out.amount == Decimal("-20.00")
    assert inn.amount == Decimal("20.00")
    assert out.reference == inn.reference
    assert LedgerStore.get_balance(a.id).balance == Decimal("30.00")
    assert LedgerStore.get_balance(b.id).balance == Decimal("20.00")

    # reintento con la misma clave: no duplica
    LedgerStore.transfer(a.id, b.id, "20.00", idempotency_key="tr-1")
    assert LedgerStore.get_balance(a.id).balance == Decimal("30.00")


def test_transfer_limits(make_seller, fund):
    a = make_seller().account
    b = make_seller().account
    fund(a.id, "50.00")

    with pytest.raises(BelowMinimumAmount):
        LedgerStore.transfer(a.id, b.id, "0.99")
    with pytest.raises(InsufficientBalance):
        LedgerStore.transfer(a.id, b.id, "50.01")
    with pytest.raises(InvalidLedgerOperation):
        LedgerStore.transfer(a.id, a.id, "5.00")

    assert LedgerStore.get_balance(a.id).balance == Decimal("50.00")
    assert LedgerStore.get_balance(b.id).balance == Decimal("0.00")


def test_blocked_account_rejects_postings(seller_account, fund):
    fund(seller_account.id, "10.00")
    LedgerStore.set_status(seller_account.id, AccountStatus.BLOCKED)

    with pytest.raises(AccountNotEligible):
        LedgerStore.post(seller_account.id, LedgerEntryType.SALE, "1.00", "venta")


def test_verify_chain_flags_corruption(seller_account, fund):
    fund(seller_account.id, "10.00")
    fund(seller_account.id, "5.00")

    # corrupción fuera del ORM (los guards del modelo no corren)
    db.session.execute(
        LedgerEntry.__table__.update()
        .where(LedgerEntry.account_id == seller_account.id, LedgerEntry.seq == 2)
        .values(balance_before=Decimal("11.00"), balance_after=Decimal("16.00"))
    )
    db.session.commit()

    report = LedgerStore.verify_chain(seller_account.id)
    assert report.breaks == [2]
    assert not report.balance_ok


def test_open_account_is_idempotent(make_seller):
    from settlement.models import OwnerType

    seller = make_seller()
    again = LedgerStore.open_account(OwnerType.SELLER, seller.id)
    assert again.id == seller.account.id

