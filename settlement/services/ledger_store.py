from __future__ import annotations

"""
LedgerStore
===========
Única puerta de entrada para mover saldo de una Account.

- post(): unidad completa (lock + transacción propia)
- post_entry(): mismo posteo dentro de la transacción del llamador
  (el llamador ya tiene el lock de la cuenta)
- hold()/release_hold(): saldo bloqueado por retiros pendientes
- transfer(): TRANSFER_OUT + TRANSFER_IN con ambas cuentas bloqueadas en orden
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from flask import current_app
from sqlalchemy import select

from settlement.errors import (
    AccountNotEligible,
    BelowMinimumAmount,
    InsufficientBalance,
    InvalidLedgerOperation,
    NotFound,
)
from settlement.models import db
from settlement.models.account import Account, AccountStatus, OwnerType, PayoutDestination
from settlement.models.ledger import LedgerEntry, LedgerEntryStatus, LedgerEntryType, enforce_sign
from settlement.services.tx import account_key, run_in_transaction
from settlement.utils.money import ZERO, gen_public_id, safe_str, to_money

log = logging.getLogger("ledger_store")

_CREDIT_TOTAL_TYPES = (LedgerEntryType.SALE, LedgerEntryType.COMMISSION)


# =============================================================================
# DTOs
# =============================================================================

@dataclass(frozen=True)
class AccountBalance:
    account_id: int
    currency: str
    balance: Decimal
    blocked: Decimal
    available: Decimal
    total_received: Decimal
    total_withdrawn: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "currency": self.currency,
            "balance": str(self.balance),
            "blocked": str(self.blocked),
            "available": str(self.available),
            "total_received": str(self.total_received),
            "total_withdrawn": str(self.total_withdrawn),
        }


@dataclass
class ChainReport:
    account_id: int
    entries: int = 0
    breaks: List[int] = field(default_factory=list)
    last_balance_after: Decimal = ZERO
    account_balance: Decimal = ZERO

    @property
    def chain_ok(self) -> bool:
        return not self.breaks

    @property
    def balance_ok(self) -> bool:
        return self.last_balance_after == self.account_balance

    @property
    def ok(self) -> bool:
        return self.chain_ok and self.balance_ok

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "entries": self.entries,
            "breaks": list(self.breaks),
            "last_balance_after": str(self.last_balance_after),
            "account_balance": str(self.account_balance),
            "ok": self.ok,
        }


# =============================================================================
# Helpers
# =============================================================================

def _entry_type(v: Any) -> LedgerEntryType:
    if isinstance(v, LedgerEntryType):
        return v
    try:
        return LedgerEntryType(str(v).strip().upper())
    except ValueError as e:
        raise InvalidLedgerOperation(f"unknown entry_type {v!r}") from e


def _amount(v: Any) -> Decimal:
    try:
        return to_money(v)
    except ValueError as e:
        raise InvalidLedgerOperation(str(e)) from e


def _get_entry_by_idempotency_key(ikey: str) -> Optional[LedgerEntry]:
    return db.session.execute(
        select(LedgerEntry).where(LedgerEntry.idempotency_key == ikey)
    ).scalar_one_or_none()


def _flush_balance_change(acct: Account) -> None:
    # el guard de Account solo deja pasar cambios de saldo con esta marca
    acct._ledger_posting = True
    try:
        db.session.flush()
    finally:
        acct._ledger_posting = False


# =============================================================================
# LedgerStore
# =============================================================================

class LedgerStore:

    # -------------------------------------------------------------------------
    # Cuentas
    # -------------------------------------------------------------------------

    @staticmethod
    def lock_account(account_id: int) -> Account:
        """
        Relee la cuenta desde la DB dentro de la transacción actual.
        En Postgres/MySQL toma además el row lock (FOR UPDATE); SQLite lo ignora
        y queda cubierto por el lock de proceso + version_id_col.
        """
        acct = db.session.execute(
            select(Account)
            .where(Account.id == int(account_id))
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if acct is None:
            raise NotFound("Cuenta no encontrada", account_id=account_id)
        return acct

    @classmethod
    def open_account(
        cls,
        owner_type: OwnerType,
        owner_id: int,
        *,
        destination: Optional[PayoutDestination] = None,
    ) -> Account:
        """Idempotente: devuelve la cuenta existente del dueño si ya fue abierta."""
        existing = Account.for_owner(owner_type, owner_id)
        if existing is not None:
            return existing

        def _unit() -> Account:
            acct = Account.for_owner(owner_type, owner_id)
            if acct is not None:
                return acct
            acct = Account(owner_type=owner_type, owner_id=int(owner_id), status=AccountStatus.ACTIVE)
            if destination is not None:
                acct.payout_destination = destination
            db.session.add(acct)
            db.session.flush()
            log.info("cuenta abierta %s:%s -> %s", owner_type.value, owner_id, acct.account_number)
            return acct

        return run_in_transaction(_unit, keys=[f"owner:{owner_type.value}:{int(owner_id)}"], label="open_account")

    @classmethod
    def set_status(cls, account_id: int, status: Any) -> Account:
        new = status if isinstance(status, AccountStatus) else AccountStatus(str(status).strip().upper())

        def _unit() -> Account:
            acct = cls.lock_account(account_id)
            if acct.status != new:
                log.info("cuenta %s: %s -> %s", acct.id, acct.status.value, new.value)
                acct.status = new
            return acct

        return run_in_transaction(_unit, keys=[account_key(account_id)], label="account_status")

    # -------------------------------------------------------------------------
    # Posteos
    # -------------------------------------------------------------------------

    @classmethod
    def post(
        cls,
        account_id: int,
        entry_type: Any,
        amount: Any,
        description: str,
        reference: Optional[str] = None,
        *,
        order_id: Optional[int] = None,
        idempotency_key: Optional[str] = None,
        consume_hold: bool = False,
    ) -> LedgerEntry:
        return run_in_transaction(
            lambda: cls.post_entry(
                account_id,
                entry_type,
                amount,
                description,
                reference,
                order_id=order_id,
                idempotency_key=idempotency_key,
                consume_hold=consume_hold,
            ),
            keys=[account_key(account_id)],
            label="ledger.post",
        )

    @classmethod
    def post_entry(
        cls,
        account_id: int,
        entry_type: Any,
        amount: Any,
        description: str,
        reference: Optional[str] = None,
        *,
        order_id: Optional[int] = None,
        idempotency_key: Optional[str] = None,
        consume_hold: bool = False,
    ) -> LedgerEntry:
        et = _entry_type(entry_type)
        amt = _amount(amount)
        enforce_sign(et, amt)

        ikey = safe_str(idempotency_key, 120) or None
        if ikey:
            existing = _get_entry_by_idempotency_key(ikey)
            if existing is not None:
                if existing.account_id != int(account_id) or existing.entry_type != et or to_money(existing.amount) != amt:
                    raise InvalidLedgerOperation("idempotency_key reutilizada con otro contenido", key=ikey)
                return existing

        acct = cls.lock_account(account_id)
        if acct.status == AccountStatus.BLOCKED:
            raise AccountNotEligible("Cuenta bloqueada", account_id=acct.id)

        before = to_money(acct.balance)
        blocked = to_money(acct.blocked_balance)
        after = before + amt
        new_blocked = blocked

        if amt < 0:
            if consume_hold:
                if blocked < -amt:
                    raise InvalidLedgerOperation("El monto retenido no cubre el débito", blocked=blocked, amount=amt)
                new_blocked = blocked + amt
                if after < 0:
                    raise InsufficientBalance("Saldo insuficiente", balance=before, amount=amt)
            else:
                if acct.status != AccountStatus.ACTIVE:
                    raise AccountNotEligible("Cuenta no activa", account_id=acct.id)
                if before - blocked + amt < 0:
                    raise InsufficientBalance("Saldo disponible insuficiente", available=before - blocked, amount=amt)

        seq = int(acct.ledger_seq or 0) + 1
        entry = LedgerEntry(
            account_id=acct.id,
            seq=seq,
            entry_type=et,
            status=LedgerEntryStatus.COMPLETED,
            amount=amt,
            balance_before=before,
            balance_after=after,
            description=description,
            reference=reference,
            order_id=order_id,
            idempotency_key=ikey,
        )

        acct.balance = after
        acct.blocked_balance = new_blocked
        acct.ledger_seq = seq
        if et in _CREDIT_TOTAL_TYPES and amt > 0:
            acct.total_received = to_money(acct.total_received) + amt
        if et == LedgerEntryType.WITHDRAWAL:
            acct.total_withdrawn = to_money(acct.total_withdrawn) - amt

        db.session.add(entry)
        _flush_balance_change(acct)

        log.info(
            "ledger post account=%s seq=%s type=%s amount=%s balance=%s->%s",
            acct.id, seq, et.value, amt, before, after,
        )
        return entry

    # -------------------------------------------------------------------------
    # Saldo bloqueado (dentro de la transacción del llamador)
    # -------------------------------------------------------------------------

    @classmethod
    def hold(cls, account: Account, amount: Any) -> Account:
        amt = _amount(amount)
        if amt <= 0:
            raise InvalidLedgerOperation("hold amount must be > 0")
        if account.available_balance < amt:
            raise InsufficientBalance("Saldo disponible insuficiente", available=account.available_balance, amount=amt)
        account.blocked_balance = to_money(account.blocked_balance) + amt
        _flush_balance_change(account)
        log.info("hold account=%s amount=%s blocked=%s", account.id, amt, account.blocked_balance)
        return account

    @classmethod
    def release_hold(cls, account: Account, amount: Any) -> Account:
        amt = _amount(amount)
        if amt <= 0:
            raise InvalidLedgerOperation("release amount must be > 0")
        blocked = to_money(account.blocked_balance)
        if blocked < amt:
            raise InvalidLedgerOperation("No hay saldo retenido suficiente", blocked=blocked, amount=amt)
        account.blocked_balance = blocked - amt
        _flush_balance_change(account)
        log.info("release hold account=%s amount=%s blocked=%s", account.id, amt, account.blocked_balance)
        return account

    # -------------------------------------------------------------------------
    # Transferencias entre cuentas
    # -------------------------------------------------------------------------

    @classmethod
    def transfer(
        cls,
        from_account_id: int,
        to_account_id: int,
        amount: Any,
        description: Optional[str] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> Tuple[LedgerEntry, LedgerEntry]:
        if int(from_account_id) == int(to_account_id):
            raise InvalidLedgerOperation("No se puede transferir a la misma cuenta")

        amt = _amount(amount)
        lo = to_money(current_app.config.get("TRANSFER_MIN_AMOUNT", "1.00"))
        hi = to_money(current_app.config.get("TRANSFER_MAX_AMOUNT", "50000.00"))
        if amt < lo:
            raise BelowMinimumAmount(f"Monto mínimo de transferencia: {lo}", minimum=lo)
        if amt > hi:
            raise InvalidLedgerOperation(f"Monto máximo de transferencia: {hi}", maximum=hi)

        ref = gen_public_id("tr")
        ikey = safe_str(idempotency_key, 110) or None

        def _unit() -> Tuple[LedgerEntry, LedgerEntry]:
            dst = cls.lock_account(to_account_id)
            if dst.status != AccountStatus.ACTIVE:
                raise AccountNotEligible("Cuenta destino no activa", account_id=dst.id)

            out = cls.post_entry(
                from_account_id,
                LedgerEntryType.TRANSFER_OUT,
                -amt,
                description or f"Transferencia para {dst.account_number}",
                ref,
                idempotency_key=f"{ikey}:out" if ikey else None,
            )
            src = db.session.get(Account, int(from_account_id))
            inn = cls.post_entry(
                to_account_id,
                LedgerEntryType.TRANSFER_IN,
                amt,
                description or f"Transferencia de {src.account_number if src else from_account_id}",
                out.reference,
                idempotency_key=f"{ikey}:in" if ikey else None,
            )
            return out, inn

        return run_in_transaction(
            _unit,
            keys=[account_key(from_account_id), account_key(to_account_id)],
            label="ledger.transfer",
        )

    # -------------------------------------------------------------------------
    # Lecturas
    # -------------------------------------------------------------------------

    @staticmethod
    def get_balance(account_id: int) -> AccountBalance:
        acct = db.session.get(Account, int(account_id))
        if acct is None:
            raise NotFound("Cuenta no encontrada", account_id=account_id)
        return AccountBalance(
            account_id=acct.id,
            currency=current_app.config.get("SETTLEMENT_CURRENCY", "BRL"),
            balance=to_money(acct.balance),
            blocked=to_money(acct.blocked_balance),
            available=acct.available_balance,
            total_received=to_money(acct.total_received),
            total_withdrawn=to_money(acct.total_withdrawn),
        )

    @staticmethod
    def list_entries(
        account_id: int,
        *,
        limit: int = 100,
        offset: int = 0,
        entry_types: Optional[Sequence[LedgerEntryType]] = None,
    ) -> List[LedgerEntry]:
        limit_i = max(1, min(int(limit or 100), 500))
        offset_i = max(0, int(offset or 0))

        q = select(LedgerEntry).where(LedgerEntry.account_id == int(account_id))
        if entry_types:
            q = q.where(LedgerEntry.entry_type.in_(list(entry_types)))
        q = q.order_by(LedgerEntry.seq.desc()).limit(limit_i).offset(offset_i)
        return list(db.session.execute(q).scalars().all())

    @staticmethod
    def verify_chain(account_id: int) -> ChainReport:
        """
        Recorre la cadena por seq y reporta cada seq donde se rompe:
        hueco de seq, balance_before distinto del balance_after anterior
        o balance_after != balance_before + amount.
        """
        acct = db.session.get(Account, int(account_id))
        if acct is None:
            raise NotFound("Cuenta no encontrada", account_id=account_id)

        report = ChainReport(account_id=acct.id, account_balance=to_money(acct.balance))
        prev_after = ZERO
        expected_seq = 1

        rows = db.session.execute(
            select(LedgerEntry.seq, LedgerEntry.amount, LedgerEntry.balance_before, LedgerEntry.balance_after)
            .where(LedgerEntry.account_id == acct.id)
            .order_by(LedgerEntry.seq.asc())
        ).all()

        for seq, amount, before, after in rows:
            before_d, after_d, amount_d = to_money(before), to_money(after), to_money(amount)
            if seq != expected_seq or before_d != prev_after or after_d != before_d + amount_d:
                report.breaks.append(int(seq))
            prev_after = after_d
            expected_seq = int(seq) + 1
            report.entries += 1

        report.last_balance_after = prev_after
        return report


__all__ = ["LedgerStore", "AccountBalance", "ChainReport"]
