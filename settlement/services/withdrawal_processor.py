from __future__ import annotations

"""
WithdrawalProcessor
===================
Solicitudes de retiro (afiliado / vendedor) y su ciclo administrativo.

Afiliado:
    disponible = suma de ventas CONFIRMED, acreditadas y con available_at <= ahora
    selección FIFO por (available_at, id) hasta cubrir el monto; la venta que
    completa el monto se marca PAID entera.

Todo corre bajo el lock de la cuenta del dueño y se revalida adentro.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Type, Union

from flask import current_app
from sqlalchemy import select

from settlement.errors import (
    AccountNotEligible,
    BelowMinimumAmount,
    InsufficientAvailableBalance,
    InsufficientBalance,
    InvalidLedgerOperation,
    InvalidWithdrawalState,
    NotFound,
    PayoutDestinationMissing,
    WithdrawalAlreadyOpen,
)
from settlement.models import db
from settlement.models.account import (
    OPEN_WITHDRAWAL_STATUSES,
    Account,
    AccountStatus,
    OwnerType,
    PayoutDestination,
    WithdrawalStatus,
)
from settlement.models.affiliate import Affiliate, AffiliateSale, AffiliateSaleStatus, AffiliateStatus, AffiliateWithdrawal
from settlement.models.ledger import LedgerEntryType
from settlement.models.seller import Seller, SellerStatus, SellerWithdrawal
from settlement.services.ledger_store import LedgerStore
from settlement.services.tx import account_key, run_in_transaction
from settlement.utils.money import ZERO, as_utc, safe_str, to_money, utcnow

log = logging.getLogger("withdrawal_processor")

Withdrawal = Union[AffiliateWithdrawal, SellerWithdrawal]

WITHDRAWAL_KINDS: Dict[str, Type[Any]] = {
    "affiliate": AffiliateWithdrawal,
    "seller": SellerWithdrawal,
}


@dataclass(frozen=True)
class AffiliateAvailability:
    affiliate_id: int
    available: Decimal
    pending_holdback: Decimal
    matured_sales: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "affiliate_id": self.affiliate_id,
            "available": str(self.available),
            "pending_holdback": str(self.pending_holdback),
            "matured_sales": self.matured_sales,
        }


def _amount(v: Any) -> Decimal:
    try:
        amt = to_money(v, allow_negative=False)
    except ValueError as e:
        raise InvalidLedgerOperation(f"Monto inválido: {v!r}") from e
    if amt <= 0:
        raise BelowMinimumAmount("El monto debe ser mayor a cero")
    return amt


def _kind_model(kind: str) -> Type[Any]:
    model = WITHDRAWAL_KINDS.get(safe_str(kind, 20).lower())
    if model is None:
        raise NotFound("Tipo de retiro desconocido", kind=kind)
    return model


def _matured_sales(affiliate_id: int, now: datetime) -> List[AffiliateSale]:
    rows = db.session.execute(
        select(AffiliateSale)
        .where(
            AffiliateSale.affiliate_id == int(affiliate_id),
            AffiliateSale.status == AffiliateSaleStatus.CONFIRMED,
            AffiliateSale.credited_entry_id.is_not(None),
            AffiliateSale.available_at <= now,
        )
        .order_by(AffiliateSale.available_at.asc(), AffiliateSale.id.asc())
        .execution_options(populate_existing=True)
    ).scalars().all()
    # doble chequeo en Python: SQLite compara strings de fecha
    return [s for s in rows if s.is_matured(now)]


class WithdrawalProcessor:

    # -------------------------------------------------------------------------
    # Afiliados
    # -------------------------------------------------------------------------

    @staticmethod
    def affiliate_availability(affiliate_id: int, *, now: Optional[datetime] = None) -> AffiliateAvailability:
        now = as_utc(now) or utcnow()
        matured = _matured_sales(affiliate_id, now)
        pending = db.session.execute(
            select(AffiliateSale).where(
                AffiliateSale.affiliate_id == int(affiliate_id),
                AffiliateSale.status == AffiliateSaleStatus.CONFIRMED,
            )
        ).scalars().all()
        holdback = sum((to_money(s.commission_amount) for s in pending if s not in matured), ZERO)
        return AffiliateAvailability(
            affiliate_id=int(affiliate_id),
            available=sum((to_money(s.commission_amount) for s in matured), ZERO),
            pending_holdback=holdback,
            matured_sales=len(matured),
        )

    @staticmethod
    def _check_affiliate(affiliate: Optional[Affiliate]) -> Tuple[Affiliate, Account, PayoutDestination]:
        if affiliate is None:
            raise NotFound("Afiliado no encontrado")
        wallet = Account.for_owner(OwnerType.AFFILIATE, affiliate.id)
        if affiliate.status != AffiliateStatus.APPROVED or wallet is None or wallet.status != AccountStatus.ACTIVE:
            raise AccountNotEligible("Afiliado no habilitado para retirar", affiliate_id=affiliate.id)
        dest = affiliate.payout_destination
        if dest is None:
            raise PayoutDestinationMissing("Configurá tu PIX o cuenta bancaria antes de retirar")
        return affiliate, wallet, dest

    @classmethod
    def request_affiliate_withdrawal(
        cls,
        affiliate_id: int,
        amount: Any,
        *,
        now: Optional[datetime] = None,
    ) -> AffiliateWithdrawal:
        now = as_utc(now) or utcnow()
        amt = _amount(amount)
        minimum = to_money(current_app.config.get("AFFILIATE_MIN_WITHDRAWAL", "50.00"))

        _, wallet, _ = cls._check_affiliate(db.session.get(Affiliate, int(affiliate_id)))
        if amt < minimum:
            raise BelowMinimumAmount(f"El retiro mínimo es {minimum}", minimum=minimum, amount=amt)

        wallet_id = wallet.id

        def _unit() -> AffiliateWithdrawal:
            affiliate = db.session.execute(
                select(Affiliate).where(Affiliate.id == int(affiliate_id)).execution_options(populate_existing=True)
            ).scalar_one_or_none()
            affiliate, _, dest = cls._check_affiliate(affiliate)
            acct = LedgerStore.lock_account(wallet_id)

            sales = _matured_sales(affiliate.id, now)
            available = sum((to_money(s.commission_amount) for s in sales), ZERO)
            if amt > available:
                raise InsufficientAvailableBalance(
                    "Saldo disponible insuficiente", available=available, amount=amt
                )

            selected: List[AffiliateSale] = []
            covered = ZERO
            for s in sales:
                if covered >= amt:
                    break
                selected.append(s)
                covered += to_money(s.commission_amount)

            w = AffiliateWithdrawal(
                affiliate_id=affiliate.id,
                account_id=acct.id,
                amount=amt,
                status=WithdrawalStatus.PENDING,
                requested_at=now,
            )
            w.payout_destination = dest
            db.session.add(w)
            db.session.flush()

            for s in selected:
                s.status = AffiliateSaleStatus.PAID
                s.withdrawal_id = w.id

            LedgerStore.hold(acct, amt)
            log.info(
                "retiro afiliado %s: affiliate=%s amount=%s sales=%s",
                w.id, affiliate.id, amt, [s.id for s in selected],
            )
            return w

        return run_in_transaction(_unit, keys=[account_key(wallet_id)], label="affiliate_withdrawal")

    # -------------------------------------------------------------------------
    # Vendedores
    # -------------------------------------------------------------------------

    @classmethod
    def request_seller_withdrawal(
        cls,
        seller_id: int,
        amount: Any,
        destination: Optional[PayoutDestination] = None,
        *,
        now: Optional[datetime] = None,
    ) -> SellerWithdrawal:
        now = as_utc(now) or utcnow()
        amt = _amount(amount)
        minimum = to_money(current_app.config.get("SELLER_MIN_WITHDRAWAL", "0.01"))

        seller = db.session.get(Seller, int(seller_id))
        if seller is None:
            raise NotFound("Vendedor no encontrado")
        acct = Account.for_owner(OwnerType.SELLER, seller.id)
        if seller.status != SellerStatus.ACTIVE or acct is None or acct.status != AccountStatus.ACTIVE:
            raise AccountNotEligible("Cuenta del vendedor no habilitada", seller_id=seller.id)

        dest = destination or acct.payout_destination
        if dest is None:
            raise PayoutDestinationMissing("Configurá tu PIX o cuenta bancaria antes de retirar")
        if amt < minimum:
            raise BelowMinimumAmount(f"El retiro mínimo es {minimum}", minimum=minimum, amount=amt)

        account_id = acct.id

        def _unit() -> SellerWithdrawal:
            locked = LedgerStore.lock_account(account_id)
            if locked.status != AccountStatus.ACTIVE:
                raise AccountNotEligible("Cuenta del vendedor no habilitada", seller_id=seller_id)

            open_one = db.session.execute(
                select(SellerWithdrawal.id).where(
                    SellerWithdrawal.seller_id == int(seller_id),
                    SellerWithdrawal.status.in_(OPEN_WITHDRAWAL_STATUSES),
                )
            ).first()
            if open_one is not None:
                raise WithdrawalAlreadyOpen("Ya existe un retiro en curso", withdrawal_id=open_one[0])

            if amt > locked.available_balance:
                raise InsufficientBalance("Saldo disponible insuficiente", available=locked.available_balance, amount=amt)

            w = SellerWithdrawal(
                seller_id=int(seller_id),
                account_id=locked.id,
                amount=amt,
                status=WithdrawalStatus.PENDING,
                requested_at=now,
            )
            w.payout_destination = dest
            db.session.add(w)
            db.session.flush()

            LedgerStore.hold(locked, amt)
            log.info("retiro vendedor %s: seller=%s amount=%s", w.id, seller_id, amt)
            return w

        return run_in_transaction(_unit, keys=[account_key(account_id)], label="seller_withdrawal")

    # -------------------------------------------------------------------------
    # Ciclo administrativo (ambos tipos)
    # -------------------------------------------------------------------------

    @staticmethod
    def get_withdrawal(kind: str, withdrawal_id: int) -> Withdrawal:
        model = _kind_model(kind)
        w = db.session.get(model, int(withdrawal_id))
        if w is None:
            raise NotFound("Retiro no encontrado", kind=kind, withdrawal_id=withdrawal_id)
        return w

    @classmethod
    def _locked_withdrawal(cls, kind: str, withdrawal_id: int) -> Withdrawal:
        model = _kind_model(kind)
        w = db.session.execute(
            select(model).where(model.id == int(withdrawal_id)).execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if w is None:
            raise NotFound("Retiro no encontrado", kind=kind, withdrawal_id=withdrawal_id)
        return w

    @classmethod
    def approve_withdrawal(cls, kind: str, withdrawal_id: int, *, note: Optional[str] = None) -> Withdrawal:
        w0 = cls.get_withdrawal(kind, withdrawal_id)
        account_id = w0.account_id

        def _unit() -> Withdrawal:
            LedgerStore.lock_account(account_id)
            w = cls._locked_withdrawal(kind, withdrawal_id)
            if w.status != WithdrawalStatus.PENDING:
                raise InvalidWithdrawalState(f"No se puede aprobar un retiro {w.status.value}")
            w.status = WithdrawalStatus.APPROVED
            w.approved_at = utcnow()
            if note:
                w.admin_note = safe_str(note, 300)
            log.info("retiro %s/%s aprobado", kind, w.id)
            return w

        return run_in_transaction(_unit, keys=[account_key(account_id)], label="withdrawal_approve")

    @classmethod
    def reject_withdrawal(cls, kind: str, withdrawal_id: int, reason: Optional[str] = None) -> Withdrawal:
        w0 = cls.get_withdrawal(kind, withdrawal_id)
        account_id = w0.account_id

        def _unit() -> Withdrawal:
            acct = LedgerStore.lock_account(account_id)
            w = cls._locked_withdrawal(kind, withdrawal_id)
            if w.status not in OPEN_WITHDRAWAL_STATUSES:
                raise InvalidWithdrawalState(f"No se puede rechazar un retiro {w.status.value}")

            w.status = WithdrawalStatus.REJECTED
            w.rejected_at = utcnow()
            w.rejection_reason = safe_str(reason, 300) or "Rechazado por el administrador"

            if isinstance(w, AffiliateWithdrawal):
                sales = db.session.execute(
                    select(AffiliateSale).where(AffiliateSale.withdrawal_id == w.id)
                ).scalars().all()
                for s in sales:
                    s.status = AffiliateSaleStatus.CONFIRMED
                    s.withdrawal_id = None

            LedgerStore.release_hold(acct, w.amount)
            log.info("retiro %s/%s rechazado: %s", kind, w.id, w.rejection_reason)
            return w

        return run_in_transaction(_unit, keys=[account_key(account_id)], label="withdrawal_reject")

    @classmethod
    def mark_withdrawal_paid(cls, kind: str, withdrawal_id: int, provider_ref: Optional[str] = None) -> Withdrawal:
        w0 = cls.get_withdrawal(kind, withdrawal_id)
        account_id = w0.account_id

        def _unit() -> Withdrawal:
            LedgerStore.lock_account(account_id)
            w = cls._locked_withdrawal(kind, withdrawal_id)
            if w.status != WithdrawalStatus.APPROVED:
                raise InvalidWithdrawalState(f"Solo un retiro APPROVED puede pagarse (actual {w.status.value})")

            dest = w.payout_destination
            entry = LedgerStore.post_entry(
                account_id,
                LedgerEntryType.WITHDRAWAL,
                -to_money(w.amount),
                f"Saque {dest.masked() if dest else ''}".strip(),
                safe_str(provider_ref, 120) or f"{kind}-withdrawal:{w.id}",
                idempotency_key=f"{kind}-withdrawal:{w.id}:paid",
                consume_hold=True,
            )
            w.status = WithdrawalStatus.PAID
            w.paid_at = utcnow()
            w.provider_ref = safe_str(provider_ref, 120) or None
            w.ledger_entry_id = entry.id
            log.info("retiro %s/%s pagado entry=%s", kind, w.id, entry.id)
            return w

        return run_in_transaction(_unit, keys=[account_key(account_id)], label="withdrawal_paid")

    @staticmethod
    def list_withdrawals(kind: str, *, owner_id: Optional[int] = None, status: Optional[str] = None, limit: int = 50) -> List[Withdrawal]:
        model = _kind_model(kind)
        q = select(model)
        if owner_id is not None:
            owner_col = model.affiliate_id if model is AffiliateWithdrawal else model.seller_id
            q = q.where(owner_col == int(owner_id))
        if status:
            q = q.where(model.status == WithdrawalStatus(str(status).upper()))
        q = q.order_by(model.requested_at.desc(), model.id.desc()).limit(max(1, min(int(limit or 50), 200)))
        return list(db.session.execute(q).scalars().all())


__all__ = ["WithdrawalProcessor", "AffiliateAvailability", "WITHDRAWAL_KINDS"]
