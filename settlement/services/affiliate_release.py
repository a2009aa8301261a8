from __future__ import annotations

"""
Liberación de comisiones de afiliados
=====================================
Pedidos DELIVERED con afiliado -> una AffiliateSale por pedido -> un crédito
COMMISSION en la billetera cuando vence el holdback.

Marcadores durables (idempotencia entre corridas y corridas concurrentes):
- affiliate_sales.order_id UNIQUE          => "ya creada"
- affiliate_sales.credited_entry_id        => "ya acreditada"
- ledger idempotency_key affiliate-sale:<id> => el crédito existe una sola vez
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from flask import current_app
from sqlalchemy import and_, or_, select

from settlement.errors import AccountNotEligible, SettlementError
from settlement.models import db
from settlement.models.account import Account, OwnerType
from settlement.models.affiliate import Affiliate, AffiliateSale, AffiliateSaleStatus
from settlement.models.ledger import LedgerEntryType
from settlement.models.order import Order, OrderStatus
from settlement.services.ledger_store import LedgerStore
from settlement.services.tx import account_key, run_in_transaction
from settlement.utils.money import ZERO, as_utc, to_money, utcnow

log = logging.getLogger("affiliate_release")

CREDITED = "credited"
ALREADY_PROCESSED = "already_processed"
HOLDBACK = "holdback"
SKIPPED = "skipped"
ERROR = "error"

OUTCOMES = (CREDITED, ALREADY_PROCESSED, HOLDBACK, SKIPPED, ERROR)


@dataclass
class ReleaseOutcome:
    order_id: int
    outcome: str
    sale_id: Optional[int] = None
    entry_id: Optional[int] = None
    amount: Optional[Decimal] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "outcome": self.outcome,
            "sale_id": self.sale_id,
            "entry_id": self.entry_id,
            "amount": None if self.amount is None else str(self.amount),
            "reason": self.reason,
        }


@dataclass
class ReleaseReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    results: List[ReleaseOutcome] = field(default_factory=list)
    stopped_early: bool = False

    @property
    def counts(self) -> Dict[str, int]:
        out = {k: 0 for k in OUTCOMES}
        for r in self.results:
            out[r.outcome] = out.get(r.outcome, 0) + 1
        return out

    @property
    def credited_total(self) -> Decimal:
        total = ZERO
        for r in self.results:
            if r.outcome == CREDITED and r.amount is not None:
                total += r.amount
        return total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "processed": len(self.results),
            "counts": self.counts,
            "credited_total": str(self.credited_total),
            "stopped_early": self.stopped_early,
            "results": [r.to_dict() for r in self.results],
        }


def commission_for(subtotal: Any, rate: Any) -> Decimal:
    return to_money(Decimal(str(subtotal or 0)) * Decimal(str(rate or 0)) / Decimal("100"))


class AffiliateCommissionReleaseJob:

    def __init__(self, *, holdback_days: Optional[int] = None, batch_limit: Optional[int] = None) -> None:
        cfg = current_app.config
        self.holdback = timedelta(days=int(holdback_days if holdback_days is not None else cfg.get("AFFILIATE_HOLDBACK_DAYS", 7)))
        self.batch_limit = int(batch_limit if batch_limit is not None else cfg.get("RELEASE_BATCH_LIMIT", 500))

    # -------------------------------------------------------------------------
    # Batch
    # -------------------------------------------------------------------------

    def run(
        self,
        order_ids: Optional[Iterable[int]] = None,
        *,
        now: Optional[datetime] = None,
        limit: Optional[int] = None,
        deadline: Optional[datetime] = None,
    ) -> ReleaseReport:
        now = as_utc(now) or utcnow()
        cap = int(limit) if limit is not None else self.batch_limit
        report = ReleaseReport(started_at=utcnow())

        candidates = self._candidates(order_ids, cap)
        for order_id in candidates:
            if len(report.results) >= cap:
                report.stopped_early = True
                break
            if deadline is not None and utcnow() >= as_utc(deadline):
                report.stopped_early = True
                break

            try:
                result = self._process_order(order_id, now)
            except SettlementError as e:
                log.warning("pedido %s: %s (%s)", order_id, e.code, e.message)
                result = ReleaseOutcome(order_id=order_id, outcome=ERROR, reason=e.code)
            except Exception as e:
                log.exception("pedido %s: error inesperado", order_id)
                result = ReleaseOutcome(order_id=order_id, outcome=ERROR, reason=type(e).__name__)
            report.results.append(result)

        report.finished_at = utcnow()
        log.info(
            "release job: %s pedidos %s total=%s stopped_early=%s",
            len(report.results), report.counts, report.credited_total, report.stopped_early,
        )
        return report

    def _candidates(self, order_ids: Optional[Iterable[int]], cap: int) -> List[int]:
        if order_ids is not None:
            seen: Dict[int, None] = {}
            for oid in order_ids:
                seen.setdefault(int(oid), None)
            return list(seen)

        # sin venta todavía, o venta confirmada aún no acreditada
        q = (
            select(Order.id)
            .outerjoin(AffiliateSale, AffiliateSale.order_id == Order.id)
            .where(
                Order.status == OrderStatus.DELIVERED,
                Order.affiliate_id.is_not(None),
                or_(
                    AffiliateSale.id.is_(None),
                    and_(
                        AffiliateSale.credited_entry_id.is_(None),
                        AffiliateSale.status == AffiliateSaleStatus.CONFIRMED,
                        AffiliateSale.commission_amount > 0,
                    ),
                ),
            )
            .order_by(Order.delivered_at.asc(), Order.id.asc())
            .limit(cap + 1)
        )
        return [int(x) for x in db.session.execute(q).scalars().all()]

    # -------------------------------------------------------------------------
    # Unidad por pedido
    # -------------------------------------------------------------------------

    def _process_order(self, order_id: int, now: datetime) -> ReleaseOutcome:
        order = db.session.get(Order, int(order_id))
        if order is None:
            return ReleaseOutcome(order_id=order_id, outcome=SKIPPED, reason="order_not_found")
        if order.status != OrderStatus.DELIVERED or order.affiliate_id is None or order.delivered_at is None:
            return ReleaseOutcome(order_id=order_id, outcome=SKIPPED, reason="not_eligible")

        affiliate = db.session.get(Affiliate, order.affiliate_id)
        if affiliate is None:
            return ReleaseOutcome(order_id=order_id, outcome=SKIPPED, reason="affiliate_not_found")

        wallet = Account.for_owner(OwnerType.AFFILIATE, affiliate.id)
        if wallet is None:
            raise AccountNotEligible("Afiliado sin billetera", affiliate_id=affiliate.id)

        wallet_id = wallet.id

        def _unit() -> ReleaseOutcome:
            sale = db.session.execute(
                select(AffiliateSale)
                .where(AffiliateSale.order_id == order.id)
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()

            if sale is None:
                sale = AffiliateSale(
                    affiliate_id=affiliate.id,
                    order_id=order.id,
                    order_subtotal=order.subtotal,
                    commission_rate=affiliate.commission_rate,
                    commission_amount=commission_for(order.subtotal, affiliate.commission_rate),
                    status=AffiliateSaleStatus.CONFIRMED,
                    available_at=as_utc(order.delivered_at) + self.holdback,
                )
                db.session.add(sale)
                db.session.flush()
                log.info("venta afiliado creada sale=%s order=%s amount=%s", sale.id, order.number, sale.commission_amount)

            base = dict(order_id=order.id, sale_id=sale.id, amount=to_money(sale.commission_amount))

            if sale.is_credited:
                return ReleaseOutcome(outcome=ALREADY_PROCESSED, entry_id=sale.credited_entry_id, **base)
            if sale.status != AffiliateSaleStatus.CONFIRMED:
                return ReleaseOutcome(outcome=SKIPPED, reason=f"sale_{sale.status.value.lower()}", **base)
            if to_money(sale.commission_amount) <= 0:
                return ReleaseOutcome(outcome=SKIPPED, reason="zero_commission", **base)
            if not sale.is_matured(now):
                return ReleaseOutcome(outcome=HOLDBACK, reason=as_utc(sale.available_at).isoformat(), **base)

            entry = LedgerStore.post_entry(
                wallet_id,
                LedgerEntryType.COMMISSION,
                sale.commission_amount,
                f"Comissão afiliado - pedido {order.number}",
                f"order:{order.number}",
                order_id=order.id,
                idempotency_key=f"affiliate-sale:{sale.id}",
            )
            sale.credited_entry_id = entry.id
            sale.credited_at = now
            db.session.flush()
            return ReleaseOutcome(outcome=CREDITED, entry_id=entry.id, **base)

        return run_in_transaction(_unit, keys=[account_key(wallet_id)], label=f"release:{order_id}")


__all__ = [
    "AffiliateCommissionReleaseJob",
    "ReleaseReport",
    "ReleaseOutcome",
    "commission_for",
    "CREDITED",
    "ALREADY_PROCESSED",
    "HOLDBACK",
    "SKIPPED",
    "ERROR",
]
