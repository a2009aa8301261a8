from __future__ import annotations

"""
Frontera de liquidación: pago aprobado -> asientos por ítem en la cuenta del
vendedor (SALE, comisión, costo de proveedor). Entrega -> job de afiliados acotado al pedido.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select

from settlement.errors import AccountNotEligible, InvalidLedgerOperation, NotFound, SettlementError
from settlement.models import db
from settlement.models.account import Account, OwnerType
from settlement.models.ledger import LedgerEntryType
from settlement.models.order import ItemType, Order, OrderItem, OrderStatus, PaymentStatus
from settlement.services.affiliate_release import AffiliateCommissionReleaseJob, ReleaseReport
from settlement.services.ledger_store import LedgerStore
from settlement.services.tx import account_key, run_in_transaction
from settlement.utils.money import as_utc, to_money, utcnow

log = logging.getLogger("settlement")

SETTLED = "settled"
ALREADY_SETTLED = "already_settled"
NOT_PAID = "not_paid"
ERROR = "error"


@dataclass
class SettlementResult:
    order_id: int
    outcome: str
    entry_ids: List[int] = field(default_factory=list)
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"order_id": self.order_id, "outcome": self.outcome, "entry_ids": list(self.entry_ids), "reason": self.reason}


@dataclass
class SettlementReport:
    results: List[SettlementResult] = field(default_factory=list)

    @property
    def counts(self) -> Dict[str, int]:
        out = {SETTLED: 0, ALREADY_SETTLED: 0, NOT_PAID: 0, ERROR: 0}
        for r in self.results:
            out[r.outcome] = out.get(r.outcome, 0) + 1
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": True, "processed": len(self.results), "counts": self.counts, "results": [r.to_dict() for r in self.results]}


def _seller_account_ids(order: Order) -> Dict[int, int]:
    """seller_id -> account_id para cada vendedor del pedido."""
    out: Dict[int, int] = {}
    for item in order.items:
        if item.seller_id is None:
            raise InvalidLedgerOperation("Ítem sin vendedor", order_item_id=item.id)
        if item.seller_id in out:
            continue
        acct = Account.for_owner(OwnerType.SELLER, item.seller_id)
        if acct is None:
            raise AccountNotEligible("Vendedor sin cuenta digital", seller_id=item.seller_id)
        out[item.seller_id] = acct.id
    return out


def _post_item(account_id: int, order: Order, item: OrderItem, line_total: Decimal) -> List[int]:
    """
    Asientos de un ítem. La suma siempre da seller_revenue:
    - stock:        SALE +total, COMMISSION -comisión
    - dropshipping: SALE +total, FEE -costo bruto del proveedor, COMMISSION +descuento ganado
    """
    ref = f"order:{order.number}"
    commission = to_money(item.commission_amount or 0)
    plan: List[Tuple[LedgerEntryType, Decimal, str, str]] = [
        (LedgerEntryType.SALE, line_total, f"Venda pedido {order.number}", "sale"),
    ]

    if item.item_type == ItemType.DROPSHIPPING:
        gross_cost = to_money(Decimal(item.supplier_cost or 0) + commission)
        plan.append((LedgerEntryType.FEE, -gross_cost, f"Custo fornecedor pedido {order.number}", "supplier"))
        plan.append((LedgerEntryType.COMMISSION, commission, f"Comissão dropshipping pedido {order.number}", "commission"))
    else:
        plan.append((LedgerEntryType.COMMISSION, -commission, f"Comissão plataforma pedido {order.number}", "commission"))

    ids: List[int] = []
    for entry_type, amount, description, suffix in plan:
        if amount == 0:
            continue
        entry = LedgerStore.post_entry(
            account_id,
            entry_type,
            amount,
            description,
            ref,
            order_id=order.id,
            idempotency_key=f"order-item:{item.id}:{suffix}",
        )
        ids.append(entry.id)
    return ids


class SettlementService:

    @classmethod
    def settle_paid_order(cls, order_id: int, *, now: Optional[datetime] = None) -> SettlementResult:
        now = as_utc(now) or utcnow()
        order = db.session.get(Order, int(order_id))
        if order is None:
            raise NotFound("Pedido no encontrado", order_id=order_id)
        if order.payment_status != PaymentStatus.APPROVED:
            return SettlementResult(order_id=order.id, outcome=NOT_PAID)
        if order.settled_at is not None:
            return SettlementResult(order_id=order.id, outcome=ALREADY_SETTLED)

        accounts = _seller_account_ids(order)

        def _unit() -> SettlementResult:
            fresh = db.session.execute(
                select(Order).where(Order.id == int(order_id)).execution_options(populate_existing=True)
            ).scalar_one()
            if fresh.settled_at is not None:
                return SettlementResult(order_id=fresh.id, outcome=ALREADY_SETTLED)

            entry_ids: List[int] = []
            for item in fresh.items:
                if item.seller_revenue is None:
                    raise InvalidLedgerOperation("Ítem sin precio calculado", order_item_id=item.id)

                line_total = item.line_total
                if line_total == 0:
                    # ítem gratis: nada que liquidar
                    continue

                entry_ids.extend(
                    _post_item(accounts[item.seller_id], fresh, item, line_total)
                )

            fresh.settled_at = now
            if fresh.paid_at is None:
                fresh.paid_at = now
            log.info("pedido %s liquidado (%s asientos)", fresh.number, len(entry_ids))
            return SettlementResult(order_id=fresh.id, outcome=SETTLED, entry_ids=entry_ids)

        return run_in_transaction(
            _unit,
            keys=[account_key(a) for a in accounts.values()],
            label=f"settle:{order_id}",
        )

    @classmethod
    def settle_paid_orders(cls, *, limit: Optional[int] = None, now: Optional[datetime] = None) -> SettlementReport:
        q = (
            select(Order.id)
            .where(Order.payment_status == PaymentStatus.APPROVED, Order.settled_at.is_(None))
            .order_by(Order.id.asc())
        )
        if limit is not None:
            q = q.limit(max(1, int(limit)))

        report = SettlementReport()
        for order_id in db.session.execute(q).scalars().all():
            try:
                report.results.append(cls.settle_paid_order(order_id, now=now))
            except SettlementError as e:
                log.warning("pedido %s no liquidado: %s (%s)", order_id, e.code, e.message)
                report.results.append(SettlementResult(order_id=order_id, outcome=ERROR, reason=e.code))
            except Exception as e:
                log.exception("pedido %s: error inesperado al liquidar", order_id)
                db.session.rollback()
                report.results.append(SettlementResult(order_id=order_id, outcome=ERROR, reason=type(e).__name__))
        log.info("liquidación: %s", report.counts)
        return report

    @classmethod
    def on_delivered(
        cls,
        order_id: int,
        *,
        delivered_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> ReleaseReport:
        """Marca la entrega (si falta) y corre la liberación de afiliados para ese pedido."""
        def _mark() -> None:
            order = db.session.get(Order, int(order_id))
            if order is None:
                raise NotFound("Pedido no encontrado", order_id=order_id)
            if order.delivered_at is None:
                order.delivered_at = as_utc(delivered_at) or utcnow()
            if order.status != OrderStatus.DELIVERED:
                order.status = OrderStatus.DELIVERED

        run_in_transaction(_mark, keys=[f"order:{int(order_id)}"], label="on_delivered")
        return AffiliateCommissionReleaseJob().run([int(order_id)], now=now)


__all__ = ["SettlementService", "SettlementResult", "SettlementReport"]
