from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from flask import current_app
from sqlalchemy import exists, func, or_, select

from settlement.models import db
from settlement.models.account import Account
from settlement.models.order import ItemType, Order, OrderItem, OrderStatus, PaymentStatus
from settlement.models.user import User
from settlement.services.ledger_store import LedgerStore
from settlement.utils.money import as_utc, utcnow

log = logging.getLogger("consistency_auditor")

CATEGORIES = (
    "stuck_processing",
    "missing_buyer",
    "missing_shipping",
    "missing_fraud_status",
    "processing_without_payment",
    "drop_items_without_seller",
    "orders_without_items",
    "ledger_chain_breaks",
    "balance_mismatches",
)


@dataclass
class AuditFinding:
    count: int = 0
    sample_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"count": self.count, "sample_ids": list(self.sample_ids)}


@dataclass
class AuditReport:
    checked_at: datetime
    findings: Dict[str, AuditFinding] = field(default_factory=dict)

    @property
    def total_issues(self) -> int:
        return sum(f.count for f in self.findings.values())

    @property
    def healthy(self) -> bool:
        return self.total_issues == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "checked_at": self.checked_at.isoformat(),
            "healthy": self.healthy,
            "total_issues": self.total_issues,
            "findings": {k: v.to_dict() for k, v in self.findings.items()},
        }


class ConsistencyAuditor:
    """Solo lectura: cuenta y muestrea, nunca corrige."""

    def __init__(
        self,
        *,
        stuck_hours: Optional[int] = None,
        fraud_threshold: Optional[int] = None,
        sample_size: Optional[int] = None,
    ) -> None:
        cfg = current_app.config
        self.stuck_hours = int(stuck_hours if stuck_hours is not None else cfg.get("STUCK_PROCESSING_HOURS", 48))
        self.fraud_threshold = int(fraud_threshold if fraud_threshold is not None else cfg.get("FRAUD_SCORE_REVIEW_THRESHOLD", 30))
        self.sample_size = int(sample_size if sample_size is not None else cfg.get("AUDIT_SAMPLE_SIZE", 20))

    def audit(self, now: Optional[datetime] = None) -> AuditReport:
        now = as_utc(now) or utcnow()
        report = AuditReport(checked_at=now)

        order_checks = {
            "stuck_processing": [
                Order.status == OrderStatus.PROCESSING,
                Order.updated_at < now - timedelta(hours=self.stuck_hours),
            ],
            "missing_buyer": [
                or_(
                    Order.buyer_id.is_(None),
                    ~exists().where(User.id == Order.buyer_id),
                )
            ],
            "missing_shipping": [
                Order.status.in_([OrderStatus.PROCESSING, OrderStatus.SHIPPED]),
                or_(Order.shipping_method.is_(None), Order.shipping_method == "", Order.shipping_cost.is_(None)),
            ],
            "missing_fraud_status": [
                Order.fraud_score >= self.fraud_threshold,
                or_(Order.fraud_status.is_(None), Order.fraud_status == ""),
            ],
            "processing_without_payment": [
                Order.status == OrderStatus.PROCESSING,
                Order.payment_status != PaymentStatus.APPROVED,
            ],
            "drop_items_without_seller": [
                exists().where(
                    OrderItem.order_id == Order.id,
                    OrderItem.item_type == ItemType.DROPSHIPPING,
                    OrderItem.seller_id.is_(None),
                )
            ],
            "orders_without_items": [
                ~exists().where(OrderItem.order_id == Order.id)
            ],
        }
        for name, conds in order_checks.items():
            report.findings[name] = self._scan_orders(conds)

        report.findings.update(self._scan_ledger())

        log.info(
            "auditoría: total=%s %s",
            report.total_issues,
            {k: v.count for k, v in report.findings.items() if v.count},
        )
        return report

    def _scan_orders(self, conds: List[Any]) -> AuditFinding:
        base = select(Order.id).where(*conds)
        count = db.session.execute(select(func.count()).select_from(base.subquery())).scalar_one()
        sample = db.session.execute(base.order_by(Order.id.asc()).limit(self.sample_size)).scalars().all()
        return AuditFinding(count=int(count or 0), sample_ids=[int(x) for x in sample])

    def _scan_ledger(self) -> Dict[str, AuditFinding]:
        breaks = AuditFinding()
        mismatches = AuditFinding()

        account_ids = db.session.execute(select(Account.id).order_by(Account.id.asc())).scalars().all()
        for account_id in account_ids:
            chain = LedgerStore.verify_chain(account_id)
            if not chain.chain_ok:
                breaks.count += 1
                if len(breaks.sample_ids) < self.sample_size:
                    breaks.sample_ids.append(int(account_id))
            if not chain.balance_ok:
                mismatches.count += 1
                if len(mismatches.sample_ids) < self.sample_size:
                    mismatches.sample_ids.append(int(account_id))

        return {"ledger_chain_breaks": breaks, "balance_mismatches": mismatches}


__all__ = ["ConsistencyAuditor", "AuditReport", "AuditFinding", "CATEGORIES"]
