from __future__ import annotations

import enum
import re
import unicodedata
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import CheckConstraint, DateTime, Enum, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from settlement.errors import InvalidLedgerOperation
from settlement.models import db
from settlement.models.account import (
    Account,
    OwnerType,
    PayoutDestinationMixin,
    WithdrawalMixin,
    WithdrawalStatus,
)
from settlement.models.seller import _rate
from settlement.utils.money import as_utc, safe_str, to_money, utcnow

CODE_MAX = 80


def _clean_code(v: Any, max_len: int = CODE_MAX) -> str:
    s = safe_str(v, 200).lower()
    s = unicodedata.normalize("NFKD", s)
    s = "".join(ch for ch in s if not unicodedata.combining(ch))
    s = s.replace(" ", "-")
    s = re.sub(r"[^a-z0-9_-]+", "-", s)
    s = re.sub(r"-{2,}", "-", s).strip("-_")
    return s[:max_len] if s else ""


class AffiliateStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    SUSPENDED = "SUSPENDED"


class AffiliateSaleStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PAID = "PAID"
    REJECTED = "REJECTED"


# CONFIRMED <-> PAID: un retiro rechazado devuelve las ventas a CONFIRMED
_SALE_TRANSITIONS = {
    AffiliateSaleStatus.PENDING: {AffiliateSaleStatus.CONFIRMED, AffiliateSaleStatus.REJECTED},
    AffiliateSaleStatus.CONFIRMED: {AffiliateSaleStatus.PAID, AffiliateSaleStatus.REJECTED},
    AffiliateSaleStatus.PAID: {AffiliateSaleStatus.CONFIRMED},
    AffiliateSaleStatus.REJECTED: set(),
}


# =============================================================================
# Affiliate
# =============================================================================

class Affiliate(PayoutDestinationMixin, db.Model):
    __tablename__ = "affiliates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)

    code: Mapped[str] = mapped_column(String(CODE_MAX), nullable=False, unique=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)

    status: Mapped[AffiliateStatus] = mapped_column(
        Enum(AffiliateStatus, name="affiliate_status"), nullable=False, default=AffiliateStatus.PENDING, index=True
    )

    # porcentaje sobre el subtotal del pedido (10 = 10%)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("10.00"))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    user = relationship("User", lazy="select")
    sales = relationship("AffiliateSale", back_populates="affiliate", lazy="select")

    __table_args__ = (
        CheckConstraint("commission_rate >= 0 AND commission_rate <= 100", name="ck_affiliate_rate_range"),
    )

    @validates("code")
    def _v_code(self, _k: str, v: Any) -> str:
        c = _clean_code(v)
        if not c:
            raise ValueError("affiliate code is required")
        return c

    @validates("commission_rate")
    def _v_rate(self, _k: str, v: Any) -> Decimal:
        return _rate(v)

    @property
    def is_approved(self) -> bool:
        return self.status == AffiliateStatus.APPROVED

    @property
    def account(self) -> Optional[Account]:
        if self.id is None:
            return None
        return Account.for_owner(OwnerType.AFFILIATE, self.id)

    def to_dict(self) -> Dict[str, Any]:
        dest = self.payout_destination
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "status": self.status.value,
            "commission_rate": str(self.commission_rate),
            "payout_destination": dest.masked() if dest else None,
        }

    def __repr__(self) -> str:
        return f"<Affiliate id={self.id} code={self.code} status={self.status}>"


# =============================================================================
# AffiliateSale (una por pedido; marcador durable de "ya creado")
# =============================================================================

class AffiliateSale(db.Model):
    __tablename__ = "affiliate_sales"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    affiliate_id: Mapped[int] = mapped_column(Integer, ForeignKey("affiliates.id", ondelete="RESTRICT"), nullable=False, index=True)
    order_id: Mapped[int] = mapped_column(Integer, ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False, unique=True)

    order_subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    commission_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    status: Mapped[AffiliateSaleStatus] = mapped_column(
        Enum(AffiliateSaleStatus, name="affiliate_sale_status"), nullable=False, default=AffiliateSaleStatus.CONFIRMED, index=True
    )

    # entrega + holdback; se fija al crear y no se recalcula
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    # marcador durable de "ya acreditado"
    credited_entry_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, unique=True)
    credited_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    withdrawal_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("affiliate_withdrawals.id", ondelete="SET NULL"), nullable=True, index=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    affiliate = relationship("Affiliate", back_populates="sales", lazy="select")
    order = relationship("Order", lazy="select")
    withdrawal = relationship("AffiliateWithdrawal", back_populates="sales", lazy="select")

    __table_args__ = (
        CheckConstraint("commission_amount >= 0", name="ck_affiliate_sale_commission_nonneg"),
        Index("ix_affiliate_sales_fifo", "affiliate_id", "status", "available_at", "id"),
    )

    @validates("commission_amount", "order_subtotal")
    def _v_money(self, _k: str, v: Any) -> Decimal:
        return to_money(v, allow_negative=False)

    @validates("status")
    def _v_status(self, _k: str, v: Any) -> AffiliateSaleStatus:
        new = v if isinstance(v, AffiliateSaleStatus) else AffiliateSaleStatus(str(v).upper())
        old = self.status
        if old is None or old == new:
            return new
        if new not in _SALE_TRANSITIONS[old]:
            raise InvalidLedgerOperation(f"AffiliateSale {old.value} -> {new.value} no permitido")
        return new

    @property
    def is_credited(self) -> bool:
        return self.credited_entry_id is not None

    def is_matured(self, now: datetime) -> bool:
        return as_utc(self.available_at) <= as_utc(now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "affiliate_id": self.affiliate_id,
            "order_id": self.order_id,
            "order_subtotal": str(self.order_subtotal),
            "commission_amount": str(self.commission_amount),
            "status": self.status.value,
            "available_at": as_utc(self.available_at).isoformat() if self.available_at else None,
            "credited": self.is_credited,
            "withdrawal_id": self.withdrawal_id,
        }

    def __repr__(self) -> str:
        return f"<AffiliateSale id={self.id} order={self.order_id} {self.commission_amount} {self.status}>"


# =============================================================================
# AffiliateWithdrawal
# =============================================================================

class AffiliateWithdrawal(WithdrawalMixin, db.Model):
    __tablename__ = "affiliate_withdrawals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    affiliate_id: Mapped[int] = mapped_column(Integer, ForeignKey("affiliates.id", ondelete="RESTRICT"), nullable=False, index=True)
    account_id: Mapped[int] = mapped_column(Integer, ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False, index=True)

    affiliate = relationship("Affiliate", lazy="select")
    account = relationship("Account", lazy="select")
    sales = relationship("AffiliateSale", back_populates="withdrawal", lazy="select", order_by="AffiliateSale.id")

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_affiliate_withdrawal_amount_pos"),
    )

    kind = "affiliate"

    def to_dict(self) -> Dict[str, Any]:
        out = self.base_dict()
        out.update(
            {
                "kind": self.kind,
                "affiliate_id": self.affiliate_id,
                "account_id": self.account_id,
                "sale_ids": [s.id for s in self.sales],
            }
        )
        return out

    def __repr__(self) -> str:
        return f"<AffiliateWithdrawal id={self.id} affiliate={self.affiliate_id} {self.amount} {self.status}>"


__all__ = [
    "AffiliateStatus",
    "AffiliateSaleStatus",
    "Affiliate",
    "AffiliateSale",
    "AffiliateWithdrawal",
    "WithdrawalStatus",
]
