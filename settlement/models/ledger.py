from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, attributes, mapped_column, relationship, validates

from settlement.errors import InvalidLedgerOperation
from settlement.models import db
from settlement.utils.money import gen_public_id, safe_str, to_money, utcnow


class LedgerEntryType(str, enum.Enum):
    SALE = "SALE"
    COMMISSION = "COMMISSION"
    WITHDRAWAL = "WITHDRAWAL"
    REFUND = "REFUND"
    BONUS = "BONUS"
    ADJUSTMENT_CREDIT = "ADJUSTMENT_CREDIT"
    ADJUSTMENT_DEBIT = "ADJUSTMENT_DEBIT"
    CHARGEBACK = "CHARGEBACK"
    FEE = "FEE"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"


class LedgerEntryStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class EntryRule:
    amount_sign: str  # pos | neg | nonzero


_RULES: Dict[LedgerEntryType, EntryRule] = {
    LedgerEntryType.SALE: EntryRule("pos"),
    LedgerEntryType.BONUS: EntryRule("pos"),
    LedgerEntryType.ADJUSTMENT_CREDIT: EntryRule("pos"),
    LedgerEntryType.TRANSFER_IN: EntryRule("pos"),
    LedgerEntryType.WITHDRAWAL: EntryRule("neg"),
    LedgerEntryType.REFUND: EntryRule("neg"),
    LedgerEntryType.ADJUSTMENT_DEBIT: EntryRule("neg"),
    LedgerEntryType.CHARGEBACK: EntryRule("neg"),
    LedgerEntryType.FEE: EntryRule("neg"),
    LedgerEntryType.TRANSFER_OUT: EntryRule("neg"),
    # vendedor: corte de la plataforma (débito) / afiliado: comisión ganada (crédito)
    LedgerEntryType.COMMISSION: EntryRule("nonzero"),
}


def enforce_sign(entry_type: LedgerEntryType, amount: Decimal) -> None:
    rule = _RULES.get(entry_type)
    if not rule:
        raise InvalidLedgerOperation("unknown entry_type rule")

    ok = {
        "pos": amount > 0,
        "neg": amount < 0,
        "nonzero": amount != 0,
    }.get(rule.amount_sign, False)
    if not ok:
        raise InvalidLedgerOperation(
            f"{entry_type.value} amount violates rule: expected {rule.amount_sign}, got {amount}"
        )


class LedgerEntry(db.Model):
    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    public_id: Mapped[str] = mapped_column(
        String(40), nullable=False, unique=True, index=True, default=lambda: gen_public_id("le")
    )

    account_id: Mapped[int] = mapped_column(Integer, ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False, index=True)
    account = relationship("Account", lazy="select")

    # posición en la cadena de la cuenta (1..n); la unicidad impide intercalar posteos
    seq: Mapped[int] = mapped_column(Integer, nullable=False)

    entry_type: Mapped[LedgerEntryType] = mapped_column(Enum(LedgerEntryType, name="ledger_entry_type"), nullable=False, index=True)
    status: Mapped[LedgerEntryStatus] = mapped_column(
        Enum(LedgerEntryStatus, name="ledger_entry_status"), nullable=False, index=True, default=LedgerEntryStatus.COMPLETED
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    description: Mapped[str] = mapped_column(String(300), nullable=False, default="")
    reference: Mapped[Optional[str]] = mapped_column(String(120), nullable=True, index=True)
    order_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)

    idempotency_key: Mapped[Optional[str]] = mapped_column(String(120), nullable=True, unique=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("account_id", "seq", name="uq_ledger_account_seq"),
        CheckConstraint("seq >= 1", name="ck_ledger_seq_gte_1"),
        Index("ix_ledger_account_created", "account_id", "created_at"),
        Index("ix_ledger_account_type_created", "account_id", "entry_type", "created_at"),
    )

    @validates("description")
    def _v_description(self, _key: str, v: Any) -> str:
        return safe_str(v, 300)

    @validates("reference")
    def _v_reference(self, _key: str, v: Any) -> Optional[str]:
        return safe_str(v, 120) or None

    @validates("idempotency_key")
    def _v_ikey(self, _key: str, v: Any) -> Optional[str]:
        return safe_str(v, 120) or None

    @validates("status")
    def _v_status(self, _key: str, v: Any) -> LedgerEntryStatus:
        new = v if isinstance(v, LedgerEntryStatus) else LedgerEntryStatus(str(v).upper())
        old = self.status
        if old is None or old == new:
            return new
        # único movimiento permitido: PENDING -> COMPLETED | FAILED
        if old != LedgerEntryStatus.PENDING:
            raise InvalidLedgerOperation(f"ledger entry is immutable once {old.value}")
        return new

    @property
    def is_debit(self) -> bool:
        return Decimal(self.amount) < 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "public_id": self.public_id,
            "account_id": self.account_id,
            "seq": self.seq,
            "type": self.entry_type.value,
            "status": self.status.value,
            "amount": str(self.amount),
            "balance_before": str(self.balance_before),
            "balance_after": str(self.balance_after),
            "description": self.description,
            "reference": self.reference,
            "order_id": self.order_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }

    def __repr__(self) -> str:
        return f"<LedgerEntry {self.account_id}#{self.seq} {self.entry_type.value} {self.amount}>"


@event.listens_for(LedgerEntry, "before_insert")
def _before_insert_entry(_mapper, _conn, target: LedgerEntry) -> None:
    target.amount = to_money(target.amount)
    target.balance_before = to_money(target.balance_before)
    target.balance_after = to_money(target.balance_after)

    enforce_sign(target.entry_type, target.amount)
    if target.balance_after != target.balance_before + target.amount:
        raise InvalidLedgerOperation("balance_after must equal balance_before + amount")

    if not target.public_id:
        target.public_id = gen_public_id("le")
    target.created_at = target.created_at or utcnow()
    if target.status == LedgerEntryStatus.COMPLETED and target.processed_at is None:
        target.processed_at = target.created_at


_FROZEN_FIELDS = ("account_id", "seq", "entry_type", "amount", "balance_before", "balance_after", "idempotency_key")


@event.listens_for(LedgerEntry, "before_update")
def _before_update_entry(_mapper, _conn, target: LedgerEntry) -> None:
    for f in _FROZEN_FIELDS:
        if attributes.get_history(target, f).has_changes():
            raise InvalidLedgerOperation(f"LedgerEntry.{f} is immutable")


__all__ = [
    "LedgerEntryType",
    "LedgerEntryStatus",
    "LedgerEntry",
    "enforce_sign",
]
