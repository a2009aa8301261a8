from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Enum, Index, Integer, Numeric, String, event
from sqlalchemy.orm import Mapped, attributes, mapped_column, validates

from settlement.errors import InvalidLedgerOperation, InvalidWithdrawalState, PayoutDestinationMissing
from settlement.models import db
from settlement.utils.money import ZERO, gen_account_number, safe_str, utcnow

BALANCE_FIELDS = ("balance", "blocked_balance", "total_received", "total_withdrawn", "ledger_seq")

_DIGITS_RE = re.compile(r"\D+")
_EMAIL_RE = re.compile(r"^(?=.{3,254}$)[^@\s]+@[^@\s]+\.[^@\s]+$")


class OwnerType(str, enum.Enum):
    SELLER = "SELLER"
    AFFILIATE = "AFFILIATE"


class AccountStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    BLOCKED = "BLOCKED"


class PayoutMethod(str, enum.Enum):
    PIX = "PIX"
    BANK_TRANSFER = "BANK_TRANSFER"


class PixKeyType(str, enum.Enum):
    CPF = "CPF"
    CNPJ = "CNPJ"
    EMAIL = "EMAIL"
    PHONE = "PHONE"
    RANDOM = "RANDOM"


# =============================================================================
# Payout destination (variante etiquetada: PIX vs cuenta bancaria)
# =============================================================================

@dataclass(frozen=True)
class PayoutDestination:
    method: PayoutMethod
    pix_key_type: Optional[PixKeyType] = None
    pix_key: Optional[str] = None
    bank_code: Optional[str] = None
    bank_name: Optional[str] = None
    agency: Optional[str] = None
    bank_account: Optional[str] = None
    account_kind: Optional[str] = None  # CHECKING | SAVINGS

    @classmethod
    def pix(cls, key_type: Any, key: Any) -> "PayoutDestination":
        return cls(method=PayoutMethod.PIX, pix_key_type=PixKeyType(str(key_type).upper()), pix_key=safe_str(key, 140))

    @classmethod
    def bank(
        cls,
        *,
        bank_name: Any,
        agency: Any,
        bank_account: Any,
        account_kind: Any = "CHECKING",
        bank_code: Any = None,
    ) -> "PayoutDestination":
        return cls(
            method=PayoutMethod.BANK_TRANSFER,
            bank_code=safe_str(bank_code, 10) or None,
            bank_name=safe_str(bank_name, 80),
            agency=safe_str(agency, 10),
            bank_account=safe_str(bank_account, 20),
            account_kind=safe_str(account_kind, 10).upper() or "CHECKING",
        )

    @classmethod
    def from_payload(cls, data: Optional[Dict[str, Any]]) -> Optional["PayoutDestination"]:
        if not data:
            return None
        method = safe_str(data.get("method"), 20).upper()
        try:
            if method == PayoutMethod.PIX.value:
                return cls.pix(data.get("pix_key_type"), data.get("pix_key")).validated()
            if method in (PayoutMethod.BANK_TRANSFER.value, "TED"):
                return cls.bank(
                    bank_name=data.get("bank_name"),
                    agency=data.get("agency"),
                    bank_account=data.get("bank_account"),
                    account_kind=data.get("account_kind") or "CHECKING",
                    bank_code=data.get("bank_code"),
                ).validated()
        except ValueError as e:
            raise PayoutDestinationMissing(f"Destino de pago inválido: {e}") from e
        raise PayoutDestinationMissing("Método de pago inválido")

    def validated(self) -> "PayoutDestination":
        if self.method == PayoutMethod.PIX:
            if not self.pix_key or not self.pix_key_type:
                raise ValueError("clave PIX obligatoria")
            digits = _DIGITS_RE.sub("", self.pix_key)
            if self.pix_key_type == PixKeyType.CPF and len(digits) != 11:
                raise ValueError("CPF debe tener 11 dígitos")
            if self.pix_key_type == PixKeyType.CNPJ and len(digits) != 14:
                raise ValueError("CNPJ debe tener 14 dígitos")
            if self.pix_key_type == PixKeyType.EMAIL and not _EMAIL_RE.match(self.pix_key):
                raise ValueError("email PIX inválido")
            if self.pix_key_type == PixKeyType.PHONE and not (10 <= len(digits) <= 13):
                raise ValueError("teléfono PIX inválido")
            return self

        if not (self.bank_name and self.agency and self.bank_account):
            raise ValueError("datos bancarios incompletos")
        if self.account_kind not in {"CHECKING", "SAVINGS"}:
            raise ValueError("tipo de cuenta inválido")
        return self

    def masked(self) -> str:
        if self.method == PayoutMethod.PIX:
            return f"PIX {self.pix_key_type.value if self.pix_key_type else ''} ***{(self.pix_key or '')[-4:]}"
        return f"{self.bank_name} ag {self.agency} cc ***{(self.bank_account or '')[-3:]}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method.value,
            "pix_key_type": self.pix_key_type.value if self.pix_key_type else None,
            "pix_key": self.pix_key,
            "bank_code": self.bank_code,
            "bank_name": self.bank_name,
            "agency": self.agency,
            "bank_account": self.bank_account,
            "account_kind": self.account_kind,
        }


class PayoutDestinationMixin:
    """Columnas planas de destino; se leen/escriben siempre vía `payout_destination`."""

    payout_method: Mapped[Optional[PayoutMethod]] = mapped_column(Enum(PayoutMethod, name="payout_method"), nullable=True)
    pix_key_type: Mapped[Optional[PixKeyType]] = mapped_column(Enum(PixKeyType, name="pix_key_type"), nullable=True)
    pix_key: Mapped[Optional[str]] = mapped_column(String(140), nullable=True)
    bank_code: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    bank_name: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    agency: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    bank_account: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    account_kind: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)

    @property
    def payout_destination(self) -> Optional[PayoutDestination]:
        if self.payout_method is None:
            return None
        dest = PayoutDestination(
            method=self.payout_method,
            pix_key_type=self.pix_key_type,
            pix_key=self.pix_key,
            bank_code=self.bank_code,
            bank_name=self.bank_name,
            agency=self.agency,
            bank_account=self.bank_account,
            account_kind=self.account_kind,
        )
        try:
            return dest.validated()
        except ValueError:
            return None

    @payout_destination.setter
    def payout_destination(self, dest: Optional[PayoutDestination]) -> None:
        if dest is not None:
            try:
                dest = dest.validated()
            except ValueError as e:
                raise PayoutDestinationMissing(f"Destino de pago inválido: {e}") from e
        self.payout_method = dest.method if dest else None
        self.pix_key_type = dest.pix_key_type if dest else None
        self.pix_key = dest.pix_key if dest else None
        self.bank_code = dest.bank_code if dest else None
        self.bank_name = dest.bank_name if dest else None
        self.agency = dest.agency if dest else None
        self.bank_account = dest.bank_account if dest else None
        self.account_kind = dest.account_kind if dest else None


# =============================================================================
# Account (cuenta digital del vendedor / billetera del afiliado)
# =============================================================================

class Account(PayoutDestinationMixin, db.Model):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_number: Mapped[str] = mapped_column(String(20), nullable=False, unique=True, index=True, default=gen_account_number)

    owner_type: Mapped[OwnerType] = mapped_column(Enum(OwnerType, name="account_owner_type"), nullable=False, index=True)
    owner_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)

    status: Mapped[AccountStatus] = mapped_column(
        Enum(AccountStatus, name="account_status"), nullable=False, index=True, default=AccountStatus.ACTIVE
    )

    balance: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=ZERO)
    blocked_balance: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=ZERO)
    total_received: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=ZERO)
    total_withdrawn: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=ZERO)

    ledger_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("blocked_balance >= 0", name="ck_account_blocked_nonneg"),
        CheckConstraint("blocked_balance <= balance", name="ck_account_blocked_lte_balance"),
        CheckConstraint("ledger_seq >= 0", name="ck_account_seq_nonneg"),
        Index("ix_account_owner", "owner_type", "owner_id", unique=True),
    )

    @validates("status")
    def _v_status(self, _k: str, v: Any) -> AccountStatus:
        return v if isinstance(v, AccountStatus) else AccountStatus(str(v).upper())

    @classmethod
    def for_owner(cls, owner_type: OwnerType, owner_id: int) -> Optional["Account"]:
        return db.session.execute(
            db.select(cls).where(cls.owner_type == owner_type, cls.owner_id == int(owner_id))
        ).scalar_one_or_none()

    @property
    def available_balance(self) -> Decimal:
        return (Decimal(self.balance or 0) - Decimal(self.blocked_balance or 0)).quantize(Decimal("0.01"))

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        dest = self.payout_destination
        return {
            "id": self.id,
            "account_number": self.account_number,
            "owner_type": self.owner_type.value,
            "owner_id": self.owner_id,
            "status": self.status.value,
            "balance": str(self.balance),
            "blocked_balance": str(self.blocked_balance),
            "available_balance": str(self.available_balance),
            "total_received": str(self.total_received),
            "total_withdrawn": str(self.total_withdrawn),
            "payout_destination": dest.masked() if dest else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<Account id={self.id} {self.owner_type.value}:{self.owner_id} balance={self.balance}>"


# =============================================================================
# Guard: saldo solo cambia a través del LedgerStore
# =============================================================================

@event.listens_for(Account, "before_insert")
def _before_insert_account(_mapper, _conn, target: Account) -> None:
    for f in BALANCE_FIELDS:
        v = getattr(target, f, None)
        if v not in (None, 0) and not getattr(target, "_ledger_posting", False):
            raise InvalidLedgerOperation(f"Account.{f} must start at zero")


@event.listens_for(Account, "before_update")
def _before_update_account(_mapper, _conn, target: Account) -> None:
    if getattr(target, "_ledger_posting", False):
        return
    for f in BALANCE_FIELDS:
        if attributes.get_history(target, f).has_changes():
            raise InvalidLedgerOperation(f"Account.{f} can only change through the ledger")


# =============================================================================
# Withdrawal (columnas comunes a retiros de afiliado y de vendedor)
# =============================================================================

class WithdrawalStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PAID = "PAID"


# PENDING -> APPROVED | REJECTED ; APPROVED -> PAID | REJECTED ; PAID/REJECTED son terminales
WITHDRAWAL_TRANSITIONS = {
    WithdrawalStatus.PENDING: {WithdrawalStatus.APPROVED, WithdrawalStatus.REJECTED},
    WithdrawalStatus.APPROVED: {WithdrawalStatus.PAID, WithdrawalStatus.REJECTED},
    WithdrawalStatus.REJECTED: set(),
    WithdrawalStatus.PAID: set(),
}

OPEN_WITHDRAWAL_STATUSES = (WithdrawalStatus.PENDING, WithdrawalStatus.APPROVED)


class WithdrawalMixin(PayoutDestinationMixin):
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    status: Mapped[WithdrawalStatus] = mapped_column(
        Enum(WithdrawalStatus, name="withdrawal_status"), nullable=False, index=True, default=WithdrawalStatus.PENDING
    )

    provider_ref: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    admin_note: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    ledger_entry_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    @validates("status")
    def _v_withdrawal_status(self, _k: str, v: Any) -> WithdrawalStatus:
        new = v if isinstance(v, WithdrawalStatus) else WithdrawalStatus(str(v).upper())
        old = self.status
        if old is None or old == new:
            return new
        if new not in WITHDRAWAL_TRANSITIONS[old]:
            raise InvalidWithdrawalState(f"Transición inválida {old.value} -> {new.value}")
        return new

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_WITHDRAWAL_STATUSES

    def base_dict(self) -> Dict[str, Any]:
        dest = self.payout_destination
        return {
            "id": self.id,
            "amount": str(self.amount),
            "status": self.status.value,
            "method": self.payout_method.value if self.payout_method else None,
            "destination": dest.masked() if dest else None,
            "provider_ref": self.provider_ref,
            "rejection_reason": self.rejection_reason,
            "requested_at": self.requested_at.isoformat() if self.requested_at else None,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
        }


__all__ = [
    "WithdrawalStatus",
    "WithdrawalMixin",
    "WITHDRAWAL_TRANSITIONS",
    "OPEN_WITHDRAWAL_STATUSES",
    "OwnerType",
    "AccountStatus",
    "PayoutMethod",
    "PixKeyType",
    "PayoutDestination",
    "PayoutDestinationMixin",
    "Account",
    "BALANCE_FIELDS",
]
