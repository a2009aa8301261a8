# Sellers, their catalog pricing inputs and seller withdrawals
from __future__ import annotations

import enum
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import CheckConstraint
from sqlalchemy.orm import validates

from settlement.models import db
from settlement.models.account import Account, OwnerType, WithdrawalMixin
from settlement.utils.money import safe_str, to_decimal, utcnow

RATE_MIN = Decimal("0")
RATE_MAX = Decimal("100")


def _rate(v: Any) -> Decimal:
    d = to_decimal(v if v not in (None, "") else 0)
    if d < RATE_MIN or d > RATE_MAX:
        raise ValueError("commission rate must be between 0 and 100")
    return d


class SellerStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"


class Seller(db.Model):
    """
    Vendedor del marketplace.
    - commission_rate: % del plan de suscripción (productos de stock propio)
    - la cuenta digital se abre al aprobar (ver LedgerStore.open_account)
    """
    __tablename__ = "sellers"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)

    store_name = db.Column(db.String(120), nullable=False)
    status = db.Column(db.Enum(SellerStatus, name="seller_status"), nullable=False, default=SellerStatus.PENDING, index=True)

    # porcentaje (12 = 12%)
    commission_rate = db.Column(db.Numeric(5, 2), nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    user = db.relationship("User", lazy="select")
    products = db.relationship("Product", back_populates="seller", lazy="select")

    __table_args__ = (
        CheckConstraint("commission_rate >= 0 AND commission_rate <= 100", name="ck_seller_rate_range"),
    )

    @validates("store_name")
    def _v_store_name(self, _k: str, v: Any) -> str:
        s = safe_str(v, 120)
        if not s:
            raise ValueError("store_name is required")
        return s

    @validates("commission_rate")
    def _v_rate(self, _k: str, v: Any) -> Decimal:
        return _rate(v)

    @property
    def is_active(self) -> bool:
        return self.status == SellerStatus.ACTIVE

    @property
    def account(self) -> Optional[Account]:
        if self.id is None:
            return None
        return Account.for_owner(OwnerType.SELLER, self.id)

    def __repr__(self) -> str:
        return f"<Seller id={self.id} store={self.store_name!r} status={self.status}>"


class Product(db.Model):
    """
    Solo los campos que intervienen en el cálculo de comisión:
    - is_dropshipping: precio de costo del proveedor + descuento de comisión
    - cost_price: costo del proveedor (obligatorio en dropshipping)
    - dropshipping_commission: % de descuento sobre el costo
    """
    __tablename__ = "products"

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("sellers.id", ondelete="SET NULL"), nullable=True, index=True)

    title = db.Column(db.String(180), nullable=False)
    price = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    is_dropshipping = db.Column(db.Boolean, nullable=False, default=False)
    cost_price = db.Column(db.Numeric(12, 2), nullable=True)
    dropshipping_commission = db.Column(db.Numeric(5, 2), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    seller = db.relationship("Seller", back_populates="products", lazy="select")

    @validates("dropshipping_commission")
    def _v_drop_rate(self, _k: str, v: Any) -> Optional[Decimal]:
        if v is None or v == "":
            return None
        return _rate(v)

    def __repr__(self) -> str:
        return f"<Product id={self.id} title={self.title!r}>"


class SellerWithdrawal(WithdrawalMixin, db.Model):
    __tablename__ = "seller_withdrawals"

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("sellers.id", ondelete="RESTRICT"), nullable=False, index=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False, index=True)

    seller = db.relationship("Seller", lazy="select")
    account = db.relationship("Account", lazy="select")

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_seller_withdrawal_amount_pos"),
    )

    kind = "seller"

    def to_dict(self) -> Dict[str, Any]:
        out = self.base_dict()
        out.update({"kind": self.kind, "seller_id": self.seller_id, "account_id": self.account_id})
        return out

    def __repr__(self) -> str:
        return f"<SellerWithdrawal id={self.id} seller={self.seller_id} {self.amount} {self.status}>"


__all__ = ["SellerStatus", "Seller", "Product", "SellerWithdrawal"]
