# Orders and order items
from __future__ import annotations

import enum
from decimal import Decimal

from settlement.models import db
from settlement.utils.money import utcnow


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    REFUNDED = "refunded"


class ItemType(str, enum.Enum):
    DROPSHIPPING = "DROPSHIPPING"
    STOCK = "STOCK"


class Order(db.Model):
    """
    Order:
    - status: PENDING | PROCESSING | SHIPPED | DELIVERED | CANCELLED | REFUNDED
    - payment_status: pending | approved | rejected | refunded
    - fraud_status: None (sin análisis) | approved | review | rejected
    """
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)

    number = db.Column(db.String(40), unique=True, index=True, nullable=False)

    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    affiliate_id = db.Column(db.Integer, db.ForeignKey("affiliates.id", ondelete="SET NULL"), nullable=True, index=True)

    status = db.Column(db.Enum(OrderStatus, name="order_status"), nullable=False, default=OrderStatus.PENDING, index=True)
    payment_status = db.Column(
        db.Enum(PaymentStatus, name="payment_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=PaymentStatus.PENDING,
        index=True,
    )

    # antifraude
    fraud_status = db.Column(db.String(20), nullable=True)
    fraud_score = db.Column(db.Integer, nullable=True)

    # envío
    shipping_method = db.Column(db.String(60), nullable=True)
    shipping_cost = db.Column(db.Numeric(12, 2), nullable=True)

    subtotal = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    sent_to_supplier_at = db.Column(db.DateTime(timezone=True), nullable=True)
    settled_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    # relationships
    buyer = db.relationship("User", back_populates="orders", lazy="select")
    affiliate = db.relationship("Affiliate", lazy="select")
    items = db.relationship("OrderItem", back_populates="order", cascade="all, delete-orphan", lazy="select")

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.APPROVED

    @property
    def pricing_locked(self) -> bool:
        # pagado o ya enviado al proveedor: los montos del ítem quedan congelados
        return self.paid_at is not None or self.sent_to_supplier_at is not None or self.is_paid

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "number": self.number,
            "status": self.status.value if self.status else None,
            "payment_status": self.payment_status.value if self.payment_status else None,
            "affiliate_id": self.affiliate_id,
            "subtotal": str(self.subtotal),
            "total": str(self.total),
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "settled_at": self.settled_at.isoformat() if self.settled_at else None,
        }

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.number} status={self.status}>"


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id", ondelete="SET NULL"), nullable=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("sellers.id", ondelete="SET NULL"), nullable=True, index=True)

    item_type = db.Column(db.Enum(ItemType, name="order_item_type"), nullable=False, default=ItemType.STOCK)

    unit_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    quantity = db.Column(db.Integer, nullable=False, default=1)

    # snapshot al momento del precio; no cambia si el producto cambia
    cost_price = db.Column(db.Numeric(12, 2), nullable=True)

    commission_rate = db.Column(db.Numeric(5, 2), nullable=True)
    commission_amount = db.Column(db.Numeric(12, 2), nullable=True)
    seller_revenue = db.Column(db.Numeric(12, 2), nullable=True)
    supplier_cost = db.Column(db.Numeric(12, 2), nullable=True)  # solo dropshipping

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    order = db.relationship("Order", back_populates="items", lazy="select")
    product = db.relationship("Product", lazy="select")
    seller = db.relationship("Seller", lazy="select")

    @property
    def line_total(self) -> Decimal:
        return (Decimal(self.unit_price or 0) * int(self.quantity or 0)).quantize(Decimal("0.01"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "seller_id": self.seller_id,
            "item_type": self.item_type.value if self.item_type else None,
            "unit_price": str(self.unit_price),
            "quantity": self.quantity,
            "commission_rate": None if self.commission_rate is None else str(self.commission_rate),
            "commission_amount": None if self.commission_amount is None else str(self.commission_amount),
            "seller_revenue": None if self.seller_revenue is None else str(self.seller_revenue),
            "supplier_cost": None if self.supplier_cost is None else str(self.supplier_cost),
        }

    def __repr__(self) -> str:
        return f"<OrderItem id={self.id} order_id={self.order_id} qty={self.quantity}>"
