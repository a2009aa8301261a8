from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from settlement.errors import InvalidPricingInput, InvalidRate, MissingCostBasis, NotFound, PricingLocked
from settlement.models import db
from settlement.models.order import ItemType, Order, OrderItem
from settlement.models.seller import Product, Seller
from settlement.services.tx import run_in_transaction
from settlement.utils.money import TWOPLACES, to_decimal

log = logging.getLogger("commission_calculator")

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class CommissionBreakdown:
    commission_rate: Decimal
    commission_amount: Decimal
    seller_revenue: Decimal
    supplier_cost: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "commission_rate": str(self.commission_rate),
            "commission_amount": str(self.commission_amount),
            "seller_revenue": str(self.seller_revenue),
            "supplier_cost": None if self.supplier_cost is None else str(self.supplier_cost),
        }


def _q(v: Decimal) -> Decimal:
    return v.quantize(TWOPLACES, rounding=ROUND_HALF_UP)


def _item_type(v: Any) -> ItemType:
    if isinstance(v, ItemType):
        return v
    try:
        return ItemType(str(v).strip().upper())
    except ValueError as e:
        raise InvalidPricingInput(f"Tipo de ítem inválido: {v!r}") from e


def _rate(v: Any) -> Decimal:
    try:
        r = to_decimal(v)
    except ValueError as e:
        raise InvalidRate(f"Tasa inválida: {v!r}") from e
    if r < 0 or r > HUNDRED:
        raise InvalidRate("La tasa de comisión debe estar entre 0 y 100", rate=r)
    return r


class CommissionCalculator:
    """
    Precio por línea de pedido.

    Dropshipping:
        descuento     = costo * tasa / 100
        costo_vendedor = costo - descuento
        receita       = unit*qty - costo_vendedor*qty
        comisión      = descuento*qty

    Stock propio:
        comisión = unit*qty*tasa/100
        receita  = unit*qty - comisión

    Sin redondeos intermedios: se cuantiza a centavos solo al final.
    """

    @staticmethod
    def calculate(
        unit_price: Any,
        quantity: Any,
        item_type: Any,
        commission_rate: Any,
        cost_price: Any = None,
    ) -> CommissionBreakdown:
        kind = _item_type(item_type)
        rate = _rate(commission_rate)

        try:
            unit = to_decimal(unit_price)
            qty = int(quantity)
        except (TypeError, ValueError) as e:
            raise InvalidPricingInput("Precio o cantidad inválidos") from e
        if qty < 1:
            raise InvalidPricingInput("La cantidad debe ser >= 1", quantity=quantity)
        if unit < 0:
            raise InvalidPricingInput("El precio unitario no puede ser negativo", unit_price=unit)

        gross = unit * qty

        if kind == ItemType.DROPSHIPPING:
            if cost_price is None or cost_price == "":
                raise MissingCostBasis("Producto dropshipping sin precio de costo")
            try:
                cost = to_decimal(cost_price)
            except ValueError as e:
                raise MissingCostBasis(f"Precio de costo inválido: {cost_price!r}") from e
            if cost < 0:
                raise InvalidPricingInput("El precio de costo no puede ser negativo", cost_price=cost)

            discount = cost * rate / HUNDRED
            vendor_cost = cost - discount
            return CommissionBreakdown(
                commission_rate=rate,
                commission_amount=_q(discount * qty),
                seller_revenue=_q(gross - vendor_cost * qty),
                supplier_cost=_q(vendor_cost * qty),
            )

        commission = gross * rate / HUNDRED
        return CommissionBreakdown(
            commission_rate=rate,
            commission_amount=_q(commission),
            seller_revenue=_q(gross - commission),
        )

    @staticmethod
    def resolve_rate(product: Optional[Product], seller: Optional[Seller]) -> Decimal:
        """Dropshipping usa la tasa del producto; stock propio la del plan del vendedor."""
        if product is not None and product.is_dropshipping:
            if product.dropshipping_commission is None:
                raise InvalidRate("Producto dropshipping sin tasa de comisión", product_id=product.id)
            return _rate(product.dropshipping_commission)
        if seller is None:
            raise InvalidPricingInput("Ítem sin vendedor: no hay tasa de suscripción")
        return _rate(seller.commission_rate)

    @classmethod
    def price_order_item(cls, item: OrderItem) -> CommissionBreakdown:
        """Recalcula y escribe los campos de comisión del ítem (sin commit)."""
        order = item.order
        if order is not None and order.pricing_locked:
            raise PricingLocked("El pedido ya fue pagado o enviado al proveedor", order_id=order.id)

        product = item.product
        seller = item.seller
        if seller is None and product is not None:
            seller = product.seller
            item.seller_id = product.seller_id

        if product is not None:
            item.item_type = ItemType.DROPSHIPPING if product.is_dropshipping else ItemType.STOCK
            if item.item_type == ItemType.DROPSHIPPING:
                item.cost_price = product.cost_price

        rate = item.commission_rate if product is None and seller is None else cls.resolve_rate(product, seller)
        if rate is None:
            raise InvalidPricingInput("Ítem sin producto ni vendedor", item_id=item.id)

        out = cls.calculate(item.unit_price, item.quantity, item.item_type, rate, item.cost_price)
        item.commission_rate = out.commission_rate
        item.commission_amount = out.commission_amount
        item.seller_revenue = out.seller_revenue
        item.supplier_cost = out.supplier_cost
        return out

    @classmethod
    def reprice_order(cls, order_id: int) -> List[CommissionBreakdown]:
        def _unit() -> List[CommissionBreakdown]:
            order = db.session.get(Order, int(order_id))
            if order is None:
                raise NotFound("Pedido no encontrado", order_id=order_id)
            if order.pricing_locked:
                raise PricingLocked("El pedido ya fue pagado o enviado al proveedor", order_id=order.id)
            out = [cls.price_order_item(item) for item in order.items]
            log.info("pedido %s recalculado (%s ítems)", order.number, len(out))
            return out

        return run_in_transaction(_unit, keys=[f"order:{int(order_id)}"], label="reprice_order")


__all__ = ["CommissionCalculator", "CommissionBreakdown"]
