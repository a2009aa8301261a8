# settlement/models/__init__.py
from __future__ import annotations

from typing import Any, Dict

from flask import Flask
from flask_sqlalchemy import SQLAlchemy

# ==========================================================
# Models HUB
# - 1 solo db global
# - init_models(app)
# - exports reales para: from settlement.models import Account, LedgerEntry, ...
# ==========================================================

db = SQLAlchemy()


def init_models(app: Flask, *, auto_create_tables: bool = False) -> Dict[str, Any]:
    """
    Inicializa db + registra modelos (+ create_all opcional en local/dev).
    """
    db.init_app(app)

    out: Dict[str, Any] = {"ok": True, "models": sorted(__all__[1:])}

    if auto_create_tables:
        with app.app_context():
            db.create_all()

    return out


# Imports al final: los modelos necesitan `db` ya definido.
from settlement.models.user import User  # noqa: E402
from settlement.models.account import Account, AccountStatus, OwnerType, PayoutDestination, PayoutMethod, PixKeyType  # noqa: E402
from settlement.models.ledger import LedgerEntry, LedgerEntryType, LedgerEntryStatus  # noqa: E402
from settlement.models.seller import Seller, SellerStatus, Product, SellerWithdrawal  # noqa: E402
from settlement.models.order import Order, OrderItem, OrderStatus, PaymentStatus, ItemType  # noqa: E402
from settlement.models.affiliate import (  # noqa: E402
    Affiliate,
    AffiliateStatus,
    AffiliateSale,
    AffiliateSaleStatus,
    AffiliateWithdrawal,
    WithdrawalStatus,
)

__all__ = [
    "db",
    "User",
    "Account",
    "AccountStatus",
    "OwnerType",
    "PayoutDestination",
    "PayoutMethod",
    "PixKeyType",
    "LedgerEntry",
    "LedgerEntryType",
    "LedgerEntryStatus",
    "Seller",
    "SellerStatus",
    "Product",
    "SellerWithdrawal",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentStatus",
    "ItemType",
    "Affiliate",
    "AffiliateStatus",
    "AffiliateSale",
    "AffiliateSaleStatus",
    "AffiliateWithdrawal",
    "WithdrawalStatus",
]
