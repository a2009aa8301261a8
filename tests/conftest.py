from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.pool import StaticPool

from settlement import create_app
from settlement.models import (
    Affiliate,
    AffiliateStatus,
    ItemType,
    Order,
    OrderItem,
    OrderStatus,
    OwnerType,
    PayoutDestination,
    PaymentStatus,
    Product,
    Seller,
    SellerStatus,
    User,
    db,
)
from settlement.models.ledger import LedgerEntryType
from settlement.services.affiliate_release import AffiliateCommissionReleaseJob
from settlement.services.ledger_store import LedgerStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

_seq = itertools.count(1)


@pytest.fixture()
def app():
    app = create_app(
        "testing",
        overrides={
            # ✅ sqlite:// + StaticPool => una sola conexión viva para todo el test
            "SQLALCHEMY_ENGINE_OPTIONS": {
                "connect_args": {"check_same_thread": False},
                "poolclass": StaticPool,
            },
            "PROPAGATE_EXCEPTIONS": True,
        },
    )

    with app.app_context():
        db.drop_all()
        db.create_all()

        yield app

        db.session.rollback()
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


# ============================================================
# Factories
# ============================================================

@pytest.fixture()
def make_user(app):
    def _make(*, is_admin: bool = False) -> User:
        n = next(_seq)
        u = User(email=f"user{n}@example.com", name=f"User {n}", is_admin=is_admin)
        db.session.add(u)
        db.session.commit()
        return u

    return _make


@pytest.fixture()
def make_seller(app, make_user):
    def _make(
        *,
        rate: str = "12",
        status: SellerStatus = SellerStatus.ACTIVE,
        with_account: bool = True,
        destination: bool = True,
    ) -> Seller:
        user = make_user()
        s = Seller(user_id=user.id, store_name=f"Loja {user.id}", status=status, commission_rate=Decimal(rate))
        db.session.add(s)
        db.session.commit()
        if with_account:
            LedgerStore.open_account(
                OwnerType.SELLER,
                s.id,
                destination=PayoutDestination.pix("EMAIL", user.email) if destination else None,
            )
        return s

    return _make


@pytest.fixture()
def make_affiliate(app, make_user):
    def _make(
        *,
        rate: str = "10",
        status: AffiliateStatus = AffiliateStatus.APPROVED,
        with_account: bool = True,
        destination: bool = True,
    ) -> Affiliate:
        user = make_user()
        a = Affiliate(user_id=user.id, code=f"aff-{user.id}", status=status, commission_rate=Decimal(rate))
        if destination:
            a.payout_destination = PayoutDestination.pix("CPF", "123.456.789-09")
        db.session.add(a)
        db.session.commit()
        if with_account:
            LedgerStore.open_account(OwnerType.AFFILIATE, a.id)
        return a

    return _make


@pytest.fixture()
def make_product(app):
    def _make(seller: Seller, *, dropshipping: bool = False, cost: str = None, drop_rate: str = None, price: str = "100") -> Product:
        p = Product(
            seller_id=seller.id,
            title=f"Produto {next(_seq)}",
            price=Decimal(price),
            is_dropshipping=dropshipping,
            cost_price=Decimal(cost) if cost is not None else None,
            dropshipping_commission=Decimal(drop_rate) if drop_rate is not None else None,
        )
        db.session.add(p)
        db.session.commit()
        return p

    return _make


@pytest.fixture()
def make_order(app, make_user):
    """
    Pedido "sano" por defecto (comprador, envío, un ítem con vendedor)
    para que cada test rompa solo lo que quiere medir.
    """
    def _make(
        *,
        affiliate: Affiliate = None,
        subtotal: str = "100.00",
        status: OrderStatus = OrderStatus.DELIVERED,
        payment_status: PaymentStatus = PaymentStatus.APPROVED,
        delivered_at: datetime = None,
        seller: Seller = None,
        with_items: bool = True,
        **fields,
    ) -> Order:
        buyer = make_user()
        o = Order(
            number=f"MP{next(_seq):06d}",
            buyer_id=buyer.id,
            affiliate_id=affiliate.id if affiliate else None,
            status=status,
            payment_status=payment_status,
            shipping_method="PAC",
            shipping_cost=Decimal("15.00"),
            subtotal=Decimal(subtotal),
            total=Decimal(subtotal) + Decimal("15.00"),
            delivered_at=delivered_at if delivered_at is not None else (
                NOW - timedelta(days=10) if status == OrderStatus.DELIVERED else None
            ),
        )
        for k, v in fields.items():
            setattr(o, k, v)
        db.session.add(o)
        db.session.flush()
        if with_items:
            db.session.add(
                OrderItem(
                    order_id=o.id,
                    seller_id=seller.id if seller else None,
                    item_type=ItemType.STOCK,
                    unit_price=Decimal(subtotal),
                    quantity=1,
                )
            )
        db.session.commit()
        return o

    return _make


@pytest.fixture()
def fund(app):
    """Acredita saldo a una cuenta con un posteo SALE real."""
    def _fund(account_id: int, amount: str) -> None:
        LedgerStore.post(account_id, LedgerEntryType.SALE, Decimal(amount), "Crédito de prueba")

    return _fund


@pytest.fixture()
def credited_sale(app, make_order, seller_for_items):
    """
    Crea un pedido entregado y corre el job real para que la venta quede
    CONFIRMED + acreditada. `days_ago` = días desde la entrega.
    """
    def _make(affiliate: Affiliate, commission: str, *, days_ago: int = 10):
        rate = Decimal(affiliate.commission_rate)
        subtotal = (Decimal(commission) * Decimal("100") / rate).quantize(Decimal("0.01"))
        order = make_order(
            affiliate=affiliate,
            subtotal=str(subtotal),
            delivered_at=NOW - timedelta(days=days_ago),
            seller=seller_for_items,
        )
        report = AffiliateCommissionReleaseJob().run([order.id], now=NOW)
        return order, report.results[0]

    return _make


@pytest.fixture()
def seller_for_items(make_seller):
    return make_seller()


@pytest.fixture()
def login(client):
    def _login(user: User) -> None:
        with client.session_transaction() as s:
            s["user_id"] = user.id

    return _login
