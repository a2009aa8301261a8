# settlement/routes/seller_routes.py
from __future__ import annotations

from typing import Any, Dict, Tuple

from flask import Blueprint, Response, g, jsonify, request
from sqlalchemy import select

from settlement.errors import AccountNotEligible, NotFound
from settlement.models import db
from settlement.models.account import Account, PayoutDestination
from settlement.models.seller import Seller
from settlement.services.ledger_store import LedgerStore
from settlement.services.withdrawal_processor import WithdrawalProcessor
from settlement.utils.auth import login_required
from settlement.utils.money import safe_str

seller_bp = Blueprint("seller", __name__, url_prefix="/seller")


def _json(payload: Dict[str, Any], status: int = 200) -> Tuple[Response, int]:
    return jsonify(payload), int(status)


def _payload() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _current_seller() -> Tuple[Seller, Account]:
    seller = db.session.execute(select(Seller).where(Seller.user_id == g.user_id)).scalar_one_or_none()
    if seller is None:
        raise NotFound("No sos vendedor")
    acct = seller.account
    if acct is None:
        raise AccountNotEligible("Tu cuenta digital todavía no fue abierta")
    return seller, acct


@seller_bp.get("/account")
@login_required
def account():
    _, acct = _current_seller()
    entries = LedgerStore.list_entries(acct.id, limit=request.args.get("limit", 50, type=int))
    return _json(
        {
            "ok": True,
            "account": acct.to_dict(),
            "balance": LedgerStore.get_balance(acct.id).to_dict(),
            "entries": [e.to_dict() for e in entries],
        }
    )


@seller_bp.post("/withdrawals")
@login_required
def request_withdrawal():
    seller, _ = _current_seller()
    data = _payload()
    dest = PayoutDestination.from_payload(data.get("destination")) if data.get("destination") else None
    w = WithdrawalProcessor.request_seller_withdrawal(seller.id, data.get("amount"), dest)
    return _json({"ok": True, "withdrawal": w.to_dict()}, 201)


@seller_bp.post("/transfers")
@login_required
def transfer():
    _, acct = _current_seller()
    data = _payload()

    number = safe_str(data.get("to_account_number"), 20).upper()
    dst = db.session.execute(select(Account).where(Account.account_number == number)).scalar_one_or_none()
    if dst is None:
        raise NotFound("Cuenta destino no encontrada")

    out, inn = LedgerStore.transfer(
        acct.id,
        dst.id,
        data.get("amount"),
        safe_str(data.get("description"), 200) or None,
        idempotency_key=data.get("idempotency_key"),
    )
    return _json({"ok": True, "debit": out.to_dict(), "credit_reference": inn.reference}, 201)
