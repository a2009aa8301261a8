# settlement/routes/affiliate_routes.py
from __future__ import annotations

from typing import Any, Dict, Tuple

from flask import Blueprint, Response, g, jsonify, request
from sqlalchemy import select

from settlement.errors import NotFound, PayoutDestinationMissing
from settlement.models import db
from settlement.models.account import PayoutDestination
from settlement.models.affiliate import Affiliate
from settlement.services.ledger_store import LedgerStore
from settlement.services.tx import tx
from settlement.services.withdrawal_processor import WithdrawalProcessor
from settlement.utils.auth import login_required

affiliate_bp = Blueprint("affiliate", __name__, url_prefix="/affiliate")


def _json(payload: Dict[str, Any], status: int = 200) -> Tuple[Response, int]:
    return jsonify(payload), int(status)


def _payload() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _current_affiliate() -> Affiliate:
    aff = db.session.execute(select(Affiliate).where(Affiliate.user_id == g.user_id)).scalar_one_or_none()
    if aff is None:
        raise NotFound("No sos afiliado")
    return aff


@affiliate_bp.get("/balance")
@login_required
def balance():
    aff = _current_affiliate()
    wallet = aff.account
    return _json(
        {
            "ok": True,
            "affiliate": aff.to_dict(),
            "wallet": LedgerStore.get_balance(wallet.id).to_dict() if wallet else None,
            "withdrawable": WithdrawalProcessor.affiliate_availability(aff.id).to_dict(),
        }
    )


@affiliate_bp.get("/withdrawals")
@login_required
def list_withdrawals():
    aff = _current_affiliate()
    items = WithdrawalProcessor.list_withdrawals("affiliate", owner_id=aff.id, limit=request.args.get("limit", 50, type=int))
    return _json({"ok": True, "withdrawals": [w.to_dict() for w in items]})


@affiliate_bp.post("/withdrawals")
@login_required
def request_withdrawal():
    aff = _current_affiliate()
    w = WithdrawalProcessor.request_affiliate_withdrawal(aff.id, _payload().get("amount"))
    return _json({"ok": True, "withdrawal": w.to_dict()}, 201)


@affiliate_bp.post("/payout-destination")
@login_required
def set_payout_destination():
    aff = _current_affiliate()
    dest = PayoutDestination.from_payload(_payload())
    if dest is None:
        raise PayoutDestinationMissing("Informá PIX o cuenta bancaria")
    with tx():
        aff.payout_destination = dest
    return _json({"ok": True, "payout_destination": dest.masked()})
