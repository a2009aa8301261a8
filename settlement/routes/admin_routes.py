# settlement/routes/admin_routes.py
from __future__ import annotations

import logging
from typing import Any, Dict, Tuple

from flask import Blueprint, Response, g, jsonify, request

from settlement.services.consistency_auditor import ConsistencyAuditor
from settlement.services.ledger_store import LedgerStore
from settlement.services.withdrawal_processor import WithdrawalProcessor
from settlement.utils.auth import admin_required

log = logging.getLogger("admin_routes")

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")

_ACTIONS = {"approve", "reject", "pay"}


def _json(payload: Dict[str, Any], status: int = 200) -> Tuple[Response, int]:
    return jsonify(payload), int(status)


def _payload() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


@admin_bp.get("/consistency")
@admin_required
def consistency():
    return _json(ConsistencyAuditor().audit().to_dict())


@admin_bp.get("/withdrawals/<kind>")
@admin_required
def list_withdrawals(kind: str):
    try:
        items = WithdrawalProcessor.list_withdrawals(
            kind, status=request.args.get("status") or None, limit=request.args.get("limit", 50, type=int)
        )
    except ValueError:
        return _json({"ok": False, "error": "invalid_filter"}, 400)
    return _json({"ok": True, "withdrawals": [w.to_dict() for w in items]})


@admin_bp.post("/withdrawals/<kind>/<int:withdrawal_id>/<action>")
@admin_required
def withdrawal_action(kind: str, withdrawal_id: int, action: str):
    if action not in _ACTIONS:
        return _json({"ok": False, "error": "unknown_action"}, 404)

    data = _payload()
    if action == "approve":
        w = WithdrawalProcessor.approve_withdrawal(kind, withdrawal_id, note=data.get("note"))
    elif action == "reject":
        w = WithdrawalProcessor.reject_withdrawal(kind, withdrawal_id, data.get("reason"))
    else:
        w = WithdrawalProcessor.mark_withdrawal_paid(kind, withdrawal_id, data.get("provider_ref"))

    log.info("admin %s: %s %s/%s", g.user_id, action, kind, withdrawal_id)
    return _json({"ok": True, "withdrawal": w.to_dict()})


@admin_bp.post("/accounts/<int:account_id>/status")
@admin_required
def account_status(account_id: int):
    status = (_payload().get("status") or "").strip().upper()
    try:
        acct = LedgerStore.set_status(account_id, status)
    except ValueError:
        return _json({"ok": False, "error": "invalid_status"}, 400)
    log.info("admin %s: cuenta %s -> %s", g.user_id, account_id, acct.status.value)
    return _json({"ok": True, "account": acct.to_dict()})
