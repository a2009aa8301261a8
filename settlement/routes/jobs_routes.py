# settlement/routes/jobs_routes.py
"""
Endpoints de cron / jobs.

Autenticación: `Authorization: Bearer <CRON_SECRET>` (credencial de servicio,
independiente de cualquier sesión de usuario).
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from flask import Blueprint, Response, jsonify, request

from settlement.services.affiliate_release import AffiliateCommissionReleaseJob
from settlement.services.consistency_auditor import ConsistencyAuditor
from settlement.services.settlement import SettlementService
from settlement.utils.auth import service_token_required


jobs_bp = Blueprint("jobs", __name__, url_prefix="/jobs")


def _json(payload: Dict[str, Any], status: int = 200) -> Tuple[Response, int]:
    return jsonify(payload), int(status)


def _payload() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _read_limit(data: Dict[str, Any]) -> Optional[int]:
    raw = data.get("limit", request.args.get("limit"))
    if raw in (None, ""):
        return None
    try:
        return max(1, int(raw))
    except (TypeError, ValueError):
        return None


def _read_order_ids(data: Dict[str, Any]) -> Optional[List[int]]:
    raw = data.get("order_ids")
    if raw is None:
        return None
    if not isinstance(raw, list):
        raise ValueError("order_ids debe ser una lista")
    return [int(x) for x in raw]


@jobs_bp.route("/affiliate-commissions", methods=["GET", "POST"])
@service_token_required
def affiliate_commissions():
    data = _payload() if request.method == "POST" else {}
    try:
        order_ids = _read_order_ids(data)
    except (TypeError, ValueError):
        return _json({"ok": False, "error": "invalid_order_ids"}, 400)

    report = AffiliateCommissionReleaseJob().run(order_ids, limit=_read_limit(data))
    return _json(report.to_dict())


@jobs_bp.post("/settle-payments")
@service_token_required
def settle_payments():
    report = SettlementService.settle_paid_orders(limit=_read_limit(_payload()))
    return _json(report.to_dict())


@jobs_bp.get("/consistency")
@service_token_required
def consistency():
    return _json(ConsistencyAuditor().audit().to_dict())
