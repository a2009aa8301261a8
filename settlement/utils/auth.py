from __future__ import annotations

import hmac
import logging
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

from flask import current_app, g, jsonify, request, session

F = TypeVar("F", bound=Callable[..., Any])

log = logging.getLogger("auth")

# -----------------------------
# Session helpers
# -----------------------------

def current_user_id() -> Optional[int]:
    uid = session.get("user_id")
    try:
        return int(uid) if uid is not None else None
    except (TypeError, ValueError):
        return None


def _current_user_is_admin() -> bool:
    """
    1) Si la sesión ya trae session["is_admin"] => lo usa
    2) Si no, lee User.is_admin desde DB usando session["user_id"]
    """
    if session.get("is_admin") is True:
        return True

    uid = current_user_id()
    if not uid:
        return False

    from settlement.models import User, db

    u = db.session.get(User, uid)
    return bool(u is not None and u.is_active and u.is_admin)


def _unauthorized(error: str, status: int):
    return jsonify(ok=False, error=error), status


# -----------------------------
# Service credential (cron / jobs)
# -----------------------------

def _bearer_token() -> str:
    raw = (request.headers.get("Authorization") or "").strip()
    if raw[:7].lower() == "bearer ":
        return raw[7:].strip()
    return ""


def service_token_ok() -> bool:
    """
    Compara el Bearer contra CRON_SECRET en tiempo constante.
    Sin CRON_SECRET configurado no se acepta ningún token.
    """
    expected = (current_app.config.get("CRON_SECRET") or "").strip()
    sent = _bearer_token()
    if not expected or not sent:
        return False
    return hmac.compare_digest(sent.encode("utf-8"), expected.encode("utf-8"))


# -----------------------------
# Decorators
# -----------------------------

def service_token_required(view: F) -> F:
    """Jobs / cron: credencial de servicio, independiente de la sesión."""
    @wraps(view)
    def wrapped(*args: Any, **kwargs: Any):
        if not service_token_ok():
            log.warning("service token rejected path=%s ip=%s", request.path, request.remote_addr)
            return _unauthorized("unauthorized", 401)
        return view(*args, **kwargs)

    return wrapped  # type: ignore[misc]


def login_required(view: F) -> F:
    @wraps(view)
    def wrapped(*args: Any, **kwargs: Any):
        uid = current_user_id()
        if not uid:
            return _unauthorized("login_required", 401)
        g.user_id = uid
        return view(*args, **kwargs)

    return wrapped  # type: ignore[misc]


def admin_required(view: F) -> F:
    """
    Protege rutas /admin:
    - 401 sin sesión
    - 403 si la sesión no es admin
    """
    @wraps(view)
    def wrapped(*args: Any, **kwargs: Any):
        uid = current_user_id()
        if not uid and session.get("is_admin") is not True:
            return _unauthorized("login_required", 401)
        if not _current_user_is_admin():
            return _unauthorized("forbidden", 403)
        g.user_id = uid
        return view(*args, **kwargs)

    return wrapped  # type: ignore[misc]
