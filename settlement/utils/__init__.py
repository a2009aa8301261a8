"""
Settlement · Utils Hub
----------------------
Punto único de entrada para utilidades compartidas.

Reglas:
- NO lógica de negocio acá
- SOLO imports limpios y explícitos
- Evita imports circulares (auth importa modelos de forma perezosa)
"""

from __future__ import annotations

# =========================
# Dinero / tiempo
# =========================
from settlement.utils.money import (
    TWOPLACES,
    ZERO,
    as_utc,
    gen_account_number,
    gen_public_id,
    safe_str,
    to_decimal,
    to_money,
    utcnow,
)

# =========================
# Auth / Seguridad
# =========================
from settlement.utils.auth import (
    admin_required,
    current_user_id,
    login_required,
    service_token_ok,
    service_token_required,
)

__all__ = [
    # money
    "TWOPLACES",
    "ZERO",
    "as_utc",
    "gen_account_number",
    "gen_public_id",
    "safe_str",
    "to_decimal",
    "to_money",
    "utcnow",

    # auth
    "admin_required",
    "current_user_id",
    "login_required",
    "service_token_ok",
    "service_token_required",
]
