"""Settlement · Routes Package

Blueprints JSON del motor de liquidación:
- jobs_bp      → cron / jobs (Bearer CRON_SECRET)
- affiliate_bp → billetera y retiros del afiliado (sesión)
- seller_bp    → cuenta digital, retiros y transferencias del vendedor (sesión)
- admin_bp     → auditoría y ciclo de retiros (sesión admin)
"""

from __future__ import annotations

from .jobs_routes import jobs_bp
from .affiliate_routes import affiliate_bp
from .seller_routes import seller_bp
from .admin_routes import admin_bp

__all__ = ["jobs_bp", "affiliate_bp", "seller_bp", "admin_bp"]
