# wsgi.py: entrypoint para gunicorn (`gunicorn wsgi:app`)
from __future__ import annotations

import logging
import time
from typing import Any, Dict, Tuple

from sqlalchemy import text

from settlement import create_app
from settlement.models import db

log = logging.getLogger("wsgi")

t0 = time.time()
app = create_app()
log.info("✅ create_app() OK en %.3fs", time.time() - t0)


@app.get("/ready")
def ready() -> Tuple[Dict[str, Any], int]:
    """Readiness: ping real a la DB."""
    t = time.time()
    try:
        db.session.execute(text("SELECT 1"))
    except Exception as e:
        db.session.rollback()
        log.warning("ready: DB no disponible: %s", e)
        return {"ok": False, "db": "degraded", "error": type(e).__name__}, 503
    return {"ok": True, "db": "ok", "latency_s": round(time.time() - t, 4)}, 200
