from __future__ import annotations

import logging
import os
import sys

from dotenv import find_dotenv, load_dotenv

# ==========================================================
# Settlement · run.py (servidor local)
# - Carga .env en local (si existe)
# - Usa PORT de Render / HOST+PORT local
# - Valida SECRET_KEY y CRON_SECRET en producción
# ==========================================================


def _load_dotenv() -> None:
    env_path = find_dotenv(usecwd=True)
    if env_path:
        load_dotenv(env_path, override=False)


def main() -> None:
    _load_dotenv()

    env = (os.getenv("FLASK_ENV") or "production").strip().lower()

    host = os.getenv("HOST", "127.0.0.1")
    port = int(os.getenv("PORT", "5000"))

    # Render suele setear PORT automáticamente
    if os.getenv("RENDER") or os.getenv("RENDER_EXTERNAL_HOSTNAME"):
        host = "0.0.0.0"
        port = int(os.getenv("PORT", "10000"))

    log = logging.getLogger("settlement")

    # En producción exigimos secretos reales
    if env == "production":
        for key in ("SECRET_KEY", "CRON_SECRET"):
            if not os.getenv(key, "").strip():
                raise RuntimeError(f"Falta {key} para producción. Configúrala en el entorno o .env.")

    # Import tardío para que ya estén cargadas las env vars
    from settlement import create_app

    app = create_app(env)

    log.info("🚀 Iniciando motor de liquidación ENV=%s HOST=%s PORT=%s", env, host, port)
    log.info("Python=%s | Platform=%s", sys.version.split()[0], sys.platform)

    app.run(host=host, port=port, debug=app.debug)


if __name__ == "__main__":
    main()
