# settlement/__init__.py: motor de liquidación (app factory)
from __future__ import annotations

import logging
import secrets
from typing import Any, Callable, Dict, List, Mapping, Optional

import click
from flask import Flask, jsonify, request
from werkzeug.middleware.proxy_fix import ProxyFix

# El db ÚNICO vive en el hub de modelos
from settlement.config import get_config
from settlement.errors import SettlementError
from settlement.models import db, init_models


# ============================================================
# Logging
# ============================================================

def _setup_logging(app: Flask) -> None:
    """
    Logging consistente local/prod.
    Respeta LOG_LEVEL si existe.
    """
    lvl = str(app.config.get("LOG_LEVEL") or "").strip().upper()
    if lvl in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
        level = getattr(logging, lvl)
    else:
        level = logging.DEBUG if app.debug else logging.INFO

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d - %(message)s",
        )
    app.logger.setLevel(level)


def _safe_init(app: Flask, label: str, fn: Callable[[], Any]) -> Any:
    try:
        out = fn()
        app.logger.info("✅ %s inicializado", label)
        return out
    except Exception as e:
        app.logger.warning("⚠️ %s no pudo inicializarse: %s", label, e, exc_info=app.debug)
        return None


def _secure_default_secret(app: Flask) -> str:
    """
    En prod: si no hay SECRET_KEY, generamos una aleatoria en runtime
    (no rompe deploy). OJO: reinicios invalidan sesiones.
    """
    if app.config.get("SECRET_KEY"):
        return app.config["SECRET_KEY"]
    return secrets.token_urlsafe(48)


# ============================================================
# App Factory
# ============================================================

def create_app(config_name: Optional[str] = None, overrides: Optional[Mapping[str, Any]] = None) -> Flask:
    app = Flask(__name__)

    app.config.from_object(get_config(config_name))
    if overrides:
        app.config.update(dict(overrides))
    app.config["SECRET_KEY"] = _secure_default_secret(app)
    app.debug = bool(app.config.get("DEBUG"))

    # Render/Proxy: scheme/https y headers correctos detrás de proxy
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)

    _setup_logging(app)
    app.logger.info("🚀 create_app() ENV=%s DEBUG=%s", app.config.get("ENV"), app.debug)

    # -------------------------
    # Extensions (safe)
    # -------------------------
    if app.config.get("ENABLE_COMPRESS"):
        def _compress():
            from flask_compress import Compress
            Compress(app)

        _safe_init(app, "Flask-Compress", _compress)

    if app.config.get("ENABLE_TALISMAN") and not app.config.get("TESTING"):
        def _talisman():
            from flask_talisman import Talisman
            Talisman(
                app,
                force_https=bool(app.config.get("FORCE_HTTPS")),
                content_security_policy=None,  # API JSON, sin HTML
            )

        _safe_init(app, "Flask-Talisman", _talisman)

    def _cache():
        # también es el lock consultivo entre procesos (ver services/tx.py)
        from flask_caching import Cache
        Cache(app, config={
            "CACHE_TYPE": app.config.get("CACHE_TYPE", "SimpleCache"),
            "CACHE_DEFAULT_TIMEOUT": app.config.get("CACHE_DEFAULT_TIMEOUT", 300),
        })

    _safe_init(app, "Flask-Caching", _cache)

    def _migrate():
        from flask_migrate import Migrate
        Migrate(app, db)

    _safe_init(app, "Flask-Migrate", _migrate)

    # -------------------------
    # Models hub
    # -------------------------
    init_models(app, auto_create_tables=app.config.get("ENV") == "development")

    # -------------------------
    # Blueprints
    # -------------------------
    from settlement.routes import admin_bp, affiliate_bp, jobs_bp, seller_bp

    registered: List[str] = []
    for bp in (jobs_bp, affiliate_bp, seller_bp, admin_bp):
        app.register_blueprint(bp)
        registered.append(bp.name)
        app.logger.info("🔗 Blueprint registrado: %s (%s)", bp.name, bp.url_prefix or "/")

    # -------------------------
    # Errores JSON
    # -------------------------
    @app.errorhandler(SettlementError)
    def settlement_error(e: SettlementError):
        db.session.rollback()
        app.logger.info("rechazo %s %s: %s", request.method, request.path, e.code)
        return jsonify(e.to_dict()), e.status

    @app.errorhandler(404)
    def not_found(_e):
        return jsonify({"ok": False, "error": "not_found", "path": request.path}), 404

    @app.errorhandler(405)
    def method_not_allowed(_e):
        return jsonify({"ok": False, "error": "method_not_allowed"}), 405

    @app.errorhandler(500)
    def server_error(e):
        app.logger.exception("🔥 Error 500: %s", e)
        return jsonify({"ok": False, "error": "server_error"}), 500

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "env": app.config.get("ENV"),
            "currency": app.config.get("SETTLEMENT_CURRENCY"),
            "blueprints": registered,
        }

    # -------------------------
    # CLI
    # -------------------------
    @app.cli.command("create-tables")
    def cli_create_tables():
        """Crea tablas en DB (local rápido)."""
        db.create_all()
        click.echo("✅ Tablas creadas")

    @app.cli.command("release-commissions")
    @click.option("--order-id", "order_ids", multiple=True, type=int, help="Limita la corrida a estos pedidos.")
    @click.option("--limit", type=int, default=None, help="Máximo de pedidos a procesar.")
    def cli_release_commissions(order_ids, limit):
        """Libera comisiones de afiliados vencidas."""
        from settlement.services.affiliate_release import AffiliateCommissionReleaseJob

        report = AffiliateCommissionReleaseJob().run(list(order_ids) or None, limit=limit)
        click.echo(f"{report.counts} total={report.credited_total} stopped_early={report.stopped_early}")

    @app.cli.command("settle-payments")
    @click.option("--limit", type=int, default=None)
    def cli_settle_payments(limit):
        """Liquida pedidos con pago aprobado."""
        from settlement.services.settlement import SettlementService

        click.echo(str(SettlementService.settle_paid_orders(limit=limit).counts))

    @app.cli.command("audit-consistency")
    def cli_audit_consistency():
        """Auditoría de consistencia (solo lectura)."""
        from settlement.services.consistency_auditor import ConsistencyAuditor

        report = ConsistencyAuditor().audit()
        for name, finding in report.findings.items():
            click.echo(f"{name:28} {finding.count:6}  {finding.sample_ids[:5]}")
        click.echo(f"total={report.total_issues}")

    return app


__all__ = ["create_app", "db"]
