import json
import os

import click
from flask import Flask, jsonify
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from payfesa.config import Config
from payfesa.errors import SettlementError
from payfesa.extensions import db, migrate, cors, login_manager


def create_app(test_config=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    env = (app.config.get("ENV_NAME") or "dev").strip().lower()

    # Production safety checks
    if env in ("prod", "production"):
        secret = (app.config.get("SECRET_KEY") or "").strip()
        if not secret or secret == "dev-secret" or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")
        webhook_secret = (app.config.get("PAYCHANGU_WEBHOOK_SECRET") or "").strip()
        if app.config.get("PAYCHANGU_WEBHOOK_STRICT") and not webhook_secret:
            raise RuntimeError("PAYCHANGU_WEBHOOK_SECRET must be set when webhook signatures are enforced")

    # Ensure instance dir exists for SQLite paths
    os.makedirs(app.config["INSTANCE_DIR"], exist_ok=True)

    # CORS configuration
    cors_origins = (app.config.get("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    from payfesa import auth  # noqa: F401  (registers Flask-Login loaders)
    from payfesa.segments.segment_settlements import settlements_bp, webhooks_bp
    from payfesa.segments.segment_disputes import disputes_bp
    from payfesa.segments.segment_reserve_admin import reserve_admin_bp
    from payfesa.segments.segment_payment_accounts import accounts_bp

    # Register API routes
    app.register_blueprint(settlements_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(disputes_bp)
    app.register_blueprint(reserve_admin_bp)
    app.register_blueprint(accounts_bp)

    @app.errorhandler(SettlementError)
    def _settlement_error(e: SettlementError):
        db.session.rollback()
        return jsonify(e.to_dict()), e.http_status

    @app.errorhandler(Exception)
    def _unexpected_error(e: Exception):
        if isinstance(e, HTTPException):
            return jsonify({"success": False, "error": e.description, "kind": e.name.replace(" ", "")}), e.code
        db.session.rollback()
        app.logger.exception("unhandled error: %s", e)
        return jsonify({"success": False, "error": "Internal error", "kind": "InternalError"}), 500

    # Health check
    @app.get("/api/health")
    def health():
        db_state = "ok"
        try:
            db.session.execute(text("SELECT 1"))
        except Exception:
            db.session.rollback()
            db_state = "fail"
        gateway = app.extensions.get("payment_gateway") is not None or bool(app.config.get("PAYCHANGU_SECRET_KEY"))
        return jsonify({
            "ok": True,
            "service": "payfesa-settlement",
            "env": env,
            "db": db_state,
            "gateway_configured": gateway,
        })

    @app.cli.command("poll-settlements")
    def poll_settlements_command():
        """Verify in-flight settlements with the gateway."""
        from payfesa.jobs.settlement_poller import run_settlement_poller

        click.echo(json.dumps(run_settlement_poller()))

    @app.cli.command("reconcile-reserve")
    def reconcile_reserve_command():
        """Compare the cached reserve balance with the ledger."""
        from payfesa.jobs.reserve_reconciler import reconcile_reserve

        click.echo(json.dumps(reconcile_reserve()))

    with app.app_context():
        from payfesa import models  # noqa: F401
        from payfesa.utils.reserve import get_or_create_reserve

        db.create_all()
        get_or_create_reserve()

    return app
