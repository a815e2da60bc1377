import os
import logging
from datetime import timedelta

import click
from flask import Flask, jsonify

from app.config import config_by_name
from app.errors import PaymentEngineError
from app.extensions import db, migrate, login_manager, csrf, limiter


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from app import models  # noqa: F401

    # --- Register blueprints ---
    from app.blueprints.webhooks import webhooks_bp
    from app.blueprints.payments import payments_bp

    app.register_blueprint(webhooks_bp)
    app.register_blueprint(payments_bp)

    # Webhooks are signed by the provider; the raw body must reach verification untouched
    csrf.exempt(webhooks_bp)

    # --- Health check ---
    @app.route("/health")
    def health():
        return jsonify({"status": "ok"})

    # --- Error handlers (JSON-only service) ---
    @app.errorhandler(PaymentEngineError)
    def engine_error(e):
        return jsonify(e.to_dict()), e.http_status

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "not_found", "message": "Resource not found."}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "method_not_allowed", "message": str(e)}), 405

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({"error": "rate_limited", "message": "Too many requests."}), 429

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "internal_error", "message": "Something went wrong."}), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Control referrer information
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # API responses never render in a browser context
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        # Payment data must not be cached by intermediaries
        response.headers["Cache-Control"] = "no-store"
        # Strict Transport Security (only in production)
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("reprocess-events")
    @click.option("--provider", type=click.Choice(["mercadopago", "stripe"]), default=None,
                  help="Only reprocess events from this provider.")
    @click.option("--older-than", default=5, show_default=True,
                  help="Only events received at least this many minutes ago.")
    def reprocess_events(provider, older_than):
        """Re-run webhook events stuck at received/failed.

        Use after a crash or deploy: events whose background processing
        never finished are picked up again. Replays are idempotent.

        Usage:
            flask reprocess-events
            flask reprocess-events --provider mercadopago --older-than 0
        """
        from app.services.task_runner import reprocess_pending

        processed, failed = reprocess_pending(
            provider=provider, older_than=timedelta(minutes=older_than)
        )
        click.echo(f"Reprocessed events: {processed} processed, {failed} failed")

    @app.cli.command("refresh-tokens")
    @click.option("--within", default=60, show_default=True,
                  help="Refresh tokens expiring within this many minutes.")
    def refresh_tokens(within):
        """Proactively refresh Mercado Pago tokens that expire soon.

        Usage:
            flask refresh-tokens
            flask refresh-tokens --within 1440
        """
        from app.services.credential_service import refresh_expiring_tokens

        refreshed, failed = refresh_expiring_tokens(within_seconds=within * 60)
        click.echo(f"Token refresh: {refreshed} refreshed, {failed} failed")

    @app.cli.command("generate-token-key")
    def generate_token_key():
        """Print a new Fernet key for TOKEN_ENCRYPTION_KEY.

        Changing the key makes stored tokens unreadable; tenants would
        have to reconnect.
        """
        from app.services.token_crypto import generate_key

        click.echo("")
        click.echo("Add this to your environment variables:")
        click.echo(f"  TOKEN_ENCRYPTION_KEY={generate_key()}")
