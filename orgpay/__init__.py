import os
import logging

import click
from flask import Flask, jsonify

from orgpay.config import config_by_name
from orgpay.extensions import db, migrate, limiter


def create_app(config_name=None, test_config=None):
    """Application factory.

    test_config, if given, is applied on top of the named config before
    any extension is bound (e.g. a different SQLALCHEMY_DATABASE_URI).
    """

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])
    if test_config:
        app.config.update(test_config)

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from orgpay import models  # noqa: F401

    # --- Tenant middleware ---
    from orgpay.middleware.tenant import init_tenant_middleware
    init_tenant_middleware(app)

    # --- Register blueprints ---
    from orgpay.blueprints.donations import donations_bp
    from orgpay.blueprints.billing import billing_bp
    from orgpay.blueprints.webhooks import webhooks_bp

    app.register_blueprint(donations_bp)
    app.register_blueprint(billing_bp)
    app.register_blueprint(webhooks_bp)

    # --- Error handlers ---
    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({"error": "Too many requests"}), 429

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "Internal server error"}), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
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

    @app.cli.command("show-attempt")
    @click.argument("idempotency_key")
    def show_attempt(idempotency_key):
        """Print the payment attempt stored for an idempotency key.

        Usage:
            flask show-attempt demo-checkout-key
        """
        from orgpay.services.idempotency_service import get_attempt_by_key

        attempt = get_attempt_by_key(idempotency_key)
        if attempt is None:
            click.echo(f"No payment attempt for key: {idempotency_key}")
            return

        click.echo(f"  Attempt:   {attempt.id}")
        click.echo(f"  Flow:      {attempt.flow_type}")
        click.echo(f"  Amount:    {attempt.amount_cents} {attempt.currency.upper()}")
        click.echo(f"  Org:       {attempt.organization_id or '-'}")
        click.echo(f"  Status:    {attempt.status}")
        click.echo(f"  Session:   {attempt.stripe_checkout_session_id or '-'}")
        click.echo(f"  URL:       {attempt.checkout_url or '-'}")
        if attempt.last_error:
            click.echo(f"  Error:     {attempt.last_error}")

    @app.cli.command("list-stale-attempts")
    @click.option(
        "--older-than",
        type=int,
        default=None,
        help="Seconds since claim (default: PAYMENT_STALE_PROCESSING_SECONDS).",
    )
    def list_stale(older_than):
        """List processing attempts whose claim winner never recorded a session.

        These become claimable again once past the staleness window.

        Usage:
            flask list-stale-attempts
            flask list-stale-attempts --older-than 60
        """
        from orgpay.services.idempotency_service import list_stale_attempts

        attempts = list_stale_attempts(older_than)
        if not attempts:
            click.echo("No stale payment attempts.")
            return

        for attempt in attempts:
            click.echo(
                f"{attempt.id}  {attempt.idempotency_key}  {attempt.flow_type}  "
                f"claimed_at={attempt.claimed_at.isoformat()}"
            )
        click.echo(f"{len(attempts)} stale attempt(s).")
