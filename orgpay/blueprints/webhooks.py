"""Webhooks blueprint — /stripe/webhooks, /stripe/webhooks/connect

Receives Stripe webhook events for the platform account (including
donation checkouts, which are destination charges) and for connected
accounts. Raw body is required for signature verification.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from orgpay.extensions import limiter
from orgpay.services.stripe_service import handle_webhook_event, verify_webhook_signature

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/stripe")


def _webhook_rate_limit():
    return current_app.config["WEBHOOK_RATE_LIMIT"]


def _process(secret):
    """Verify, then hand off to handle_webhook_event (idempotent).

    1. Get raw body (required for signature verification)
    2. Verify signature with the endpoint's secret
    3. Apply the event exactly once
    4. Return 200 to acknowledge, 500 to make Stripe retry
    """
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature")

    if not sig_header:
        logger.warning("Webhook received without Stripe-Signature header")
        return jsonify({"error": "Missing signature"}), 400

    # --- Verify signature ---
    try:
        event = verify_webhook_signature(payload, sig_header, secret)
    except Exception as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        return jsonify({"error": "Invalid signature"}), 400

    # --- Process event (idempotent) ---
    success, message = handle_webhook_event(event)

    if success:
        return jsonify({"status": message}), 200
    else:
        logger.error(f"Webhook processing failed: {message}")
        return jsonify({"error": message}), 500


@webhooks_bp.route("/webhooks", methods=["POST"])
@limiter.limit(_webhook_rate_limit)
def stripe_webhook():
    """Platform account events.

    Includes donation checkouts: they are destination charges created on
    the platform account, so their checkout.session.* events land here.
    """
    return _process(current_app.config["STRIPE_WEBHOOK_SECRET"])


@webhooks_bp.route("/webhooks/connect", methods=["POST"])
@limiter.limit(_webhook_rate_limit)
def stripe_connect_webhook():
    """Events that happen on connected accounts (e.g. account.updated).

    Signed with the Connect endpoint's own secret. Events are recorded
    and deduplicated like platform events.
    """
    secret = current_app.config.get("STRIPE_CONNECT_WEBHOOK_SECRET")
    if not secret:
        logger.warning("Connect webhook received but STRIPE_CONNECT_WEBHOOK_SECRET is not set")
        return jsonify({"error": "Connect webhook not configured"}), 503
    return _process(secret)
