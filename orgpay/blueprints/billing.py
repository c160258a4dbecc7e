"""Billing blueprint — /<org_slug>/billing/*

Routes:
- POST /<org_slug>/billing/checkout — start (or resume) a subscription change
- GET  /<org_slug>/billing          — current subscription status
"""

from functools import partial

from flask import Blueprint, g, jsonify, request

from orgpay.models.payment_attempt import PaymentAttempt
from orgpay.responses import checkout_response
from orgpay.services.stripe_service import create_subscription_session


billing_bp = Blueprint("billing", __name__)

INTERVALS = ("month", "year")


@billing_bp.route("/<org_slug>/billing/checkout", methods=["POST"])
def subscription_checkout(org_slug):
    """Create a hosted Stripe Checkout for a subscription change.

    JSON body:
        price_id        (str, required)
        interval        ("month" | "year", default "month")
        customer_email  (str, optional; used when no Stripe customer exists)
        idempotency_key (str, optional; or Idempotency-Key header)

    Pricing is decided by the Stripe price; the attempt carries amount 0.
    """
    data = request.get_json(silent=True) or {}
    organization = g.organization

    price_id = data.get("price_id")
    if not price_id or not isinstance(price_id, str):
        return jsonify({"error": "price_id is required"}), 400

    interval = data.get("interval") or "month"
    if interval not in INTERVALS:
        return jsonify({"error": "interval must be 'month' or 'year'"}), 400

    idempotency_key = data.get("idempotency_key") or request.headers.get("Idempotency-Key")

    return checkout_response(
        idempotency_key=idempotency_key,
        payment_attempt_id=data.get("payment_attempt_id"),
        flow_type=PaymentAttempt.SUBSCRIPTION_CHECKOUT,
        amount_cents=0,
        currency="usd",
        organization_id=organization.id,
        fingerprint_payload={
            "organization_id": organization.id,
            "price_id": price_id,
            "interval": interval,
        },
        metadata={"price_id": price_id, "interval": interval},
        create_session=partial(
            create_subscription_session,
            organization=organization,
            price_id=price_id,
            customer_email=data.get("customer_email"),
        ),
    )


@billing_bp.route("/<org_slug>/billing")
def billing_overview(org_slug):
    """Current subscription state for the organization."""
    subscription = g.subscription
    if subscription is None:
        return jsonify({"status": "none"})

    return jsonify({
        "status": subscription.status,
        "current_period_end": (
            subscription.current_period_end.isoformat()
            if subscription.current_period_end else None
        ),
        "cancel_at_period_end": bool(subscription.cancel_at_period_end),
    })
