"""Donations blueprint — /<org_slug>/donations/*

Routes:
- POST /<org_slug>/donations/checkout — start (or resume) a donation checkout
"""

from functools import partial

from flask import Blueprint, current_app, g, jsonify, request

from orgpay.models.payment_attempt import PaymentAttempt
from orgpay.responses import checkout_response
from orgpay.services.idempotency_service import normalize_currency
from orgpay.services.stripe_service import create_donation_session


donations_bp = Blueprint("donations", __name__)


@donations_bp.route("/<org_slug>/donations/checkout", methods=["POST"])
def donation_checkout(org_slug):
    """Create a hosted Stripe Checkout for a donation to this organization.

    JSON body:
        amount_cents      (int, required)
        currency          (str, default "usd")
        donor_name        (str, optional)
        donor_email       (str, optional)
        idempotency_key   (str, optional; or Idempotency-Key header)
        payment_attempt_id (str, optional; resume a known attempt)

    Retrying with the same idempotency key never creates a second
    Stripe session; it returns the first one's URL.
    """
    data = request.get_json(silent=True) or {}
    organization = g.organization

    if not organization.accepts_donations:
        return jsonify({"error": "This organization is not set up to accept donations"}), 400

    amount_cents = data.get("amount_cents")
    if not isinstance(amount_cents, int) or isinstance(amount_cents, bool):
        return jsonify({"error": "amount_cents must be an integer"}), 400

    min_cents = current_app.config["DONATION_MIN_CENTS"]
    max_cents = current_app.config["DONATION_MAX_CENTS"]
    if amount_cents < min_cents or amount_cents > max_cents:
        return jsonify({
            "error": f"Donation must be between {min_cents} and {max_cents} cents"
        }), 400

    currency = data.get("currency")
    if currency is not None and not (
        isinstance(currency, str) and len(currency.strip()) == 3
        and currency.strip().isalpha()
    ):
        return jsonify({"error": "currency must be a 3-letter ISO code"}), 400

    for field in ("donor_name", "donor_email"):
        if data.get(field) is not None and not isinstance(data[field], str):
            return jsonify({"error": f"{field} must be a string"}), 400

    donor_name = (data.get("donor_name") or "").strip() or None
    donor_email = (data.get("donor_email") or "").strip().lower() or None
    idempotency_key = data.get("idempotency_key") or request.headers.get("Idempotency-Key")

    return checkout_response(
        idempotency_key=idempotency_key,
        payment_attempt_id=data.get("payment_attempt_id"),
        flow_type=PaymentAttempt.DONATION_CHECKOUT,
        amount_cents=amount_cents,
        currency=normalize_currency(currency),
        organization_id=organization.id,
        stripe_connected_account_id=organization.stripe_connect_account_id,
        fingerprint_payload={
            "organization_id": organization.id,
            "donor_name": donor_name,
            "donor_email": donor_email,
        },
        metadata={"donor_name": donor_name, "donor_email": donor_email},
        create_session=partial(
            create_donation_session,
            organization=organization,
            donor_name=donor_name,
            donor_email=donor_email,
        ),
    )
