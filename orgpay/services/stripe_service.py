"""Stripe service — all Stripe API calls and webhook handling.

Responsible for:
- Creating hosted Checkout Sessions (donations, subscription changes)
- Verifying webhook signatures
- Dispatching events to handlers, each applied exactly once via the
  stripe_events dedup table
"""

import logging

import stripe
from flask import current_app

from orgpay.extensions import db
from orgpay.models.payment_attempt import PaymentAttempt
from orgpay.services.event_service import apply_event_once
from orgpay.services.idempotency_service import complete_attempt
from orgpay.services.subscription_service import (
    extract_period_end,
    get_organization_id_from_stripe_customer,
    get_subscription_by_stripe_id,
    normalize_subscription_status,
    upsert_subscription,
)

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# Checkout Sessions
# ──────────────────────────────────────────────

def _attempt_metadata(attempt):
    return {
        "payment_attempt_id": attempt.id,
        "flow_type": attempt.flow_type,
        "organization_id": str(attempt.organization_id or ""),
    }


def create_donation_session(attempt, organization, donor_name=None,
                            donor_email=None):
    """Create a one-time Stripe Checkout Session for a donation.

    Funds are routed to the organization's connected account. Amount and
    currency are taken from the stored attempt, not from the request.
    The attempt's idempotency key is passed through to Stripe so a
    repeated call for the same attempt returns the same session.

    Returns (session_id, checkout_url).
    Raises stripe.StripeError on API failures.
    """
    stripe.api_key = current_app.config["STRIPE_SECRET_KEY"]
    app_base_url = current_app.config["APP_BASE_URL"]

    metadata = _attempt_metadata(attempt)
    if donor_name:
        metadata["donor_name"] = donor_name[:200]

    params = {
        "mode": "payment",
        "line_items": [
            {
                "price_data": {
                    "currency": attempt.currency,
                    "unit_amount": attempt.amount_cents,
                    "product_data": {"name": f"Donation to {organization.name}"},
                },
                "quantity": 1,
            }
        ],
        "payment_intent_data": {
            "transfer_data": {
                "destination": attempt.stripe_connected_account_id
                or organization.stripe_connect_account_id,
            },
            "metadata": metadata,
        },
        "success_url": (
            f"{app_base_url}/{organization.slug}/donations"
            f"?checkout=success&session_id={{CHECKOUT_SESSION_ID}}"
        ),
        "cancel_url": f"{app_base_url}/{organization.slug}/donations?checkout=cancel",
        "metadata": metadata,
    }
    if donor_email:
        params["customer_email"] = donor_email

    session = stripe.checkout.Session.create(
        idempotency_key=attempt.idempotency_key, **params
    )
    return session.id, session.url


def create_subscription_session(attempt, organization, price_id,
                                customer_email=None):
    """Create a Stripe Checkout Session for a subscription change.

    Reuses the organization's Stripe customer when one is known.

    Returns (session_id, checkout_url).
    Raises stripe.StripeError on API failures.
    """
    stripe.api_key = current_app.config["STRIPE_SECRET_KEY"]
    app_base_url = current_app.config["APP_BASE_URL"]

    metadata = _attempt_metadata(attempt)
    params = {
        "mode": "subscription",
        "line_items": [{"price": price_id, "quantity": 1}],
        "subscription_data": {"metadata": metadata},
        "success_url": f"{app_base_url}/{organization.slug}/billing?checkout=success",
        "cancel_url": f"{app_base_url}/{organization.slug}/billing?checkout=cancel",
        "metadata": metadata,
    }

    subscription = organization.subscription
    if subscription and subscription.stripe_customer_id:
        params["customer"] = subscription.stripe_customer_id
    elif customer_email:
        params["customer_email"] = customer_email

    session = stripe.checkout.Session.create(
        idempotency_key=attempt.idempotency_key, **params
    )
    return session.id, session.url


# ──────────────────────────────────────────────
# Webhook Handling
# ──────────────────────────────────────────────

def verify_webhook_signature(payload, sig_header, secret=None):
    """Verify Stripe webhook signature and construct the event.

    Uses STRIPE_WEBHOOK_SECRET unless another secret (Connect) is given.
    Raises stripe.SignatureVerificationError on invalid signature.
    """
    webhook_secret = secret or current_app.config["STRIPE_WEBHOOK_SECRET"]
    return stripe.Webhook.construct_event(payload, sig_header, webhook_secret)


def handle_webhook_event(event):
    """Process a verified Stripe webhook event exactly once.

    The event is recorded in stripe_events in the same transaction as its
    handler's writes. Duplicates return immediately; a failing handler
    rolls everything back so the next delivery retries it.

    Returns (success: bool, message: str).
    """
    event_id = event["id"]
    event_type = event["type"]

    handlers = {
        "checkout.session.completed": _handle_checkout_completed,
        "checkout.session.async_payment_succeeded": _handle_async_payment_succeeded,
        "checkout.session.async_payment_failed": _handle_async_payment_failed,
        "checkout.session.expired": _handle_checkout_expired,
        "customer.subscription.updated": _handle_subscription_updated,
        "customer.subscription.deleted": _handle_subscription_deleted,
        "invoice.payment_failed": _handle_payment_failed,
    }
    handler = handlers.get(event_type)

    def _apply():
        if handler:
            handler(event)
        else:
            logger.info(f"No handler for {event_type}, recording {event_id} only")

    try:
        applied = apply_event_once(event_id, event_type, _apply)
    except Exception as e:
        logger.error(f"Error handling {event_type}: {e}", exc_info=True)
        return False, str(e)

    if not applied:
        return True, "already_processed"
    return True, "processed"


# ──────────────────────────────────────────────
# Event Handlers
# ──────────────────────────────────────────────

def _payment_attempt_id(session):
    return (session.get("metadata") or {}).get("payment_attempt_id")


def _payment_intent_id(session):
    payment_intent = session.get("payment_intent")
    if isinstance(payment_intent, dict):
        return payment_intent.get("id")
    return payment_intent


def _handle_checkout_completed(event):
    """Handle checkout.session.completed.

    Marks the payment attempt succeeded once Stripe reports it paid.
    Delayed payment methods complete later via async_payment_succeeded.
    Subscription checkouts also sync the organization's subscription.
    """
    session = event["data"]["object"]
    attempt_id = _payment_attempt_id(session)
    payment_status = session.get("payment_status")

    if payment_status not in ("paid", "no_payment_required"):
        logger.info(
            f"Checkout {session.get('id')} completed with "
            f"payment_status={payment_status}; awaiting async payment"
        )
        return

    complete_attempt(
        PaymentAttempt.SUCCEEDED,
        attempt_id=attempt_id,
        checkout_session_id=session.get("id"),
        payment_intent_id=_payment_intent_id(session),
    )

    if session.get("mode") == "subscription" and session.get("subscription"):
        _sync_subscription_from_checkout(session, attempt_id)


def _sync_subscription_from_checkout(session, attempt_id):
    """Upsert the organization subscription created by a checkout.

    The organization is taken from our own payment attempt, never from
    Stripe metadata.
    """
    attempt = db.session.get(PaymentAttempt, attempt_id) if attempt_id else None
    if attempt is None or not attempt.organization_id:
        logger.warning(
            f"checkout.session.completed: no organization for session {session.get('id')}"
        )
        return

    stripe.api_key = current_app.config["STRIPE_SECRET_KEY"]
    sub = stripe.Subscription.retrieve(session["subscription"])

    upsert_subscription(
        organization_id=attempt.organization_id,
        stripe_subscription_id=session["subscription"],
        status=normalize_subscription_status(sub),
        stripe_customer_id=session.get("customer"),
        current_period_end=extract_period_end(sub),
        cancel_at_period_end=bool(sub.get("cancel_at_period_end", False)),
    )


def _handle_async_payment_succeeded(event):
    session = event["data"]["object"]
    complete_attempt(
        PaymentAttempt.SUCCEEDED,
        attempt_id=_payment_attempt_id(session),
        checkout_session_id=session.get("id"),
        payment_intent_id=_payment_intent_id(session),
    )


def _handle_async_payment_failed(event):
    session = event["data"]["object"]
    complete_attempt(
        PaymentAttempt.FAILED,
        attempt_id=_payment_attempt_id(session),
        checkout_session_id=session.get("id"),
        payment_intent_id=_payment_intent_id(session),
        error="async_payment_failed",
    )


def _handle_checkout_expired(event):
    """Handle checkout.session.expired.

    The hosted session can no longer be paid, so the attempt is failed;
    the payer has to start over with a new idempotency key.
    """
    session = event["data"]["object"]
    complete_attempt(
        PaymentAttempt.FAILED,
        attempt_id=_payment_attempt_id(session),
        checkout_session_id=session.get("id"),
        error="checkout_session_expired",
    )


def _handle_subscription_updated(event):
    """Handle customer.subscription.updated.

    Updates subscription status, period end and cancel flag.
    """
    sub_data = event["data"]["object"]
    stripe_subscription_id = sub_data.get("id")

    existing_sub = get_subscription_by_stripe_id(stripe_subscription_id)
    if existing_sub:
        organization_id = existing_sub.organization_id
    else:
        organization_id = get_organization_id_from_stripe_customer(
            sub_data.get("customer")
        )

    if not organization_id:
        logger.warning(
            f"subscription.updated: cannot find organization for sub={stripe_subscription_id}"
        )
        return

    upsert_subscription(
        organization_id=organization_id,
        stripe_subscription_id=stripe_subscription_id,
        status=normalize_subscription_status(sub_data, event["type"]),
        stripe_customer_id=sub_data.get("customer"),
        current_period_end=extract_period_end(sub_data),
        cancel_at_period_end=bool(sub_data.get("cancel_at_period_end", False)),
    )


def _handle_subscription_deleted(event):
    """Handle customer.subscription.deleted.

    Marks the subscription as canceled.
    """
    sub_data = event["data"]["object"]
    stripe_subscription_id = sub_data.get("id")

    existing_sub = get_subscription_by_stripe_id(stripe_subscription_id)
    if not existing_sub:
        logger.warning(
            f"subscription.deleted: no local record for sub={stripe_subscription_id}"
        )
        return

    existing_sub.status = "canceled"
    existing_sub.cancel_at_period_end = False
    db.session.flush()


def _handle_payment_failed(event):
    """Handle invoice.payment_failed.

    Moves the subscription to past_due if not already.
    """
    invoice = event["data"]["object"]
    stripe_subscription_id = invoice.get("subscription")

    sub = get_subscription_by_stripe_id(stripe_subscription_id)
    if not sub:
        logger.warning(
            f"invoice.payment_failed: no local record for sub={stripe_subscription_id}"
        )
        return

    if sub.status != "past_due":
        sub.status = "past_due"
        db.session.flush()
