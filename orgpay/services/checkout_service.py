"""Checkout service — single-flight creation of hosted checkout sessions.

Composes the idempotency primitives into the flow every checkout route
uses:

    ensure -> claim -> won:  create session -> record result
                       lost: wait for the winner's result

However many times a request is retried or double-submitted, Stripe is
asked for a checkout session at most once per idempotency key, and every
caller ends up with the same checkout URL.
"""

import logging

from orgpay.models.payment_attempt import PaymentAttempt
from orgpay.services.idempotency_service import (
    PaymentAttemptFailedError,
    claim_attempt,
    ensure_attempt,
    has_stripe_resource,
    hash_fingerprint,
    mark_attempt_failed,
    normalize_currency,
    record_result,
    wait_for_result,
)

logger = logging.getLogger(__name__)

# -- Outcomes returned alongside the attempt --
CHECKOUT_CREATED = "created"        # this call created the Stripe session
CHECKOUT_REPLAYED = "replayed"      # an earlier/concurrent call created it
CHECKOUT_PROCESSING = "processing"  # winner not finished; retry with same key


def start_checkout(idempotency_key, flow_type, amount_cents, currency,
                   create_session, organization_id=None,
                   fingerprint_payload=None, user_id=None,
                   stripe_connected_account_id=None, metadata=None,
                   payment_attempt_id=None):
    """Get a checkout session for this idempotency key, creating it at most once.

    Args:
        create_session: callable(attempt) -> (session_id, checkout_url).
                        Invoked only by the caller that wins the claim.
        fingerprint_payload: request parameters beyond amount/currency;
                             hashed into request_fingerprint.

    Returns (attempt, outcome) where outcome is one of CHECKOUT_CREATED,
    CHECKOUT_REPLAYED, CHECKOUT_PROCESSING.

    Raises:
        IdempotencyConflictError: key reused with different parameters.
        PaymentAttemptFailedError: the attempt for this key failed before.
        Whatever create_session raises, after marking the attempt failed.
    """
    currency = normalize_currency(currency)
    fingerprint = hash_fingerprint(fingerprint_payload)

    attempt, _ = ensure_attempt(
        idempotency_key=idempotency_key,
        flow_type=flow_type,
        amount_cents=amount_cents,
        currency=currency,
        organization_id=organization_id,
        request_fingerprint=fingerprint,
        user_id=user_id,
        stripe_connected_account_id=stripe_connected_account_id,
        metadata=metadata,
        payment_attempt_id=payment_attempt_id,
    )

    # A failed attempt keeps its session id and URL, but the session is dead.
    if attempt.status == PaymentAttempt.FAILED:
        raise PaymentAttemptFailedError(attempt)
    if has_stripe_resource(attempt):
        return attempt, CHECKOUT_REPLAYED

    attempt, claimed = claim_attempt(attempt, amount_cents, currency, fingerprint)
    if not claimed:
        return _await_winner(attempt)

    try:
        session_id, checkout_url = create_session(attempt)
    except Exception as e:
        logger.error(
            f"Checkout session creation failed for attempt {attempt.id}: {e}"
        )
        mark_attempt_failed(attempt.id, str(e))
        raise

    attempt = record_result(attempt.id, session_id, checkout_url)
    return attempt, CHECKOUT_CREATED


def _await_winner(attempt):
    """Loser path: converge on whatever the claim winner records."""
    if not has_stripe_resource(attempt) and not attempt.is_terminal:
        attempt = wait_for_result(attempt.id)

    if attempt.status == PaymentAttempt.FAILED:
        raise PaymentAttemptFailedError(attempt)
    if has_stripe_resource(attempt):
        return attempt, CHECKOUT_REPLAYED
    return attempt, CHECKOUT_PROCESSING
