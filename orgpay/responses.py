"""JSON responses shared by the checkout blueprints.

Translates start_checkout() outcomes and errors into the HTTP contract:

    200  checkout URL available (created now or earlier)
    409  still processing under this key: retry shortly with the same key
    409  key reused for a different request, or the attempt failed
    404  unknown payment_attempt_id
    502  Stripe call failed
"""

import logging

import stripe
from flask import jsonify

from orgpay.services.checkout_service import (
    CHECKOUT_CREATED,
    CHECKOUT_PROCESSING,
    start_checkout,
)
from orgpay.services.idempotency_service import (
    IdempotencyConflictError,
    PaymentAttemptFailedError,
    PaymentAttemptNotFoundError,
)

logger = logging.getLogger(__name__)

# Seconds a client should wait before retrying a still-processing key.
RETRY_AFTER_SECONDS = 1


def checkout_response(**checkout_kwargs):
    """Run start_checkout() and build the JSON response."""
    try:
        attempt, outcome = start_checkout(**checkout_kwargs)
    except IdempotencyConflictError as e:
        return jsonify({"error": str(e)}), 409
    except PaymentAttemptFailedError as e:
        return jsonify({
            "error": str(e),
            "payment_attempt_id": e.attempt.id,
            "idempotency_key": e.attempt.idempotency_key,
        }), 409
    except PaymentAttemptNotFoundError:
        return jsonify({"error": "Payment attempt not found"}), 404
    except stripe.StripeError as e:
        logger.error(f"Stripe checkout error: {e}", exc_info=True)
        return jsonify({
            "error": "The payment provider could not start checkout. Please try again.",
        }), 502

    if outcome == CHECKOUT_PROCESSING:
        body = {
            "error": (
                "Checkout is already processing for this idempotency key. "
                "Retry shortly with the same key."
            ),
            "idempotency_key": attempt.idempotency_key,
            "payment_attempt_id": attempt.id,
            "retry": True,
        }
        return jsonify(body), 409, {"Retry-After": str(RETRY_AFTER_SECONDS)}

    body = attempt.to_dict()
    body["replayed"] = outcome != CHECKOUT_CREATED
    return jsonify(body), 200
