"""Payment attempt service — idempotency keys and single-flight claims.

Responsible for:
- Creating (or fetching) the one PaymentAttempt row per idempotency key
- Rejecting key reuse with a different amount / currency / fingerprint
- The atomic pending -> processing claim (exactly one winner)
- Recording the winner's checkout session onto the row
- Bounded polling used by losers of the claim race
- Webhook-driven terminal transitions

The database is the only arbiter between concurrent callers, which may be
separate processes: the unique constraint on idempotency_key decides
creation, and a single conditional UPDATE decides the claim. Nothing here
takes an in-process lock.
"""

import hashlib
import json
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import and_, case, func, or_
from sqlalchemy.exc import IntegrityError

from orgpay.extensions import db
from orgpay.models.payment_attempt import PaymentAttempt

logger = logging.getLogger(__name__)


class IdempotencyConflictError(Exception):
    """An idempotency key was reused for a request with different parameters."""


class PaymentAttemptNotFoundError(Exception):
    """No payment attempt exists for the given id."""


class PaymentAttemptFailedError(Exception):
    """The attempt behind this key failed permanently.

    Failed attempts are never reclaimed; the caller has to start over
    with a new idempotency key.
    """

    def __init__(self, attempt):
        self.attempt = attempt
        reason = attempt.last_error or "checkout could not be started"
        super().__init__(
            f"Payment attempt failed ({reason}). Retry with a new idempotency key."
        )


# ──────────────────────────────────────────────
# Normalization helpers
# ──────────────────────────────────────────────

def normalize_idempotency_key(key=None, fallback=None):
    """Trim the caller's key, falling back to `fallback` or a fresh UUID."""
    for candidate in (key, fallback):
        if candidate and str(candidate).strip():
            return str(candidate).strip()
    return str(uuid.uuid4())


def normalize_currency(currency=None):
    return (currency or "usd").strip().lower()


def hash_fingerprint(payload):
    """Stable sha256 hex digest of the request parameters.

    Keys are sorted so that dict ordering never changes the fingerprint.
    """
    canonical = json.dumps(
        payload if payload is not None else {},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def has_stripe_resource(attempt):
    """True once the claim winner (or a webhook) has recorded a Stripe object."""
    return bool(
        attempt.stripe_checkout_session_id
        or attempt.stripe_payment_intent_id
        or attempt.checkout_url
    )


# ──────────────────────────────────────────────
# Reads
# ──────────────────────────────────────────────

def _fetch(**filters):
    # populate_existing: always take the row as the database has it now,
    # never a copy cached in this session's identity map.
    return (
        PaymentAttempt.query
        .filter_by(**filters)
        .populate_existing()
        .first()
    )


def get_attempt(attempt_id):
    """Return the attempt with this id. Raises PaymentAttemptNotFoundError."""
    attempt = _fetch(id=attempt_id)
    if attempt is None:
        raise PaymentAttemptNotFoundError(f"Payment attempt {attempt_id} not found")
    return attempt


def get_attempt_by_key(idempotency_key):
    """Return the attempt for this key, or None."""
    return _fetch(idempotency_key=normalize_idempotency_key(idempotency_key))


def list_stale_attempts(stale_after_seconds=None):
    """Processing attempts claimed longer ago than the staleness window
    that still have no Stripe resource recorded."""
    if stale_after_seconds is None:
        stale_after_seconds = current_app.config["PAYMENT_STALE_PROCESSING_SECONDS"]
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=stale_after_seconds)
    return (
        PaymentAttempt.query
        .filter(
            PaymentAttempt.status == PaymentAttempt.PROCESSING,
            PaymentAttempt.claimed_at < cutoff,
            PaymentAttempt.stripe_checkout_session_id.is_(None),
            PaymentAttempt.checkout_url.is_(None),
        )
        .order_by(PaymentAttempt.claimed_at)
        .all()
    )


# ──────────────────────────────────────────────
# Fingerprint guard
# ──────────────────────────────────────────────

def _check_parameters(attempt, amount_cents, currency, request_fingerprint):
    """Raise IdempotencyConflictError if the stored request differs."""
    mismatched = []
    if attempt.amount_cents != amount_cents:
        mismatched.append("amount_cents")
    if attempt.currency != currency:
        mismatched.append("currency")
    if attempt.request_fingerprint != request_fingerprint:
        mismatched.append("request_fingerprint")

    if mismatched:
        logger.warning(
            f"Idempotency key {attempt.idempotency_key} reused with different "
            f"parameters ({', '.join(mismatched)}) for attempt {attempt.id}"
        )
        raise IdempotencyConflictError(
            "Idempotency key was already used for a different request"
        )


# ──────────────────────────────────────────────
# Ensure
# ──────────────────────────────────────────────

def ensure_attempt(idempotency_key, flow_type, amount_cents, currency=None,
                   organization_id=None, request_fingerprint=None,
                   user_id=None, stripe_connected_account_id=None,
                   metadata=None, payment_attempt_id=None):
    """Return the single canonical PaymentAttempt for this idempotency key.

    Inserts a new pending row; a unique violation on idempotency_key means
    another caller got there first, so the existing row is fetched and
    returned instead. Either way the stored amount, currency and
    fingerprint must match the caller's, otherwise IdempotencyConflictError
    is raised and the row is left untouched.

    If payment_attempt_id is given the attempt is looked up by id instead
    and, when a key is also given, must belong to that key.

    Returns (attempt, created).
    """
    key = normalize_idempotency_key(idempotency_key, payment_attempt_id)
    currency = normalize_currency(currency)

    if payment_attempt_id:
        attempt = get_attempt(payment_attempt_id)
        if idempotency_key and attempt.idempotency_key != key:
            raise IdempotencyConflictError(
                "Idempotency key does not match the stored payment attempt"
            )
        _check_parameters(attempt, amount_cents, currency, request_fingerprint)
        return attempt, False

    attempt = PaymentAttempt(
        idempotency_key=key,
        flow_type=flow_type,
        amount_cents=amount_cents,
        currency=currency,
        organization_id=organization_id,
        user_id=user_id,
        request_fingerprint=request_fingerprint,
        stripe_connected_account_id=stripe_connected_account_id,
        metadata_=metadata or {},
        status=PaymentAttempt.PENDING,
    )
    db.session.add(attempt)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        existing = _fetch(idempotency_key=key)
        if existing is None:
            # The conflict was on some other constraint.
            raise
        _check_parameters(existing, amount_cents, currency, request_fingerprint)
        logger.info(f"Reusing payment attempt {existing.id} for key {key}")
        return existing, False

    logger.info(
        f"Created payment attempt {attempt.id} ({flow_type}, "
        f"{amount_cents} {currency}) for key {key}"
    )
    return attempt, True


# ──────────────────────────────────────────────
# Claim
# ──────────────────────────────────────────────

def claim_attempt(attempt, amount_cents, currency=None, request_fingerprint=None):
    """Atomically move the attempt from pending to processing.

    A single UPDATE ... WHERE id = ? AND status = 'pending' decides the
    winner; the affected row count is the answer. A processing row whose
    claim is older than PAYMENT_STALE_PROCESSING_SECONDS and which never
    got a checkout session recorded is claimable too, in the same
    statement, so a reclaim also has exactly one winner.

    Failed rows are never claimable.

    Returns (attempt, claimed). `attempt` is re-read from the database.
    """
    currency = normalize_currency(currency)
    _check_parameters(attempt, amount_cents, currency, request_fingerprint)
    attempt_id = attempt.id
    previous_status = attempt.status

    now = datetime.now(timezone.utc)
    claimable = PaymentAttempt.status == PaymentAttempt.PENDING
    stale_after = current_app.config.get("PAYMENT_STALE_PROCESSING_SECONDS") or 0
    if stale_after > 0:
        cutoff = now - timedelta(seconds=stale_after)
        claimable = or_(
            claimable,
            and_(
                PaymentAttempt.status == PaymentAttempt.PROCESSING,
                PaymentAttempt.claimed_at < cutoff,
            ),
        )

    rows = (
        PaymentAttempt.query
        .filter(
            PaymentAttempt.id == attempt_id,
            claimable,
            PaymentAttempt.stripe_checkout_session_id.is_(None),
            PaymentAttempt.stripe_payment_intent_id.is_(None),
            PaymentAttempt.checkout_url.is_(None),
        )
        .update(
            {
                "status": PaymentAttempt.PROCESSING,
                "claimed_at": now,
                "last_error": None,
                "updated_at": now,
            },
            synchronize_session=False,
        )
    )
    db.session.commit()

    current = get_attempt(attempt_id)
    if rows == 1:
        if previous_status == PaymentAttempt.PROCESSING:
            logger.warning(f"Reclaimed stale payment attempt {attempt_id}")
        else:
            logger.info(f"Claimed payment attempt {attempt_id}")
        return current, True

    logger.info(
        f"Payment attempt {attempt_id} already claimed (status={current.status})"
    )
    return current, False


# ──────────────────────────────────────────────
# Wait
# ──────────────────────────────────────────────

def wait_for_result(attempt_id, max_polls=None, interval_ms=None):
    """Poll the attempt until the claim winner has recorded a result.

    Stops as soon as a Stripe resource is present or the attempt reached
    a terminal status. Never blocks longer than roughly
    (max_polls - 1) * interval_ms. On exhaustion the last row read is
    returned as-is; callers must check has_stripe_resource() and treat
    an empty result as "still processing, retry later", not as an error.
    """
    if max_polls is None:
        max_polls = current_app.config["PAYMENT_WAIT_MAX_POLLS"]
    if interval_ms is None:
        interval_ms = current_app.config["PAYMENT_WAIT_INTERVAL_MS"]

    attempt = None
    for poll in range(max(max_polls, 1)):
        if poll:
            time.sleep(interval_ms / 1000.0)
        attempt = get_attempt(attempt_id)
        if has_stripe_resource(attempt) or attempt.is_terminal:
            return attempt

    logger.info(
        f"Gave up waiting for payment attempt {attempt_id} after {max_polls} polls"
    )
    return attempt


# ──────────────────────────────────────────────
# Record
# ──────────────────────────────────────────────

def record_result(attempt_id, checkout_session_id, checkout_url,
                  status=PaymentAttempt.PROCESSING, payment_intent_id=None):
    """Persist the claim winner's checkout session onto the attempt.

    Only the caller that won claim_attempt() may call this. The write is
    unconditional except that a terminal status already set by a webhook
    is kept.

    Returns the updated attempt.
    """
    now = datetime.now(timezone.utc)
    values = {
        "stripe_checkout_session_id": checkout_session_id,
        "checkout_url": checkout_url,
        "status": case(
            (
                PaymentAttempt.status.in_(PaymentAttempt.TERMINAL_STATUSES),
                PaymentAttempt.status,
            ),
            else_=status,
        ),
        "updated_at": now,
    }
    if payment_intent_id:
        values["stripe_payment_intent_id"] = payment_intent_id

    rows = (
        PaymentAttempt.query
        .filter_by(id=attempt_id)
        .update(values, synchronize_session=False)
    )
    db.session.commit()
    if not rows:
        raise PaymentAttemptNotFoundError(f"Payment attempt {attempt_id} not found")

    logger.info(
        f"Recorded checkout session {checkout_session_id} on payment attempt {attempt_id}"
    )
    return get_attempt(attempt_id)


def mark_attempt_failed(attempt_id, error):
    """Terminally fail a pending or processing attempt.

    Used by the claim winner when the Stripe call fails. Never overwrites
    succeeded. Returns the attempt as stored afterwards.
    """
    now = datetime.now(timezone.utc)
    rows = (
        PaymentAttempt.query
        .filter(
            PaymentAttempt.id == attempt_id,
            PaymentAttempt.status.in_(
                [PaymentAttempt.PENDING, PaymentAttempt.PROCESSING]
            ),
        )
        .update(
            {
                "status": PaymentAttempt.FAILED,
                "last_error": (error or "checkout_failed")[:2000],
                "updated_at": now,
            },
            synchronize_session=False,
        )
    )
    db.session.commit()
    if rows:
        logger.warning(f"Payment attempt {attempt_id} failed: {error}")
    return get_attempt(attempt_id)


def complete_attempt(status, attempt_id=None, checkout_session_id=None,
                     payment_intent_id=None, error=None):
    """Webhook-driven terminal transition (succeeded / failed).

    Matches by attempt id when given, otherwise by checkout session id.
    Only non-terminal rows are updated, so a replayed or out-of-order
    notification can never move a row backwards.

    Uses flush() so the caller (the webhook dedup transaction) controls
    the commit boundary. Returns True if a row was updated.
    """
    if status not in PaymentAttempt.TERMINAL_STATUSES:
        raise ValueError(f"Not a terminal payment attempt status: {status}")

    query = PaymentAttempt.query.filter(
        PaymentAttempt.status.notin_(PaymentAttempt.TERMINAL_STATUSES)
    )
    if attempt_id:
        query = query.filter(PaymentAttempt.id == attempt_id)
    elif checkout_session_id:
        query = query.filter(
            PaymentAttempt.stripe_checkout_session_id == checkout_session_id
        )
    else:
        logger.warning("complete_attempt called without attempt or session id")
        return False

    values = {
        "status": status,
        "updated_at": datetime.now(timezone.utc),
    }
    if checkout_session_id:
        values["stripe_checkout_session_id"] = func.coalesce(
            PaymentAttempt.stripe_checkout_session_id, checkout_session_id
        )
    if payment_intent_id:
        values["stripe_payment_intent_id"] = payment_intent_id
    if error:
        values["last_error"] = error

    rows = query.update(values, synchronize_session=False)
    db.session.flush()

    if rows:
        logger.info(
            f"Payment attempt {attempt_id or checkout_session_id} marked {status}"
        )
    return bool(rows)
