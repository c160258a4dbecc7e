"""Race tests — concurrent callers on a shared, file-backed database.

Each thread runs in its own app context, so each gets its own session
and database connection; the database is the only thing they share.
"""

import threading
import time

from orgpay.models.payment_attempt import PaymentAttempt
from orgpay.models.stripe_event import StripeEvent
from orgpay.services.checkout_service import (
    CHECKOUT_CREATED,
    CHECKOUT_REPLAYED,
    start_checkout,
)
from orgpay.services.event_service import apply_event_once
from orgpay.services.idempotency_service import (
    claim_attempt,
    ensure_attempt,
    get_attempt,
    hash_fingerprint,
)


def _run_concurrently(app, count, target):
    """Run target(index) in `count` threads released together.

    Returns (results, errors) indexed by thread.
    """
    barrier = threading.Barrier(count)
    results = [None] * count
    errors = []

    def worker(index):
        with app.app_context():
            barrier.wait()
            try:
                results[index] = target(index)
            except Exception as e:  # collected and asserted on below
                errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return results, errors


class TestConcurrentCheckout:

    def test_three_retries_create_one_session(self, threaded_app):
        """Three simultaneous submissions of the same checkout."""
        lock = threading.Lock()
        session_creations = []

        def create_session(attempt):
            with lock:
                session_creations.append(attempt.id)
            time.sleep(0.2)  # long enough for the others to reach the claim
            return "cs_test_demo", "https://checkout.stripe.com/test_cs"

        def submit(_):
            attempt, outcome = start_checkout(
                idempotency_key="demo-checkout-key",
                flow_type=PaymentAttempt.DONATION_CHECKOUT,
                amount_cents=5000,
                currency="usd",
                create_session=create_session,
            )
            return attempt.id, attempt.checkout_url, outcome

        results, errors = _run_concurrently(threaded_app, 3, submit)

        assert errors == []
        assert len(session_creations) == 1
        assert {url for _, url, _ in results} == {"https://checkout.stripe.com/test_cs"}
        assert len({attempt_id for attempt_id, _, _ in results}) == 1

        outcomes = sorted(outcome for _, _, outcome in results)
        assert outcomes == [CHECKOUT_CREATED, CHECKOUT_REPLAYED, CHECKOUT_REPLAYED]

        with threaded_app.app_context():
            assert PaymentAttempt.query.count() == 1
            stored = PaymentAttempt.query.one()
            assert stored.stripe_checkout_session_id == "cs_test_demo"

    def test_claim_has_exactly_one_winner(self, threaded_app):
        fingerprint = hash_fingerprint({})
        with threaded_app.app_context():
            attempt, _ = ensure_attempt(
                idempotency_key="race-claim",
                flow_type=PaymentAttempt.DONATION_CHECKOUT,
                amount_cents=2500,
                currency="usd",
                request_fingerprint=fingerprint,
            )
            attempt_id = attempt.id

        def claim(_):
            _, claimed = claim_attempt(get_attempt(attempt_id), 2500, "usd", fingerprint)
            return claimed

        results, errors = _run_concurrently(threaded_app, 8, claim)

        assert errors == []
        assert results.count(True) == 1
        assert results.count(False) == 7

        with threaded_app.app_context():
            assert get_attempt(attempt_id).status == PaymentAttempt.PROCESSING

    def test_concurrent_first_inserts_converge(self, threaded_app):
        fingerprint = hash_fingerprint({"donor_name": "Ann"})

        def ensure(_):
            attempt, created = ensure_attempt(
                idempotency_key="race-insert",
                flow_type=PaymentAttempt.DONATION_CHECKOUT,
                amount_cents=1000,
                currency="usd",
                request_fingerprint=fingerprint,
            )
            return attempt.id, created

        results, errors = _run_concurrently(threaded_app, 6, ensure)

        assert errors == []
        assert len({attempt_id for attempt_id, _ in results}) == 1
        assert [created for _, created in results].count(True) == 1


class TestConcurrentWebhookDelivery:

    def test_same_event_applied_once(self, threaded_app):
        lock = threading.Lock()
        applied_effects = []

        def side_effect():
            with lock:
                applied_effects.append(1)
            time.sleep(0.05)

        def deliver(_):
            return apply_event_once("evt_race_1", "checkout.session.completed", side_effect)

        results, errors = _run_concurrently(threaded_app, 5, deliver)

        assert errors == []
        assert results.count(True) == 1
        assert results.count(False) == 4
        assert len(applied_effects) == 1

        with threaded_app.app_context():
            assert StripeEvent.query.filter_by(event_id="evt_race_1").count() == 1
