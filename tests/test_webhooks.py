"""Tests for the Stripe webhook endpoints and event handlers.

Covers:
- Signature checks (missing / invalid)
- Exactly-once processing across duplicate deliveries
- Payment attempt transitions from checkout events
- Subscription sync events
- Failed handlers are rolled back and retried on redelivery
"""

from unittest.mock import patch

import stripe

from orgpay.extensions import db
from orgpay.models.organization import OrganizationSubscription
from orgpay.models.payment_attempt import PaymentAttempt
from orgpay.models.stripe_event import StripeEvent
from orgpay.services.idempotency_service import (
    claim_attempt,
    ensure_attempt,
    get_attempt,
    hash_fingerprint,
    record_result,
)

CONSTRUCT_EVENT = "orgpay.services.stripe_service.stripe.Webhook.construct_event"


def _post_webhook(client, path="/stripe/webhooks"):
    return client.post(
        path,
        data=b"{}",
        headers={"Stripe-Signature": "t=1,v1=fake"},
        content_type="application/json",
    )


def _checkout_event(event_id, event_type, attempt_id, session_id="cs_test_1",
                    payment_status="paid", **extra):
    session = {
        "id": session_id,
        "mode": "payment",
        "payment_status": payment_status,
        "payment_intent": "pi_test_1",
        "metadata": {"payment_attempt_id": attempt_id},
    }
    session.update(extra)
    return {"id": event_id, "type": event_type, "data": {"object": session}}


def _processing_attempt(organization_id=None, session_id="cs_test_1"):
    fingerprint = hash_fingerprint({})
    attempt, _ = ensure_attempt(
        idempotency_key=f"key-{session_id}",
        flow_type=PaymentAttempt.DONATION_CHECKOUT,
        amount_cents=5000,
        currency="usd",
        organization_id=organization_id,
        request_fingerprint=fingerprint,
    )
    claim_attempt(attempt, 5000, "usd", fingerprint)
    record_result(attempt.id, session_id, f"https://checkout.stripe.com/c/{session_id}")
    return attempt.id


class TestWebhookSignature:

    def test_missing_signature_is_400(self, client):
        resp = client.post("/stripe/webhooks", data=b"{}")
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Missing signature"

    @patch(CONSTRUCT_EVENT)
    def test_invalid_signature_is_400(self, mock_construct, client):
        mock_construct.side_effect = stripe.SignatureVerificationError("bad", "t=1,v1=fake")
        resp = _post_webhook(client)
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Invalid signature"

    @patch(CONSTRUCT_EVENT)
    def test_connect_endpoint_uses_connect_secret(self, mock_construct, client):
        mock_construct.return_value = {"id": "evt_c1", "type": "account.updated",
                                       "data": {"object": {}}}

        resp = _post_webhook(client, "/stripe/webhooks/connect")

        assert resp.status_code == 200
        assert mock_construct.call_args.args[2] == "whsec_connect_test_fake"

    def test_connect_endpoint_unconfigured_is_503(self, app, client, monkeypatch):
        monkeypatch.setitem(app.config, "STRIPE_CONNECT_WEBHOOK_SECRET", None)
        resp = _post_webhook(client, "/stripe/webhooks/connect")
        assert resp.status_code == 503


class TestWebhookIdempotency:

    @patch(CONSTRUCT_EVENT)
    def test_duplicate_delivery_is_skipped(self, mock_construct, client, seed_data):
        """The same event delivered twice is applied once."""
        attempt_id = _processing_attempt(seed_data["org_id"])
        mock_construct.return_value = _checkout_event(
            "evt_dup_1", "checkout.session.completed", attempt_id
        )

        first = _post_webhook(client)
        second = _post_webhook(client)

        assert first.status_code == 200
        assert first.get_json()["status"] == "processed"
        assert second.status_code == 200
        assert second.get_json()["status"] == "already_processed"
        assert StripeEvent.query.filter_by(event_id="evt_dup_1").count() == 1

    @patch(CONSTRUCT_EVENT)
    def test_unhandled_event_is_recorded(self, mock_construct, client):
        mock_construct.return_value = {"id": "evt_other", "type": "charge.refunded",
                                       "data": {"object": {}}}

        resp = _post_webhook(client)

        assert resp.status_code == 200
        assert StripeEvent.query.filter_by(event_id="evt_other").count() == 1

    @patch("orgpay.services.stripe_service.complete_attempt")
    @patch(CONSTRUCT_EVENT)
    def test_failed_handler_is_retried(self, mock_construct, mock_complete, client, seed_data):
        """A handler error returns 500 and leaves no dedup row behind."""
        attempt_id = _processing_attempt(seed_data["org_id"])
        mock_construct.return_value = _checkout_event(
            "evt_retry_1", "checkout.session.completed", attempt_id
        )
        mock_complete.side_effect = RuntimeError("database hiccup")

        resp = _post_webhook(client)

        assert resp.status_code == 500
        assert StripeEvent.query.filter_by(event_id="evt_retry_1").count() == 0

        mock_complete.side_effect = None
        mock_complete.return_value = True
        retry = _post_webhook(client)

        assert retry.status_code == 200
        assert retry.get_json()["status"] == "processed"
        assert StripeEvent.query.filter_by(event_id="evt_retry_1").count() == 1


class TestCheckoutEvents:

    @patch(CONSTRUCT_EVENT)
    def test_completed_paid_marks_succeeded(self, mock_construct, client, seed_data):
        attempt_id = _processing_attempt(seed_data["org_id"])
        mock_construct.return_value = _checkout_event(
            "evt_paid", "checkout.session.completed", attempt_id
        )

        _post_webhook(client)

        stored = get_attempt(attempt_id)
        assert stored.status == PaymentAttempt.SUCCEEDED
        assert stored.stripe_payment_intent_id == "pi_test_1"

    @patch(CONSTRUCT_EVENT)
    def test_completed_unpaid_waits_for_async(self, mock_construct, client, seed_data):
        attempt_id = _processing_attempt(seed_data["org_id"])
        mock_construct.return_value = _checkout_event(
            "evt_unpaid", "checkout.session.completed", attempt_id,
            payment_status="unpaid",
        )

        _post_webhook(client)
        assert get_attempt(attempt_id).status == PaymentAttempt.PROCESSING

        mock_construct.return_value = _checkout_event(
            "evt_async_ok", "checkout.session.async_payment_succeeded", attempt_id
        )
        _post_webhook(client)
        assert get_attempt(attempt_id).status == PaymentAttempt.SUCCEEDED

    @patch(CONSTRUCT_EVENT)
    def test_async_failure_marks_failed(self, mock_construct, client, seed_data):
        attempt_id = _processing_attempt(seed_data["org_id"])
        mock_construct.return_value = _checkout_event(
            "evt_async_fail", "checkout.session.async_payment_failed", attempt_id
        )

        _post_webhook(client)

        stored = get_attempt(attempt_id)
        assert stored.status == PaymentAttempt.FAILED
        assert stored.last_error == "async_payment_failed"

    @patch(CONSTRUCT_EVENT)
    def test_expired_session_matched_by_session_id(self, mock_construct, client, seed_data):
        attempt_id = _processing_attempt(seed_data["org_id"], session_id="cs_test_exp")
        event = _checkout_event(
            "evt_expired", "checkout.session.expired", None, session_id="cs_test_exp"
        )
        event["data"]["object"]["metadata"] = {}
        mock_construct.return_value = event

        _post_webhook(client)

        stored = get_attempt(attempt_id)
        assert stored.status == PaymentAttempt.FAILED
        assert stored.last_error == "checkout_session_expired"

    @patch(CONSTRUCT_EVENT)
    def test_late_expiry_does_not_undo_success(self, mock_construct, client, seed_data):
        attempt_id = _processing_attempt(seed_data["org_id"])

        mock_construct.return_value = _checkout_event(
            "evt_ok", "checkout.session.completed", attempt_id
        )
        _post_webhook(client)
        mock_construct.return_value = _checkout_event(
            "evt_late_expiry", "checkout.session.expired", attempt_id
        )
        _post_webhook(client)

        assert get_attempt(attempt_id).status == PaymentAttempt.SUCCEEDED

    @patch("orgpay.services.stripe_service.stripe.Subscription.retrieve")
    @patch(CONSTRUCT_EVENT)
    def test_subscription_checkout_syncs_subscription(self, mock_construct, mock_retrieve,
                                                      client, seed_data):
        attempt_id = _processing_attempt(seed_data["org_id"], session_id="cs_test_sub")
        mock_construct.return_value = _checkout_event(
            "evt_sub_checkout", "checkout.session.completed", attempt_id,
            session_id="cs_test_sub", mode="subscription",
            subscription="sub_new", customer="cus_new",
        )
        mock_retrieve.return_value = {
            "id": "sub_new",
            "status": "active",
            "current_period_end": 1798761600,
            "cancel_at_period_end": False,
        }

        resp = _post_webhook(client)

        assert resp.status_code == 200
        sub = OrganizationSubscription.query.filter_by(
            organization_id=seed_data["org_id"]
        ).one()
        assert sub.stripe_subscription_id == "sub_new"
        assert sub.stripe_customer_id == "cus_new"
        assert sub.status == "active"
        assert sub.current_period_end is not None


class TestSubscriptionEvents:

    def _existing_subscription(self, org_id, status="active"):
        db.session.add(OrganizationSubscription(
            organization_id=org_id,
            stripe_subscription_id="sub_123",
            stripe_customer_id="cus_123",
            status=status,
        ))
        db.session.commit()

    def _subscription(self, org_id):
        return (
            OrganizationSubscription.query
            .filter_by(organization_id=org_id)
            .populate_existing()
            .one()
        )

    @patch(CONSTRUCT_EVENT)
    def test_updated_with_cancel_at_period_end(self, mock_construct, client, seed_data):
        self._existing_subscription(seed_data["org_id"])
        mock_construct.return_value = {
            "id": "evt_sub_upd",
            "type": "customer.subscription.updated",
            "data": {"object": {
                "id": "sub_123",
                "customer": "cus_123",
                "status": "active",
                "cancel_at_period_end": True,
                "items": {"data": [{"current_period_end": 1798761600}]},
            }},
        }

        _post_webhook(client)

        sub = self._subscription(seed_data["org_id"])
        assert sub.status == "canceling"
        assert sub.cancel_at_period_end is True
        assert sub.current_period_end is not None

    @patch(CONSTRUCT_EVENT)
    def test_deleted_marks_canceled(self, mock_construct, client, seed_data):
        self._existing_subscription(seed_data["org_id"])
        mock_construct.return_value = {
            "id": "evt_sub_del",
            "type": "customer.subscription.deleted",
            "data": {"object": {"id": "sub_123", "customer": "cus_123",
                                "status": "canceled"}},
        }

        _post_webhook(client)

        assert self._subscription(seed_data["org_id"]).status == "canceled"

    @patch(CONSTRUCT_EVENT)
    def test_invoice_failure_marks_past_due(self, mock_construct, client, seed_data):
        self._existing_subscription(seed_data["org_id"])
        mock_construct.return_value = {
            "id": "evt_inv_fail",
            "type": "invoice.payment_failed",
            "data": {"object": {"id": "in_1", "subscription": "sub_123"}},
        }

        _post_webhook(client)

        assert self._subscription(seed_data["org_id"]).status == "past_due"
