"""Subscription service — DB sync helpers for organization subscriptions.

Responsible for:
- Normalizing Stripe subscription status (incl. "canceling")
- Upserting organization_subscriptions rows from Stripe webhook data
- Resolving the organization behind a Stripe subscription / customer
"""

import logging
from datetime import datetime, timezone

from orgpay.extensions import db
from orgpay.models.organization import OrganizationSubscription

logger = logging.getLogger(__name__)


def extract_period_end(sub_data):
    """Extract current_period_end from a Stripe subscription object.

    In newer Stripe API versions, current_period_end has moved from the
    subscription top level to items.data[0].current_period_end.
    This helper checks both locations.

    Returns a timezone-aware datetime or None.
    """
    ts = sub_data.get("current_period_end")

    if not ts:
        items = sub_data.get("items")
        if items and items.get("data") and len(items["data"]) > 0:
            ts = items["data"][0].get("current_period_end")

    if ts:
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    return None


def normalize_subscription_status(sub_data, event_type=None):
    """Map a Stripe subscription to the status stored locally.

    A deleted subscription is always "canceled". One that is set to cancel
    (cancel_at_period_end, or a future cancel_at) is "canceling" until
    Stripe actually cancels it.
    """
    status = sub_data.get("status") or "canceled"
    if event_type == "customer.subscription.deleted":
        return "canceled"
    is_cancelling = (
        sub_data.get("cancel_at_period_end", False)
        or sub_data.get("cancel_at") is not None
    )
    if is_cancelling and status != "canceled":
        return "canceling"
    return status


def upsert_subscription(organization_id, stripe_subscription_id, status,
                        stripe_customer_id=None, current_period_end=None,
                        cancel_at_period_end=False):
    """Create or update the organization's subscription from Stripe data.

    Uses flush() so the webhook transaction controls the commit boundary.
    Returns the OrganizationSubscription instance.
    """
    sub = OrganizationSubscription.query.filter_by(
        organization_id=organization_id
    ).first()

    if sub:
        sub.status = status
        if stripe_subscription_id:
            sub.stripe_subscription_id = stripe_subscription_id
        if stripe_customer_id:
            sub.stripe_customer_id = stripe_customer_id
        if current_period_end:
            sub.current_period_end = current_period_end
        sub.cancel_at_period_end = cancel_at_period_end
    else:
        sub = OrganizationSubscription(
            organization_id=organization_id,
            stripe_subscription_id=stripe_subscription_id,
            stripe_customer_id=stripe_customer_id,
            status=status,
            current_period_end=current_period_end,
            cancel_at_period_end=cancel_at_period_end,
        )
        db.session.add(sub)

    db.session.flush()
    return sub


def get_subscription_by_stripe_id(stripe_subscription_id):
    if not stripe_subscription_id:
        return None
    return OrganizationSubscription.query.filter_by(
        stripe_subscription_id=stripe_subscription_id
    ).first()


def get_organization_id_from_stripe_customer(stripe_customer_id):
    """Look up organization_id from a Stripe customer ID.

    Returns organization_id string or None.
    """
    if not stripe_customer_id:
        return None
    sub = OrganizationSubscription.query.filter_by(
        stripe_customer_id=stripe_customer_id
    ).first()
    if sub:
        return sub.organization_id
    return None
