"""Webhook event dedup — apply each Stripe event exactly once.

Stripe delivers events at least once, sometimes concurrently to several
handler instances. The stripe_events row is inserted *before* the side
effect, in the same transaction:

    INSERT stripe_events(event_id)   -- conflict => already applied, skip
    side_effect()                    -- same transaction
    COMMIT

Insert is the lock: a second delivery's INSERT either conflicts with the
committed row or waits on the unique index until the first transaction
finishes. If the side effect raises, the transaction (dedup row
included) is rolled back, so Stripe's retry gets a clean second chance.
"""

import logging

from sqlalchemy.exc import IntegrityError

from orgpay.extensions import db
from orgpay.models.stripe_event import StripeEvent

logger = logging.getLogger(__name__)


def apply_event_once(event_id, event_type, side_effect):
    """Run side_effect() unless this event_id was already applied.

    side_effect must use flush(), not commit(), so that it shares the
    dedup row's transaction.

    Returns True if the side effect ran, False for a duplicate delivery.
    Exceptions from side_effect propagate after rollback.
    """
    db.session.add(StripeEvent(event_id=event_id, event_type=event_type))
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        logger.info(f"Duplicate webhook event {event_id}, skipping")
        return False

    try:
        side_effect()
    except Exception:
        db.session.rollback()
        raise

    db.session.commit()
    return True
