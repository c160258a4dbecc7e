"""Stripe event model (webhook dedup table).

Every webhook event is recorded by its Stripe event ID. The row is
inserted *before* the event is applied, in the same transaction as the
side effect: a unique-constraint conflict on insert means another
delivery already applied (or is applying) the event. Rows are never
updated.
"""

import uuid

from orgpay.extensions import db


class StripeEvent(db.Model):
    __tablename__ = "stripe_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    event_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "evt_1Abc..."
    event_type = db.Column(
        db.String(255), nullable=False
    )  # e.g. "checkout.session.completed"
    processed_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<StripeEvent {self.event_id} ({self.event_type})>"
