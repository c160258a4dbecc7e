"""Payment attempt model.

One row per logical payment request, keyed by the caller-supplied
idempotency key. The unique constraint on idempotency_key is what makes
concurrent first inserts converge on a single row.

Status lifecycle:
    pending -> processing        (atomic claim, exactly one winner)
    processing -> succeeded      (webhook: checkout paid)
    pending|processing -> failed (stripe call failed, or checkout expired)

succeeded and failed are terminal. Rows are never deleted.
"""

import uuid

from orgpay.extensions import db


class PaymentAttempt(db.Model):
    __tablename__ = "payment_attempts"
    __table_args__ = (
        # Stale-claim scan (flask list-stale-attempts)
        db.Index("ix_payment_attempts_status_claimed_at", "status", "claimed_at"),
    )

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    STATUSES = [PENDING, PROCESSING, SUCCEEDED, FAILED]
    TERMINAL_STATUSES = (SUCCEEDED, FAILED)

    # -- Flow types (informational only) --
    DONATION_CHECKOUT = "donation_checkout"
    SUBSCRIPTION_CHECKOUT = "subscription_checkout"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    idempotency_key = db.Column(
        db.String(255), unique=True, nullable=False
    )
    flow_type = db.Column(
        db.String(50), nullable=False
    )  # donation_checkout | subscription_checkout
    amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="usd")
    organization_id = db.Column(
        db.String(36), db.ForeignKey("organizations.id"), nullable=True, index=True
    )
    user_id = db.Column(db.String(36), nullable=True)
    request_fingerprint = db.Column(
        db.String(64), nullable=True
    )  # sha256 hex of the request parameters
    status = db.Column(
        db.String(20), nullable=False, default=PENDING
    )  # pending | processing | succeeded | failed

    # --- Stripe correlation (null until the claim winner records them) ---
    stripe_connected_account_id = db.Column(db.String(255), nullable=True)
    stripe_checkout_session_id = db.Column(
        db.String(255), unique=True, nullable=True
    )
    stripe_payment_intent_id = db.Column(db.String(255), nullable=True)
    checkout_url = db.Column(db.Text, nullable=True)

    last_error = db.Column(db.Text, nullable=True)
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # named metadata_ to avoid clashing with SQLAlchemy's Model.metadata
    claimed_at = db.Column(
        db.DateTime(timezone=True), nullable=True
    )  # set by every successful claim, used for stale reclaim
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    organization = db.relationship("Organization", back_populates="payment_attempts")

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    def to_dict(self):
        """Public view returned to API callers."""
        return {
            "payment_attempt_id": self.id,
            "idempotency_key": self.idempotency_key,
            "status": self.status,
            "url": self.checkout_url,
        }

    def __repr__(self):
        return f"<PaymentAttempt {self.idempotency_key} ({self.status})>"
