"""Organization models.

- Organization: the tenant. Donations are routed to its Stripe Connect
  account.
- OrganizationSubscription: the organization's platform subscription,
  synced from Stripe webhooks. One per organization.
"""

import uuid

from orgpay.extensions import db


class Organization(db.Model):
    __tablename__ = "organizations"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name = db.Column(db.String(255), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    stripe_connect_account_id = db.Column(
        db.String(255), nullable=True
    )  # acct_..., required before donations are accepted
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    subscription = db.relationship(
        "OrganizationSubscription",
        back_populates="organization",
        uselist=False,
        cascade="all, delete-orphan",
    )
    payment_attempts = db.relationship(
        "PaymentAttempt", back_populates="organization", lazy="dynamic"
    )

    @property
    def accepts_donations(self):
        return bool(self.stripe_connect_account_id)

    def __repr__(self):
        return f"<Organization {self.slug}>"


class OrganizationSubscription(db.Model):
    __tablename__ = "organization_subscriptions"

    # -- Valid statuses (synced from Stripe) --
    STATUSES = [
        "pending",
        "active",
        "trialing",
        "past_due",
        "canceling",
        "canceled",
        "unpaid",
        "incomplete_expired",
    ]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    organization_id = db.Column(
        db.String(36),
        db.ForeignKey("organizations.id"),
        unique=True,
        nullable=False,
    )
    stripe_subscription_id = db.Column(
        db.String(255), unique=True, nullable=True
    )
    stripe_customer_id = db.Column(db.String(255), nullable=True, index=True)
    status = db.Column(db.String(50), nullable=False, default="pending")
    current_period_end = db.Column(
        db.DateTime(timezone=True), nullable=True
    )
    cancel_at_period_end = db.Column(db.Boolean, default=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    organization = db.relationship("Organization", back_populates="subscription")

    def __repr__(self):
        return f"<OrganizationSubscription {self.organization_id} ({self.status})>"
