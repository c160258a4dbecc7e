# Models package — import all models here so Alembic can discover them.

from orgpay.models.organization import (  # noqa: F401
    Organization,
    OrganizationSubscription,
)
from orgpay.models.payment_attempt import PaymentAttempt  # noqa: F401
from orgpay.models.stripe_event import StripeEvent  # noqa: F401
