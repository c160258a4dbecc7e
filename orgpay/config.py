import os


class Config:
    """Base configuration. Shared across all environments."""

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    # Connect webhooks are signed with a separate secret. Optional:
    # the connect endpoint answers 503 while it is unset.
    STRIPE_CONNECT_WEBHOOK_SECRET = os.environ.get("STRIPE_CONNECT_WEBHOOK_SECRET")
    APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:5000")

    # --- Payment attempts ---
    # Losers of a claim race poll the winner's row this many times,
    # sleeping PAYMENT_WAIT_INTERVAL_MS between polls. Keep the product
    # well under the HTTP request timeout.
    PAYMENT_WAIT_MAX_POLLS = int(os.environ.get("PAYMENT_WAIT_MAX_POLLS", 8))
    PAYMENT_WAIT_INTERVAL_MS = int(os.environ.get("PAYMENT_WAIT_INTERVAL_MS", 150))
    # A "processing" row with no checkout session recorded after this
    # many seconds may be reclaimed. 0 disables reclaiming.
    PAYMENT_STALE_PROCESSING_SECONDS = int(os.environ.get(
        "PAYMENT_STALE_PROCESSING_SECONDS", 600
    ))

    # --- Donations ---
    DONATION_MIN_CENTS = int(os.environ.get("DONATION_MIN_CENTS", 100))  # $1
    DONATION_MAX_CENTS = int(os.environ.get("DONATION_MAX_CENTS", 10_000_000))  # $100,000

    # --- Webhooks ---
    WEBHOOK_RATE_LIMIT = os.environ.get("WEBHOOK_RATE_LIMIT", "120 per minute")

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "STRIPE_SECRET_KEY",
            "STRIPE_WEBHOOK_SECRET",
            "APP_BASE_URL",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True


class TestConfig(Config):
    """Testing — in-memory SQLite, fast polling."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    STRIPE_SECRET_KEY = "sk_test_fake"
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    STRIPE_CONNECT_WEBHOOK_SECRET = "whsec_connect_test_fake"
    APP_BASE_URL = "http://localhost:5000"
    PAYMENT_WAIT_MAX_POLLS = 5
    PAYMENT_WAIT_INTERVAL_MS = 20
    PAYMENT_STALE_PROCESSING_SECONDS = 600
    DONATION_MIN_CENTS = 100
    DONATION_MAX_CENTS = 10_000_000
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
    SERVER_NAME = "localhost"

    @staticmethod
    def validate():
        """Skip validation in test mode — everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
