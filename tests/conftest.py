"""Shared test fixtures for the orgpay test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: an organization with a connected account and one without
- threaded_app: app on a file-backed SQLite database, for race tests that
  run one app context per thread (each with its own connection)
"""

import pytest

from orgpay import create_app
from orgpay.extensions import db as _db
from orgpay.models.organization import Organization


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def seed_data(app, db_session):
    """Seed two organizations.

    Returns a dict of plain IDs/slugs so tests can use them across
    contexts.
    """
    with app.app_context():
        org = Organization(
            name="Test Rowing Club",
            slug="test-rowing",
            stripe_connect_account_id="acct_test_123",
        )
        _db.session.add(org)

        no_connect_org = Organization(
            name="No Connect Club",
            slug="no-connect",
        )
        _db.session.add(no_connect_org)
        _db.session.commit()

        return {
            "org_id": org.id,
            "org_slug": org.slug,
            "connect_account_id": org.stripe_connect_account_id,
            "no_connect_org_id": no_connect_org.id,
            "no_connect_slug": no_connect_org.slug,
        }


@pytest.fixture
def threaded_app(tmp_path):
    """App bound to a SQLite file so that threads get separate connections.

    The in-memory database used by `app` shares a single connection,
    which would serialize the very races these tests are about.
    """
    app = create_app(
        "testing",
        test_config={
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'race.db'}",
            "SQLALCHEMY_ENGINE_OPTIONS": {
                "connect_args": {"timeout": 30, "check_same_thread": False},
            },
            # Losers wait up to ~2s for the winner in race tests.
            "PAYMENT_WAIT_MAX_POLLS": 80,
            "PAYMENT_WAIT_INTERVAL_MS": 25,
        },
    )
    with app.app_context():
        _db.create_all()
    yield app
    with app.app_context():
        _db.session.remove()
        _db.drop_all()
        _db.engine.dispose()
