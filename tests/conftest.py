import itertools
from decimal import Decimal

import pytest
from flask import g

from trustwork import create_app
from trustwork.config import Config
from trustwork.extensions import db
from trustwork.models.user import User
from trustwork.security import issue_token
from trustwork.services import applications, assignments, escrow, payment_service


class UnitConfig(Config):
    TESTING = True
    SECRET_KEY = "test-secret"
    GATEWAY_DRY_RUN = True
    GATEWAY_PASSPHRASE = "test-passphrase"
    GATEWAY_BACKOFF_SECONDS = 0
    MAIL_SUPPRESS_SEND = True
    MAIL_DEFAULT_SENDER = "noreply@trustwork.test"
    SENTRY_DSN = ""
    LOG_LEVEL = "WARNING"
    PLATFORM_FEE_RATE = Decimal("0.10")


@pytest.fixture
def app(tmp_path):
    class _Config(UnitConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'trustwork.db'}"
        LOG_DIR = str(tmp_path / "logs")
        OBJECT_STORE_ROOT = str(tmp_path / "objects")

    app = create_app(_Config)

    @app.before_request
    def _fresh_principal():
        # test requests share the fixture app context, and with it flask.g
        g.pop("_login_user", None)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def http(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    counter = itertools.count(1)

    def _make(role="client", name=None, status="active"):
        n = next(counter)
        user = User(name=name or f"{role}-{n}", email=f"{role}{n}@trustwork.test", role=role, status=status)
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture
def client_user(make_user):
    return make_user("client", "C1")


@pytest.fixture
def freelancer(make_user):
    return make_user("freelancer", "F1")


@pytest.fixture
def admin(make_user):
    return make_user("admin", "Ops")


@pytest.fixture
def auth():
    def _auth(user):
        return {"Authorization": f"Bearer {issue_token(user)}"}
    return _auth


@pytest.fixture
def notify(http):
    """Post a signed provider notification to the webhook endpoint."""
    def _notify(**fields):
        fields = {k: str(v) for k, v in fields.items()}
        fields["signature"] = payment_service.sign(fields)
        return http.post("/webhooks/payments", data=fields)
    return _notify


@pytest.fixture
def posting(client_user):
    def _posting(kind="gig", budget="5000", **extra):
        fields = {
            "title": "Build a landing page",
            "kind": kind,
            "budget_min": budget,
            "budget_max": budget,
            "budget_unit": "fixed",
            "status": "open",
        }
        fields.update(extra)
        return assignments.create_assignment(client_user, fields)
    return _posting


@pytest.fixture
def awarded(posting, client_user, freelancer):
    """An open posting with F1's application accepted."""
    def _awarded(kind="gig", budget="5000"):
        a = posting(kind, budget)
        app_ = applications.submit(freelancer, a.id, {"cover_letter": "I have shipped many of these."})
        applications.set_status(client_user, app_.id, "accepted")
        return a, app_
    return _awarded


@pytest.fixture
def funded(awarded, client_user, notify):
    """Awarded posting whose escrow is held after the provider notification."""
    def _funded(kind="gig", gross="5000", ref="x-1"):
        a, app_ = awarded(kind, gross)
        e = escrow.create(client_user, a.id, gross, correlation_id=ref)
        resp = notify(m_payment_id=ref, pf_payment_id=ref, payment_status="COMPLETE", amount_gross=gross)
        assert resp.status_code == 200, resp.get_json()
        return a, app_, e
    return _funded
