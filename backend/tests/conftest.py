import pytest
from flask import g
from flask.testing import FlaskClient

from payfesa import create_app
from payfesa.extensions import db
from payfesa.models import PaymentAccount, Payout, RoscaGroup, User
from payfesa.utils.jwt_utils import create_access_token
from payfesa.utils.paychangu_client import GatewayResult


class FakeGateway:
    """Records every request; answers from a queue, else accepts with a fresh ref."""

    def __init__(self):
        self.calls = []
        self.verify_calls = []
        self.results = []
        self.verify_results = []

    def queue(self, *results):
        self.results.extend(results)

    def queue_verify(self, *results):
        self.verify_results.extend(results)

    def initiate(self, req):
        self.calls.append(req)
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        n = len(self.calls)
        return GatewayResult(success=True, status="processing", external_ref=f"REF-{n}", trace_id=f"TRACE-{n}")

    def verify(self, charge_id):
        self.verify_calls.append(charge_id)
        if self.verify_results:
            return self.verify_results.pop(0)
        return GatewayResult(success=True, status="processing")


def rejected(message="insufficient float"):
    return GatewayResult(success=False, error=message, error_kind="GatewayRejected")


def timed_out():
    return GatewayResult(success=False, status="processing", error="Payment gateway did not respond in time",
                         error_kind="GatewayTimeout")


class PerRequestLoginClient(FlaskClient):
    """Requests share the fixture's app context, so drop the cached login before each one."""

    def open(self, *args, **kwargs):
        g.pop("_login_user", None)
        return super().open(*args, **kwargs)


@pytest.fixture()
def app():
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        "SECRET_KEY": "test-secret-key-0123456789-abcdefghijkl",
        "PAYCHANGU_SECRET_KEY": "",
        "PAYCHANGU_WEBHOOK_SECRET": "",
        "PAYCHANGU_WEBHOOK_STRICT": False,
    })
    app.extensions["payment_gateway"] = FakeGateway()
    app.test_client_class = PerRequestLoginClient
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def gateway(app):
    return app.extensions["payment_gateway"]


def _user(name, email, role="member"):
    u = User(name=name, email=email, role=role)
    db.session.add(u)
    db.session.commit()
    return u


@pytest.fixture()
def member(app):
    return _user("Chikondi Banda", "chikondi@example.com")


@pytest.fixture()
def other_member(app):
    return _user("Tiwonge Phiri", "tiwonge@example.com")


@pytest.fixture()
def admin(app):
    return _user("Ops Admin", "ops@example.com", role="admin")


@pytest.fixture()
def group(app):
    g = RoscaGroup(name="Lilongwe Savers", contribution_amount=50_000)
    db.session.add(g)
    db.session.commit()
    return g


@pytest.fixture()
def airtel_account(member):
    acct = PaymentAccount(
        user_id=member.id,
        rail="mobile_money",
        provider="Airtel",
        phone_number="991234567",
        account_name="Chikondi Banda",
        is_primary=True,
    )
    db.session.add(acct)
    db.session.commit()
    return acct


@pytest.fixture()
def payout(member, group):
    p = Payout(group_id=group.id, recipient_id=member.id, gross_amount=100_000, status="pending")
    db.session.add(p)
    db.session.commit()
    return p


def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


MOBILE = {"phone_number": "+265 991 234 567", "provider": "airtel", "account_name": "Chikondi Banda"}
BANK = {"bank_name": "National Bank of Malawi", "account_number": "1001234567", "account_name": "Chikondi Banda"}
