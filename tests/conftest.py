import datetime
import sys
import pathlib

import pytest

# Ensure repository root is on sys.path for imports like `from app import create_app`
REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from config import TestConfig  # noqa: E402
from market import Market  # noqa: E402
from models import NotificationService, PaymentGateway, UserRole  # noqa: E402


class FakeClock:
    """Callable clock the tests can move around."""
    def __init__(self, now=None):
        self.now = now or datetime.datetime(2024, 1, 15, 12, 0, 0)

    def __call__(self):
        return self.now

    def set(self, *args):
        self.now = datetime.datetime(*args)


class DecliningGateway(PaymentGateway):
    """Approves nothing."""
    def __init__(self):
        super().__init__(delay=0)
        self.attempts = []

    def process_payment(self, amount):
        self.attempts.append(('payment', amount))
        return {'success': False, 'message': 'Payment failed: card declined.', 'transaction_id': None}

    def process_refund(self, amount):
        self.attempts.append(('refund', amount))
        return {'success': False, 'message': 'Refund failed: gateway unavailable.', 'transaction_id': None}


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def notifier():
    return NotificationService()


@pytest.fixture()
def market(clock, notifier):
    return Market(payments=PaymentGateway(delay=0), notifier=notifier, clock=clock,
                  data_file="does-not-exist.dat")


@pytest.fixture()
def stocked_market(market):
    """Market with one customer, one admin and a small catalog."""
    market.accounts.register("u1", "secret", UserRole.CUSTOMER)
    market.accounts.register("admin", "admin", UserRole.ADMIN)
    market.add_book("B1", "Python Basics", "Ann Lee", 10.0, 5, "Programming", "Pragmatic")
    market.add_book("B2", "Advanced Python", "Bo Kim", 25.5, 10, "Programming", "O'Reilly")
    market.add_book("B3", "Dune", "Frank Herbert", 9.99, 2, "SciFi", "Ace")
    return market


@pytest.fixture()
def app(stocked_market):
    """
    Flask app wired to the stocked market, fresh for every test.
    """
    from app import create_app

    return create_app(TestConfig, market=stocked_market)


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def login(client):
    def _login(username, password):
        return client.post('/login', json={'username': username, 'password': password})
    return _login
