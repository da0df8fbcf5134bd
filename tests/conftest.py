import copy
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from forgedesk.auth import SessionManager, build_admin_accounts
from forgedesk.orders import OrderEngine
from forgedesk.server import Services, create_app

ADMIN_EMAIL = "ops@example.com"
ADMIN_PASSWORD = "correct horse battery"
WEBHOOK_SECRET = "whsec_test"


class FakeClock:
    def __init__(self, start=datetime(2025, 3, 14, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def manager(clock):
    return SessionManager(clock=clock)


@pytest.fixture
def engine(clock):
    return OrderEngine(clock=clock)


@pytest.fixture(scope="session")
def admin_accounts():
    return {
        **build_admin_accounts(ADMIN_EMAIL, ADMIN_PASSWORD, "Super Admin"),
        **build_admin_accounts("support@example.com", ADMIN_PASSWORD, "Support"),
    }


@pytest.fixture
def services(clock, admin_accounts):
    # accounts carry lockout counters; each test gets its own copy
    return Services(clock=clock, admin_accounts=copy.deepcopy(admin_accounts), webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def client(services):
    return TestClient(create_app(services))


def order_input(**overrides):
    data = {
        "customerName": "Ada Lovelace",
        "customerEmail": "ada@example.com",
        "company": "Analytical Engines",
        "appName": "Inventory Tracker",
        "appDescription": "Track stock levels across three warehouses",
        "framework": "Next.js",
        "complexity": "simple",
        "features": [],
        "timeline": "1w",
        "deliveryMethod": "github",
    }
    data.update(overrides)
    return data


def login(client, email=ADMIN_EMAIL, password=ADMIN_PASSWORD):
    """Log in and return Bearer headers; the cookie jar is cleared so headers are the only credential."""
    resp = client.post("/api/admin/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    client.cookies.clear()
    return {"Authorization": f"Bearer {resp.json()['sessionId']}"}
