import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Settings are read once at import and provider credentials are mandatory, so
# these must be in place before test modules import payflow. Restored in
# pytest_unconfigure. The file database is bound per session in disposable_database.
TEST_ENV = {
    "DB_URL": "sqlite://",
    "MPESA_CONSUMER_KEY": "consumer-key",
    "MPESA_CONSUMER_SECRET": "consumer-secret",
    "MPESA_BUSINESS_SHORT_CODE": "174379",
    "MPESA_PASSKEY": "passkey",
    "MPESA_CALLBACK_URL": "https://payments.example.org/payments/callback/cb-secret",
    "CALLBACK_TOKEN": "cb-secret",
    "MPESA_BASE_URL": "https://gateway.test",
    "BEARER_TOKEN": "testtoken",
    "RETRY_BACKOFF_SECONDS": "0",
    "PENDING_EXPIRY_SECONDS": "300",
}
_OLD_ENV = {k: os.environ.get(k) for k in TEST_ENV}
os.environ.update(TEST_ENV)


def pytest_unconfigure(config):
    for key, value in _OLD_ENV.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


@pytest.fixture(scope="session", autouse=True)
def disposable_database(tmp_path_factory):
    """
    Point the engine and session factory at a disposable SQLite file.
    """
    import payflow.database as database

    db_path = tmp_path_factory.mktemp("data") / "test.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    old_engine = database.engine
    database.engine = engine
    database.SessionLocal.configure(bind=engine)
    try:
        yield engine
    finally:
        database.SessionLocal.configure(bind=old_engine)
        database.engine = old_engine
        engine.dispose()


class FakeGateway:
    """Stands in for GatewayClient at the HTTP layer."""

    def __init__(self):
        self.pushes = []
        self.queries = []
        self.push_results = []
        self.status_results = []

    async def request_push(self, phone_number, amount, account_reference):
        from payflow.contracts.contracts import StkPushResponse

        self.pushes.append((phone_number, amount, account_reference))
        if self.push_results:
            result = self.push_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        index = len(self.pushes)
        return StkPushResponse(
            MerchantRequestID=f"MR{index}",
            CheckoutRequestID=f"CO{index}",
            ResponseCode="0",
            ResponseDescription="Success. Request accepted for processing",
            CustomerMessage="Success. Request accepted for processing",
        )

    async def query_status(self, correlation_id):
        self.queries.append(correlation_id)
        result = self.status_results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def app_module():
    """
    Fresh tables for every test; the background worker is never started because
    the TestClient is used without its context manager.
    """
    import payflow.database as database
    import payflow.main as main
    import payflow.models.models as models

    models.Base.metadata.drop_all(bind=database.engine)
    models.Base.metadata.create_all(bind=database.engine)
    yield main, database, models
    main.app.dependency_overrides.clear()


@pytest.fixture
def gateway(app_module):
    main, _, _ = app_module
    fake = FakeGateway()
    main.app.dependency_overrides[main.get_gateway] = lambda: fake
    return fake


@pytest.fixture
def client(app_module, gateway):
    main, _, _ = app_module
    main.app.dependency_overrides[main.require_bearer_token] = lambda: None
    return TestClient(main.app)


@pytest.fixture
def db(app_module):
    _, database, _ = app_module
    session = database.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_account(db, app_module):
    _, _, models = app_module

    def _make(account_id, id_number=None, name="Member"):
        account = models.Account(id=account_id, name=name, id_number=id_number, phone="254712345678")
        db.add(account)
        db.commit()
        return account

    return _make
