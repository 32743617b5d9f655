import json
import os
import time
from types import SimpleNamespace

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import fakeredis.aioredis
import pytest
import stripe
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from footypay.infra.sql import init_schema, make_gate
from footypay.model import mockstore
from footypay.model.db import Base
from footypay.model.games import save_organiser
from footypay.payments import MockPay, StripePay
from footypay.server import app, get_db, get_payments, get_session_factory


@pytest.fixture
async def db_engine(tmp_path):
    db_path = tmp_path / "test.db"
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 15},
    )
    await init_schema(engine, Base.metadata, mockstore.create_schema)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest.fixture
def mockpay(session_factory) -> MockPay:
    store = mockstore.new_store(
        sessions=session_factory, gated=make_gate(4), backend="pg", ttl_seconds=1800
    )
    return MockPay(store, secret="test-secret", base_url="http://test")


@pytest.fixture(params=["pg", "redis"])
async def store(request, session_factory):
    """Each mock store backend in turn; redis runs in memory."""
    if request.param == "pg":
        yield mockstore.new_store(
            sessions=session_factory, gated=make_gate(4), backend="pg", ttl_seconds=1800
        )
        return
    r = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield mockstore.new_store(r=r, backend="redis", ttl_seconds=1800)
    await r.aclose()


@pytest.fixture
async def client(session_factory, mockpay) -> AsyncClient:
    """HTTP client wired to the temp SQLite DB and the fixture MockPay."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_payments] = lambda: mockpay
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
async def organiser(db_session, mockpay) -> str:
    """An organiser whose payout account can take charges and payouts."""
    email = "org@example.com"
    acct = await mockpay.create_account(email)
    await mockpay.complete_onboarding(acct.id)
    await save_organiser(db_session, email, acct.id)
    return email


@pytest.fixture
async def pending_organiser(db_session, mockpay) -> str:
    """An organiser who connected but never finished onboarding."""
    email = "pending@example.com"
    acct = await mockpay.create_account(email)
    await save_organiser(db_session, email, acct.id)
    return email


# ---- stripe stand-in ---------------------------------------------------------

class _StripeObject:
    def __init__(self, data: dict):
        self._data = data

    def to_dict(self) -> dict:
        return self._data


class FakeStripe:
    """Just enough of stripe.StripeClient for StripePay, kept in memory."""

    def __init__(self):
        self.sessions = {}
        self.account_rows = {}
        self.idempotent = {}
        self.requests = []
        self.fail = None
        self.checkout = SimpleNamespace(sessions=SimpleNamespace(
            create_async=self._create_session,
            retrieve_async=self._retrieve_session,
        ))
        self.accounts = SimpleNamespace(
            create_async=self._create_account,
            retrieve_async=self._retrieve_account,
        )
        self.account_links = SimpleNamespace(create_async=self._create_link)

    def _check(self):
        if self.fail is not None:
            raise self.fail

    async def _create_session(self, params, options=None):
        self._check()
        self.requests.append((params, options))
        key = (options or {}).get("idempotency_key")
        if key in self.idempotent:
            # stripe replays the first response, and only for the same request
            first_params, sid = self.idempotent[key]
            if first_params != params:
                raise stripe.IdempotencyError(
                    "Keys for idempotent requests can only be used with the same parameters they were first used with."
                )
            return _StripeObject(self.sessions[sid])
        sid = f"cs_test_{len(self.sessions) + 1}"
        price = params["line_items"][0]["price_data"]
        self.sessions[sid] = {
            "id": sid,
            "status": "open",
            "payment_status": "unpaid",
            "metadata": dict(params["metadata"]),
            "amount_total": price["unit_amount"],
            "currency": price["currency"],
            "created": time.time(),
            "url": f"https://checkout.stripe.test/{sid}",
        }
        if key:
            self.idempotent[key] = (params, sid)
        return _StripeObject(self.sessions[sid])

    async def _retrieve_session(self, sid):
        self._check()
        if sid not in self.sessions:
            raise stripe.InvalidRequestError(
                f"No such checkout.session: '{sid}'", "id", code="resource_missing"
            )
        return _StripeObject(self.sessions[sid])

    async def _create_account(self, params):
        self._check()
        acct_id = f"acct_test_{len(self.account_rows) + 1}"
        self.account_rows[acct_id] = {
            "id": acct_id,
            "email": params.get("email"),
            "charges_enabled": False,
            "payouts_enabled": False,
            "requirements": {"currently_due": ["external_account"], "disabled_reason": "requirements.past_due"},
        }
        return _StripeObject(self.account_rows[acct_id])

    async def _retrieve_account(self, acct_id):
        self._check()
        if acct_id not in self.account_rows:
            raise stripe.InvalidRequestError(
                f"No such account: '{acct_id}'", "account", code="resource_missing"
            )
        return _StripeObject(self.account_rows[acct_id])

    async def _create_link(self, params):
        self._check()
        return _StripeObject({"url": f"https://connect.stripe.test/{params['account']}"})

    def enable(self, acct_id: str):
        self.account_rows[acct_id].update(
            charges_enabled=True, payouts_enabled=True, requirements={"currently_due": []}
        )

    def pay(self, sid: str, email: str = None):
        self.sessions[sid].update(
            status="complete", payment_status="paid", customer_details={"email": email, "name": None}
        )

    def construct_event(self, payload, sig_header, secret):
        if sig_header != f"good:{secret}":
            raise stripe.SignatureVerificationError("No signatures found matching the expected signature", sig_header)
        return _StripeObject(json.loads(payload))


@pytest.fixture
def fake_stripe() -> FakeStripe:
    return FakeStripe()


@pytest.fixture
def stripepay(fake_stripe) -> StripePay:
    return StripePay(fake_stripe, webhook_secret="whsec_test")
