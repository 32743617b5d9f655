import json

import pytest
import stripe
from httpx import ASGITransport, AsyncClient

from footypay.infra import timings
from footypay.helpers import join_idempotency_key
from footypay.model.games import save_organiser
from footypay.payments import CHECKOUT_IDEMPOTENCY_WINDOW, STRIPE_SIGNATURE_HEADER
from footypay.server import app, get_db, get_payments, get_session_factory


@pytest.fixture
async def stripe_client(session_factory, stripepay) -> AsyncClient:
    """Same app, with the Stripe adapter in front of a fake Stripe."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_payments] = lambda: stripepay
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
async def stripe_organiser(db_session, stripepay, fake_stripe) -> str:
    acct = await stripepay.create_account("org@example.com")
    fake_stripe.enable(acct.id)
    await save_organiser(db_session, "org@example.com", acct.id)
    return "org@example.com"


async def test_health(client: AsyncClient):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


async def test_timings_cover_processor_calls(client: AsyncClient, organiser: str):
    timings.reset()
    game = (await client.post(
        "/games", json={"title": "Timed", "price": 5, "capacity": 4, "organiserRef": organiser}
    )).json()
    await client.post("/join", json={"gameId": game["gameId"], "name": "Sam"})

    items = (await client.get("/api/admin/timings")).json()["items"]
    kinds = {i["kind"] for i in items}
    assert {"payments.create_session", "payments.retrieve_account"} <= kinds
    assert all(set(i) == {"kind", "n", "mean", "std", "p95", "max"} for i in items)


async def test_pending_lists_open_sessions(client: AsyncClient, organiser: str, mockpay):
    game = (await client.post(
        "/games", json={"title": "Pending", "price": 5, "capacity": 4, "organiserRef": organiser}
    )).json()
    a = (await client.post("/join", json={"gameId": game["gameId"], "name": "Sam"})).json()
    b = (await client.post("/join", json={"gameId": game["gameId"], "name": "Alex"})).json()
    await mockpay.complete_session(a["sessionId"])

    data = (await client.get("/api/pending")).json()
    assert data["total"] == 1
    assert [i["psid"] for i in data["items"]] == [b["sessionId"]]


async def test_mock_session_view(client: AsyncClient, organiser: str):
    game = (await client.post(
        "/games", json={"title": "View", "price": 2.5, "capacity": 4, "organiserRef": organiser}
    )).json()
    sid = (await client.post("/join", json={"gameId": game["gameId"], "name": "Sam"})).json()["sessionId"]

    resp = await client.get(f"/mockpay/sessions/{sid}")
    assert resp.status_code == 200
    assert resp.json()["amount_total"] == 250
    assert (await client.get("/mockpay/sessions/mock_missing")).status_code == 404


async def test_emit_rejects_unknown_kind(client: AsyncClient):
    resp = await client.post("/mockpay/sessions/whatever/emit", params={"t": "refunded"})
    assert resp.status_code == 400


class TestStripeBackend:
    async def test_mock_routes_disabled(self, stripe_client: AsyncClient):
        assert (await stripe_client.get("/mockpay/sessions/cs_1")).status_code == 404
        assert (await stripe_client.get("/api/pending")).status_code == 404

    async def test_join_webhook_and_confirm(self, stripe_client: AsyncClient, stripe_organiser: str, fake_stripe):
        game = (await stripe_client.post(
            "/games", json={"title": "Stripe night", "price": 7, "capacity": 10, "organiserRef": stripe_organiser}
        )).json()
        join = (await stripe_client.post("/join", json={"gameId": game["gameId"], "name": "Sam"})).json()
        assert join["redirectUrl"].startswith("https://checkout.stripe.test/")
        assert join["amount"] == 700

        fake_stripe.pay(join["sessionId"], email="sam@example.com")
        payload = json.dumps({
            "id": "evt_1",
            "type": "checkout.session.completed",
            "data": {"object": fake_stripe.sessions[join["sessionId"]]},
        }).encode()
        resp = await stripe_client.post(
            "/webhook", content=payload, headers={STRIPE_SIGNATURE_HEADER: "good:whsec_test"}
        )
        assert resp.json() == {"received": True, "status": "committed"}

        resp = await stripe_client.post("/confirm", json={"sessionId": join["sessionId"]})
        assert resp.json()["status"] == "already_processed"

        players = (await stripe_client.get(f"/games/{game['gameId']}/players")).json()["players"]
        assert [(p["name"], p["email"]) for p in players] == [("Sam", "sam@example.com")]

    async def test_processor_outage_is_503(self, stripe_client: AsyncClient, stripe_organiser: str, fake_stripe):
        game = (await stripe_client.post(
            "/games", json={"title": "Outage", "price": 7, "capacity": 10, "organiserRef": stripe_organiser}
        )).json()
        fake_stripe.fail = stripe.APIConnectionError("connection reset")

        resp = await stripe_client.post("/join", json={"gameId": game["gameId"], "name": "Sam"})
        assert resp.status_code == 503
        assert resp.json()["error"] == "UPSTREAM_UNAVAILABLE"

        resp = await stripe_client.post("/confirm", json={"sessionId": "cs_test_1"})
        assert resp.status_code == 503

    async def test_forged_webhook_rejected(self, stripe_client: AsyncClient):
        resp = await stripe_client.post("/webhook", content=b"{}", headers={STRIPE_SIGNATURE_HEADER: "forged"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "INVALID_SIGNATURE"

    async def test_double_click_replays_stripe_session(self, stripe_client: AsyncClient, stripe_organiser: str, fake_stripe):
        game = (await stripe_client.post(
            "/games", json={"title": "Clicks", "price": 7, "capacity": 10, "organiserRef": stripe_organiser}
        )).json()
        first = (await stripe_client.post("/join", json={"gameId": game["gameId"], "name": "Sam"})).json()
        second = (await stripe_client.post("/join", json={"gameId": game["gameId"], "name": "Sam"})).json()
        assert second["sessionId"] == first["sessionId"]
        assert len(fake_stripe.sessions) == 1

    async def test_names_differing_in_case_both_join(self, stripe_client: AsyncClient, stripe_organiser: str, fake_stripe):
        game = (await stripe_client.post(
            "/games", json={"title": "Case", "price": 7, "capacity": 10, "organiserRef": stripe_organiser}
        )).json()
        upper = await stripe_client.post("/join", json={"gameId": game["gameId"], "name": "Sam"})
        lower = await stripe_client.post("/join", json={"gameId": game["gameId"], "name": "sam"})
        assert upper.status_code == lower.status_code == 200
        assert upper.json()["sessionId"] != lower.json()["sessionId"]
        assert fake_stripe.sessions[lower.json()["sessionId"]]["metadata"]["name"] == "sam"

    async def test_new_window_opens_new_stripe_session(
        self, stripe_client: AsyncClient, stripe_organiser: str, fake_stripe, monkeypatch
    ):
        game = (await stripe_client.post(
            "/games", json={"title": "Later", "price": 7, "capacity": 10, "organiserRef": stripe_organiser}
        )).json()
        monkeypatch.setattr("footypay.helpers.now_ts", lambda: 1_000_000.0)
        first = (await stripe_client.post("/join", json={"gameId": game["gameId"], "name": "Sam"})).json()
        monkeypatch.setattr("footypay.helpers.now_ts", lambda: 1_000_000.0 + 3600)
        later = (await stripe_client.post("/join", json={"gameId": game["gameId"], "name": "Sam"})).json()
        assert later["sessionId"] != first["sessionId"]

    async def test_idempotency_conflict_is_400(
        self, stripe_client: AsyncClient, stripe_organiser: str, fake_stripe, monkeypatch
    ):
        game = (await stripe_client.post(
            "/games", json={"title": "Conflict", "price": 7, "capacity": 10, "organiserRef": stripe_organiser}
        )).json()
        monkeypatch.setattr("footypay.helpers.now_ts", lambda: 1_000_000.0)
        key = join_idempotency_key(game["gameId"], "Sam", 700, window=CHECKOUT_IDEMPOTENCY_WINDOW)
        # the key already belongs to a request with other parameters
        fake_stripe.idempotent[key] = ({"stale": True}, "cs_stale")

        resp = await stripe_client.post("/join", json={"gameId": game["gameId"], "name": "Sam"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "VALIDATION_ERROR"
