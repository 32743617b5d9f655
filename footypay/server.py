from __future__ import annotations
import logging
import os
from typing import Optional

import httpx
import orjson
import redis.asyncio as redis
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse, RedirectResponse, StreamingResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.status import HTTP_303_SEE_OTHER

from .checkout import SITE_URL, initiate_join, play_url
from .errors import ErrorCode, FootyPayError
from .helpers import to_iso, to_minor_units
from .infra import timings
from .infra.logging import setup_logging
from .infra.sql import init_schema, make_async_engine, make_gate
from .model.db import Base, Game, RosterEntry
from .model.games import (
    GameTerms, create_game, get_game, list_games_for_organiser
)
from .model import mockstore
from .model.roster import list_roster, live_occupancy, watch_occupancy
from .organisers import account_status, connect_organiser, refresh_onboarding_link
from .payments import (
    MOCK_SIGNATURE_HEADER, MockPay, PaymentAdapter, StripePay,
    new_stripe_client,
)
from .reconcile import (
    Outcome, confirm_from_redirect, handle_webhook
)

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./footypay.db")
PAYMENTS_BACKEND = os.environ.get("PAYMENTS_BACKEND", "mock").lower()
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/webhook"
)
STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
CURRENCY = os.environ.get("CURRENCY", "gbp").lower()
CHECKOUT_SESSION_TTL = int(os.environ.get("CHECKOUT_SESSION_TTL", "1800"))
OCCUPANCY_POLL_INTERVAL = float(
    os.environ.get("OCCUPANCY_POLL_INTERVAL", "1.0")
)
MOCKSTORE_GATE_LIMIT = int(os.environ.get("MOCKSTORE_GATE_LIMIT", "4"))

setup_logging()
logger = logging.getLogger(__name__)

engine, SessionAsync, gated = make_async_engine(DATABASE_URL)


async def get_db() -> AsyncSession:
    async with gated():
        async with SessionAsync() as session:
            yield session


def get_session_factory() -> async_sessionmaker:
    return SessionAsync


def get_payments(request: Request) -> PaymentAdapter:
    adapter = getattr(request.app.state, "payments", None)
    if adapter is None:
        raise RuntimeError("payment adapter not initialized")
    return adapter


def get_mockpay(
    payments: PaymentAdapter = Depends(get_payments),
) -> MockPay:
    if not isinstance(payments, MockPay):
        raise HTTPException(404, detail="mockpay is not enabled")
    return payments


app = FastAPI(
    title="FootyPay",
    default_response_class=ORJSONResponse,
)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    logger.info("=" * 50)
    logger.info("FootyPay is starting up...")
    logger.info("   - Payments backend: %s", PAYMENTS_BACKEND)
    if PAYMENTS_BACKEND == "mock":
        logger.info("   - MockPay store:    %s", mockstore.BACKEND)
    logger.info("=" * 50)


@app.on_event("startup")
async def _db_init():
    hooks = []
    if PAYMENTS_BACKEND == "mock" and mockstore.BACKEND == "pg":
        hooks.append(mockstore.create_schema)
    await init_schema(engine, Base.metadata, *hooks)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=64
        ),
    )


@app.on_event("startup")
async def _redis_start():
    if PAYMENTS_BACKEND == "mock" and mockstore.BACKEND == "redis":
        REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "64")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("startup")
async def _payments_start():
    # one adapter per process, handed to routes through get_payments
    if PAYMENTS_BACKEND == "stripe":
        if not STRIPE_SECRET_KEY or not STRIPE_WEBHOOK_SECRET:
            raise RuntimeError(
                "PAYMENTS_BACKEND=stripe needs STRIPE_SECRET_KEY and "
                "STRIPE_WEBHOOK_SECRET"
            )
        app.state.payments = StripePay(
            new_stripe_client(STRIPE_SECRET_KEY), STRIPE_WEBHOOK_SECRET
        )
    else:
        store = mockstore.new_store(
            sessions=SessionAsync,
            r=getattr(app.state, "redis", None),
            ttl_seconds=CHECKOUT_SESSION_TTL,
            gated=make_gate(MOCKSTORE_GATE_LIMIT),
        )
        app.state.payments = MockPay(store, base_url=SITE_URL)


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _engine_stop():
    await engine.dispose()


# ----------------------------
# Error mapping
# ----------------------------
@app.exception_handler(FootyPayError)
async def _footypay_error(request: Request, exc: FootyPayError):
    if exc.status_code >= 500:
        logger.warning("%s %s: %s", request.method, request.url.path, exc)
    return ORJSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def _request_validation_error(
    request: Request, exc: RequestValidationError
):
    return ORJSONResponse(
        {
            "error": ErrorCode.VALIDATION.value,
            "detail": jsonable_encoder(exc.errors()),
        },
        status_code=400,
    )


@app.exception_handler(OperationalError)
async def _store_unavailable(request: Request, exc: OperationalError):
    logger.error("store unavailable on %s: %s", request.url.path, exc)
    return ORJSONResponse(
        {
            "error": ErrorCode.UPSTREAM_UNAVAILABLE.value,
            "detail": "store unavailable, try again",
        },
        status_code=503,
    )


# ----------------------------
# Request bodies
# ----------------------------
class CreateGameIn(BaseModel):
    title: str = ""
    date: Optional[str] = None
    location: Optional[str] = None
    price: float | str | None = None
    capacity: int | float | str | None = Field(
        default=None, validation_alias=AliasChoices("capacity", "maxPlayers")
    )
    organiser_ref: str = Field(
        default="",
        validation_alias=AliasChoices("organiserRef", "organiserEmail"),
    )


class JoinIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    game_id: str = Field(alias="gameId", min_length=1)
    name: str
    spots: int = 1


class ConfirmIn(BaseModel):
    session_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("sessionId", "session_id"),
    )
    game_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("gameId", "game_id")
    )


class OrganiserIn(BaseModel):
    email: str


# ----------------------------
# Serializers
# ----------------------------
def game_out(game: Game) -> dict:
    return {
        "id": game.id,
        "title": game.title,
        "date": game.date,
        "location": game.location,
        "price": game.price,
        "amount": to_minor_units(game.price),
        "currency": game.currency,
        "capacity": game.capacity,
        "organiserEmail": game.organiser_email,
        "createdAt": to_iso(game.created_at),
        "shareUrl": play_url(game.id),
    }


def entry_out(e: RosterEntry) -> dict:
    return {
        "sessionId": e.session_id,
        "name": e.name,
        "spots": e.spots,
        "email": e.customer_email,
        "joinedAt": to_iso(e.joined_at),
        "paidAt": to_iso(e.paid_at),
    }


# ----------------------------
# Games
# ----------------------------
@app.get("/health")
async def health_check():
    return {"status": "ok"}


@app.post("/games")
async def create_game_route(
    body: CreateGameIn, db: AsyncSession = Depends(get_db)
):
    game = await create_game(db, GameTerms(
        title=body.title,
        price=body.price,
        capacity=body.capacity,
        organiser_email=body.organiser_ref,
        date=body.date,
        location=body.location,
    ), currency=CURRENCY)
    logger.info("game %s created by %s", game.id, game.organiser_email)
    return {"gameId": game.id, "shareUrl": play_url(game.id)}


@app.get("/games/{game_id}")
async def get_game_route(game_id: str, db: AsyncSession = Depends(get_db)):
    game = await get_game(db, game_id)
    occ = await live_occupancy(db, game_id)
    return {**game_out(game), "occupancy": occ.to_dict()}


@app.get("/games/{game_id}/players")
async def list_players(game_id: str, db: AsyncSession = Depends(get_db)):
    await get_game(db, game_id)
    entries = await list_roster(db, game_id)
    return {
        "players": [entry_out(e) for e in entries],
        "totals": {
            "players": len(entries),
            "spots": sum(e.spots for e in entries),
            # every entry is a confirmed payment
            "paid": len(entries),
        },
    }


@app.get("/games/{game_id}/occupancy")
async def get_occupancy(game_id: str, db: AsyncSession = Depends(get_db)):
    return (await live_occupancy(db, game_id)).to_dict()


@app.get("/games/{game_id}/occupancy/stream")
async def stream_occupancy(
    game_id: str,
    sessions: async_sessionmaker = Depends(get_session_factory),
):
    # 404 before the stream starts; no request-scoped session so a long-lived
    # stream does not hold a gate permit
    async with sessions() as db:
        await get_game(db, game_id)

    async def events():
        async for occ in watch_occupancy(
            sessions, game_id, OCCUPANCY_POLL_INTERVAL
        ):
            yield b"data: " + orjson.dumps(occ.to_dict()) + b"\n\n"

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


# ----------------------------
# Join / confirm / webhook
# ----------------------------
@app.post("/join")
async def join_game(
    body: JoinIn,
    db: AsyncSession = Depends(get_db),
    payments: PaymentAdapter = Depends(get_payments),
):
    redirect = await initiate_join(
        db, payments, body.game_id, body.name, body.spots
    )
    return {
        "redirectUrl": redirect.redirect_url,
        "sessionId": redirect.session_id,
        "amount": redirect.amount,
        "currency": redirect.currency,
    }


@app.post("/confirm")
async def confirm_join(
    body: ConfirmIn,
    db: AsyncSession = Depends(get_db),
    payments: PaymentAdapter = Depends(get_payments),
):
    result = await confirm_from_redirect(
        db, payments, body.session_id, body.game_id
    )
    if result.outcome == Outcome.NOT_PAID:
        return {"ok": False, "status": result.outcome.value}
    return {
        "ok": True,
        "status": result.outcome.value,
        "gameId": result.game_id,
    }


@app.post("/webhook")
async def payments_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    payments: PaymentAdapter = Depends(get_payments),
):
    payload = await request.body()
    headers = dict(request.headers)
    result = await handle_webhook(db, payments, payload, headers)
    return {"received": True, "status": result.outcome.value}


# ----------------------------
# Organisers
# ----------------------------
@app.post("/organisers/connect")
async def organiser_connect(
    body: OrganiserIn,
    db: AsyncSession = Depends(get_db),
    payments: PaymentAdapter = Depends(get_payments),
):
    out = await connect_organiser(db, payments, body.email)
    out["status"] = out["status"].model_dump()
    return out


@app.post("/organisers/refresh-link")
async def organiser_refresh_link(
    body: OrganiserIn,
    db: AsyncSession = Depends(get_db),
    payments: PaymentAdapter = Depends(get_payments),
):
    return {"url": await refresh_onboarding_link(db, payments, body.email)}


@app.get("/organisers/status")
async def organiser_status(
    accountId: str = "",
    payments: PaymentAdapter = Depends(get_payments),
):
    status = await account_status(payments, accountId)
    return {**status.model_dump(), "payment_enabled": status.payment_enabled}


@app.get("/organisers/{email}/games")
async def organiser_games(email: str, db: AsyncSession = Depends(get_db)):
    games = await list_games_for_organiser(db, email)
    items = []
    for g in games:
        occ = await live_occupancy(db, g.id)
        items.append({**game_out(g), "occupancy": occ.to_dict()})
    return {"items": items}


# ----------------------------
# MockPay (hosted checkout stand-in)
# ----------------------------
@app.get("/mockpay/sessions/{psid}")
async def mockpay_session(psid: str, mock: MockPay = Depends(get_mockpay)):
    session = await mock.retrieve_session(psid)
    return session.model_dump()


@app.post("/mockpay/sessions/{psid}/emit")
async def mockpay_emit(
    psid: str,
    request: Request,
    t: str = "succeeded",
    name: Optional[str] = None,
    email: Optional[str] = None,
    mock: MockPay = Depends(get_mockpay),
):
    if t not in {"succeeded", "canceled"}:
        raise HTTPException(400, detail="invalid kind")
    emission = await mock.complete_session(
        psid, t, customer_name=name, customer_email=email
    )

    client_http: Optional[httpx.AsyncClient] = getattr(
        request.app.state, "http", None
    )
    if client_http is None:
        logger.warning("no http client, webhook for %s not sent", psid)
    else:
        try:
            await client_http.post(
                MOCK_WEBHOOK_URL,
                content=emission.payload,
                headers={
                    MOCK_SIGNATURE_HEADER: emission.signature,
                    "content-type": "application/json",
                },
            )
        except httpx.HTTPError as e:
            # the player's return trip confirms anyway; delivery is retried
            # by emitting again
            logger.warning("webhook delivery for %s failed: %s", psid, e)

    return RedirectResponse(
        url=emission.redirect_url, status_code=HTTP_303_SEE_OTHER
    )


# a browser follows the link with GET; scripts may POST
@app.get("/mockpay/onboard/{account_id}")
@app.post("/mockpay/onboard/{account_id}")
async def mockpay_onboard(
    account_id: str, mock: MockPay = Depends(get_mockpay)
):
    status = await mock.complete_onboarding(account_id)
    return {**status.model_dump(), "payment_enabled": status.payment_enabled}


@app.get("/api/pending")
async def api_pending(
    limit: int = 100,
    mock: MockPay = Depends(get_mockpay),
):
    total, items = await mock.store.get_recent_payment_sessions(limit=limit)
    return {"items": items, "limit": limit, "total": total}


@app.get("/api/admin/timings")
async def api_admin_timings():
    return {"items": timings.aggregates()}
