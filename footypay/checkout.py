"""Turn a player's join intent into a hosted checkout session.

Nothing here moves money or writes the roster. The session's metadata is
the only record of who is joining; the reconciler reads it back from the
processor once the payment has gone through.
"""
from __future__ import annotations
import logging
import os
from dataclasses import dataclass
from urllib.parse import quote

from sqlalchemy.ext.asyncio import AsyncSession

from .errors import (
    FootyPayError, NotFound, OrganiserNotOnboarded, SoldOut,
    UpstreamUnavailable, ValidationError,
)
from .helpers import clean_name, join_idempotency_key, to_minor_units
from .model.games import get_game
from .model.roster import reserved_spots
from .payments import (
    CHECKOUT_IDEMPOTENCY_WINDOW, CheckoutRequest, PaymentAdapter,
    SessionMetadata, processor_call,
)

logger = logging.getLogger(__name__)

SITE_URL = os.environ.get("SITE_URL", "http://localhost:8000").rstrip("/")
ENFORCE_CAPACITY_AT_JOIN = os.environ.get(
    "ENFORCE_CAPACITY_AT_JOIN", "1"
).lower() not in ("0", "false", "no")


@dataclass(frozen=True)
class JoinRedirect:
    redirect_url: str
    session_id: str
    amount: int
    currency: str


def play_url(game_id: str, site_url: str = SITE_URL) -> str:
    return f"{site_url}/play/{quote(game_id)}"


def onboarding_return_url(account_id: str, site_url: str = SITE_URL) -> str:
    return f"{site_url}/create?accountId={quote(account_id)}"


async def onboarding_link(
    payments: PaymentAdapter, account_id: str, site_url: str = SITE_URL
) -> str:
    back = onboarding_return_url(account_id, site_url)
    return await processor_call(
        "payments.account_link",
        payments.create_account_link(account_id, back, back),
    )


async def ensure_payment_enabled(
    payments: PaymentAdapter, account_id: str, site_url: str = SITE_URL
) -> None:
    """Raise OrganiserNotOnboarded, with a way back in when we can get one."""
    try:
        status = await processor_call(
            "payments.retrieve_account", payments.retrieve_account(account_id)
        )
    except NotFound:
        raise OrganiserNotOnboarded(account_id)
    if status.payment_enabled:
        return
    url = None
    try:
        url = await onboarding_link(payments, account_id, site_url)
    except FootyPayError as e:
        logger.warning("could not create onboarding link for %s: %s",
                       account_id, e)
    raise OrganiserNotOnboarded(account_id, url)


async def initiate_join(
    db: AsyncSession,
    payments: PaymentAdapter,
    game_id: str,
    name: str,
    spots: int = 1,
    *,
    site_url: str = SITE_URL,
    enforce_capacity: bool = ENFORCE_CAPACITY_AT_JOIN,
) -> JoinRedirect:
    game = await get_game(db, game_id)
    name = clean_name(name)
    if isinstance(spots, bool) or not isinstance(spots, int) or spots < 1:
        raise ValidationError("spots must be a positive integer")
    if spots > game.capacity:
        raise ValidationError("more spots requested than the game has")

    unit = to_minor_units(game.price)
    if unit <= 0:
        raise ValidationError("game has no chargeable price")

    if enforce_capacity:
        # advisory: two joins racing for the last spot can both get here
        reserved, _ = await reserved_spots(db, game.id)
        if reserved + spots > game.capacity:
            raise SoldOut(reserved, game.capacity)

    await ensure_payment_enabled(
        payments, game.organiser_account_id, site_url
    )

    amount = unit * spots
    back = play_url(game.id, site_url)
    req = CheckoutRequest(
        metadata=SessionMetadata(game_id=game.id, name=name, spots=spots),
        amount=amount,
        currency=game.currency,
        line_item=game.title if spots == 1 else f"{game.title} x{spots}",
        destination=game.organiser_account_id,
        idempotency_key=join_idempotency_key(
            game.id, name, amount, window=CHECKOUT_IDEMPOTENCY_WINDOW
        ),
        success_url=f"{back}?success=1&session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{back}?canceled=1",
    )
    session = await processor_call(
        "payments.create_session", payments.create_checkout_session(req)
    )
    if not session.url:
        raise UpstreamUnavailable("processor returned a session without a URL")
    logger.info("checkout %s opened for game %s (%d x %d %s)",
                session.id, game.id, spots, unit, game.currency)
    return JoinRedirect(
        redirect_url=session.url,
        session_id=session.id,
        amount=amount,
        currency=game.currency,
    )
