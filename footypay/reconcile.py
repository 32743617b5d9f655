"""Payment-to-roster reconciliation.

Two doors lead here: the processor's signed webhook and the player's browser
coming back from checkout. Both end in ``reconcile_session``, which trusts
only a session the processor itself vouched for and writes at most one
roster entry per session, whatever the number or order of deliveries.
"""
from __future__ import annotations
import enum
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .errors import InvalidSignature, NotFound, ValidationError
from .model.games import get_game
from .model.roster import commit_entry
from .payments import (
    CheckoutSession, PaymentAdapter, parse_metadata, processor_call
)

logger = logging.getLogger(__name__)


class Outcome(str, enum.Enum):
    COMMITTED = "committed"
    ALREADY_PROCESSED = "already_processed"
    NOT_PAID = "not_paid"
    IGNORED = "ignored"


@dataclass(frozen=True)
class Reconciliation:
    outcome: Outcome
    session_id: Optional[str] = None
    game_id: Optional[str] = None

    @property
    def on_roster(self) -> bool:
        return self.outcome in (Outcome.COMMITTED, Outcome.ALREADY_PROCESSED)


async def reconcile_session(
    db: AsyncSession, session: CheckoutSession
) -> Reconciliation:
    if not session.paid:
        # abandoned or still pending; nothing to do yet
        return Reconciliation(Outcome.NOT_PAID, session.id)

    meta = parse_metadata(session.metadata)
    game = await get_game(db, meta.game_id)

    created = await commit_entry(
        db,
        game_id=game.id,
        session_id=session.id,
        name=meta.name,
        spots=meta.spots,
        customer_email=session.customer_email,
        joined_at=session.created,
    )
    outcome = Outcome.COMMITTED if created else Outcome.ALREADY_PROCESSED
    logger.info("session %s -> game %s: %s", session.id, game.id,
                outcome.value)
    return Reconciliation(outcome, session.id, game.id)


async def handle_webhook(
    db: AsyncSession,
    payments: PaymentAdapter,
    payload: bytes,
    headers: Mapping[str, str],
) -> Reconciliation:
    try:
        event = payments.verify_webhook(payload, headers)
    except (InvalidSignature, ValidationError) as e:
        logger.warning("webhook rejected: %s", e)
        raise
    if not event.settles_payment or event.session is None:
        logger.debug("webhook %s (%s) ignored", event.id, event.type)
        return Reconciliation(Outcome.IGNORED)
    try:
        return await reconcile_session(db, event.session)
    except (NotFound, ValidationError) as e:
        # redelivery cannot fix these; acknowledge so the processor stops
        logger.error("webhook %s for session %s dropped: %s",
                     event.id, event.session.id, e)
        return Reconciliation(Outcome.IGNORED, event.session.id)


async def confirm_from_redirect(
    db: AsyncSession,
    payments: PaymentAdapter,
    session_id: str,
    game_id: Optional[str] = None,
) -> Reconciliation:
    """Re-check a returning player's session with the processor and apply it.

    Whatever the return URL claimed, only the processor's answer counts.
    """
    session = await processor_call(
        "payments.retrieve_session", payments.retrieve_session(session_id)
    )
    claimed = session.metadata.get("gameId")
    if game_id and claimed and claimed != game_id:
        logger.warning(
            "confirm for session %s named game %s, session says %s",
            session_id, game_id, claimed,
        )
    return await reconcile_session(db, session)
