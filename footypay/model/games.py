"""Game and organiser records.

A game's terms (price, capacity, routing target) are fixed when it is
created. The organiser's connected account is read once here and copied onto
the game, so a later change of payout account never moves money for a game
that is already live.
"""
from __future__ import annotations
import math
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NotFound, ValidationError
from ..helpers import new_id, normalize_email, now_ts, to_minor_units
from .db import Game, Organiser


@dataclass
class GameTerms:
    title: str
    price: object
    capacity: object
    organiser_email: str
    date: Optional[str] = None
    location: Optional[str] = None


def _as_capacity(value) -> int:
    if isinstance(value, bool):
        raise ValidationError("capacity must be a positive integer")
    if isinstance(value, int):
        n = value
    elif isinstance(value, float) and value.is_integer():
        n = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        n = int(value.strip())
    else:
        raise ValidationError("capacity must be a positive integer")
    if n <= 0:
        raise ValidationError("capacity must be a positive integer")
    return n


def _as_price(value) -> float:
    if isinstance(value, bool) or value is None:
        raise ValidationError("invalid price")
    try:
        price = float(value)
    except (TypeError, ValueError):
        raise ValidationError("invalid price")
    if not math.isfinite(price) or price <= 0:
        raise ValidationError("invalid price")
    if to_minor_units(value) <= 0:
        raise ValidationError("price is below the smallest chargeable unit")
    return price


async def get_organiser(db: AsyncSession, email: str) -> Optional[Organiser]:
    return await db.get(Organiser, normalize_email(email))


async def save_organiser(
    db: AsyncSession, email: str, account_id: str
) -> Organiser:
    """Merge an organiser's routing target onto its record."""
    email = normalize_email(email)
    if not email:
        raise ValidationError("organiser email is required")
    org = await db.get(Organiser, email)
    if org is None:
        org = Organiser(email=email, created_at=now_ts())
        db.add(org)
    org.account_id = account_id
    await db.commit()
    return org


async def create_game(
    db: AsyncSession, terms: GameTerms, currency: str = "gbp"
) -> Game:
    title = (terms.title or "").strip()
    if not title:
        raise ValidationError("title is required")
    email = normalize_email(terms.organiser_email)
    if not email:
        raise ValidationError("organiser email is required")
    price = _as_price(terms.price)
    capacity = _as_capacity(terms.capacity)

    org = await db.get(Organiser, email)
    if org is None or not org.account_id:
        raise ValidationError(
            "organiser not found or not connected to payments"
        )
    game = Game(
        id=new_id(),
        title=title,
        date=terms.date or None,
        location=(terms.location or "").strip() or None,
        price=price,
        currency=currency,
        capacity=capacity,
        organiser_email=email,
        organiser_account_id=org.account_id,
        created_at=now_ts(),
    )
    db.add(game)
    await db.commit()
    return game


async def get_game(db: AsyncSession, game_id: str) -> Game:
    game = await db.get(Game, game_id)
    if game is None:
        raise NotFound("game", game_id)
    return game


async def list_games_for_organiser(
    db: AsyncSession, email: str
) -> List[Game]:
    result = await db.execute(
        select(Game)
        .where(Game.organiser_email == normalize_email(email))
        .order_by(Game.created_at.desc())
    )
    return list(result.scalars().all())
