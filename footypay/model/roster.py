"""Roster ledger and the occupancy projection read from it.

Entries are keyed by (game id, checkout session id). A write is a single
``INSERT ... ON CONFLICT DO NOTHING`` so concurrent or repeated commits of
the same session never produce a second row, and the store's per-statement
atomicity is the only coordination needed. Occupancy is always a fresh
``SUM(spots)``; there is no counter to drift.
"""
from __future__ import annotations
import asyncio
from dataclasses import dataclass, asdict
from typing import AsyncIterator, Callable, Dict, List, Optional

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts
from ..infra.timings import timeit
from .db import Game, RosterEntry
from .games import get_game


@dataclass(frozen=True)
class Occupancy:
    game_id: str
    reserved: int
    capacity: int
    players: int

    @property
    def remaining(self) -> int:
        return max(0, self.capacity - self.reserved)

    @property
    def sold_out(self) -> bool:
        return self.reserved >= self.capacity

    def to_dict(self) -> Dict[str, object]:
        d = asdict(self)
        d["remaining"] = self.remaining
        d["sold_out"] = self.sold_out
        return d


SQL_INSERT_ENTRY = text("""
    INSERT INTO roster_entries(
      game_id, session_id, name, spots, customer_email, joined_at, paid_at
    ) VALUES (
      :game_id, :session_id, :name, :spots, :customer_email, :joined_at,
      :paid_at
    )
    ON CONFLICT (game_id, session_id) DO NOTHING
    RETURNING session_id
""")

# replay merge: fill what the first delivery lacked, never touch identity
# or timestamps
SQL_MERGE_ENTRY = text("""
    UPDATE roster_entries
    SET customer_email = COALESCE(customer_email, :customer_email)
    WHERE game_id = :game_id AND session_id = :session_id
""")


async def commit_entry(
    db: AsyncSession,
    *,
    game_id: str,
    session_id: str,
    name: str,
    spots: int = 1,
    customer_email: Optional[str] = None,
    joined_at: Optional[float] = None,
) -> bool:
    """Upsert one roster entry. Returns True only for the first write."""
    paid_at = now_ts()
    params = {
        "game_id": game_id,
        "session_id": session_id,
        "name": name,
        "spots": int(spots),
        "customer_email": customer_email,
        "joined_at": joined_at if joined_at is not None else paid_at,
        "paid_at": paid_at,
    }
    async with timeit("roster.commit"):
        try:
            result = await db.execute(SQL_INSERT_ENTRY, params)
            inserted = result.first() is not None
            if not inserted and customer_email:
                await db.execute(SQL_MERGE_ENTRY, params)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
    return inserted


async def get_entry(
    db: AsyncSession, game_id: str, session_id: str
) -> Optional[RosterEntry]:
    return await db.get(RosterEntry, (game_id, session_id))


async def list_roster(db: AsyncSession, game_id: str) -> List[RosterEntry]:
    result = await db.execute(
        select(RosterEntry)
        .where(RosterEntry.game_id == game_id)
        .order_by(RosterEntry.joined_at.asc(), RosterEntry.session_id.asc())
    )
    return list(result.scalars().all())


async def reserved_spots(db: AsyncSession, game_id: str) -> tuple[int, int]:
    row = (await db.execute(text("""
        SELECT COALESCE(SUM(spots), 0) AS reserved, COUNT(*) AS players
        FROM roster_entries WHERE game_id = :game_id
    """), {"game_id": game_id})).mappings().first()
    return int(row["reserved"]), int(row["players"])


async def live_occupancy(db: AsyncSession, game_id: str) -> Occupancy:
    game: Game = await get_game(db, game_id)
    async with timeit("roster.occupancy"):
        reserved, players = await reserved_spots(db, game_id)
    return Occupancy(
        game_id=game_id,
        reserved=reserved,
        capacity=game.capacity,
        players=players,
    )


async def watch_occupancy(
    session_factory: Callable[[], AsyncSession],
    game_id: str,
    interval: float = 1.0,
) -> AsyncIterator[Occupancy]:
    """Yield the occupancy now and then again every time it changes.

    Each poll opens a fresh session so a read never sees a stale snapshot.
    """
    last: Optional[Occupancy] = None
    while True:
        async with session_factory() as db:
            current = await live_occupancy(db, game_id)
        if current != last:
            last = current
            yield current
        await asyncio.sleep(interval)
