from __future__ import annotations
from typing import Any, Callable, Dict, List, Optional, Tuple
import time

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

from ...infra.sql import Gated


# ------------------------------------------------------------------------------
# DDL (idempotent)
# ------------------------------------------------------------------------------
SQL_CREATE_MOCK_SESSIONS = r"""
-- checkout sessions held by the in-house processor
CREATE TABLE IF NOT EXISTS mock_sessions (
  psid            TEXT PRIMARY KEY,
  status          TEXT NOT NULL,             -- open | complete | expired
  payment_status  TEXT NOT NULL,             -- unpaid | paid
  amount          INTEGER NOT NULL,
  currency        TEXT NOT NULL,
  line_item       TEXT NOT NULL,
  destination     TEXT NOT NULL,
  metadata        TEXT NOT NULL,             -- JSON object
  idempotency_key TEXT,
  success_url     TEXT NOT NULL,
  cancel_url      TEXT NOT NULL,
  customer_name   TEXT,
  customer_email  TEXT,
  created_at      DOUBLE PRECISION NOT NULL,
  expires_at      DOUBLE PRECISION NOT NULL,
  paid_at         DOUBLE PRECISION
);
"""

SQL_CREATE_MOCK_SESSIONS_PENDING = r"""
-- live "pending" index for the admin view
CREATE TABLE IF NOT EXISTS mock_sessions_pending (
  psid       TEXT PRIMARY KEY,
  created_at DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_MOCK_IDEMPOTENCY_KEYS = r"""
CREATE TABLE IF NOT EXISTS mock_idempotency_keys (
  key        TEXT PRIMARY KEY,
  psid       TEXT NOT NULL,
  created_at DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_MOCK_ACCOUNTS = r"""
-- connected payout accounts
CREATE TABLE IF NOT EXISTS mock_accounts (
  account_id      TEXT PRIMARY KEY,
  email           TEXT,
  charges_enabled BOOLEAN NOT NULL,
  payouts_enabled BOOLEAN NOT NULL,
  created_at      DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_IDX_PENDING_CREATED_AT = r"""
CREATE INDEX IF NOT EXISTS idx_mock_pending_created_at
  ON mock_sessions_pending (created_at DESC);
"""

SESSION_FIELDS = (
    "psid", "status", "payment_status", "amount", "currency", "line_item",
    "destination", "metadata", "idempotency_key", "success_url",
    "cancel_url", "customer_name", "customer_email", "created_at",
    "expires_at", "paid_at",
)


async def create_schema(db_or_conn: AsyncSession | AsyncConnection):
    exec_ = db_or_conn.execute
    await exec_(text(SQL_CREATE_MOCK_SESSIONS))
    await exec_(text(SQL_CREATE_MOCK_SESSIONS_PENDING))
    await exec_(text(SQL_CREATE_MOCK_IDEMPOTENCY_KEYS))
    await exec_(text(SQL_CREATE_MOCK_ACCOUNTS))
    await exec_(text(SQL_CREATE_IDX_PENDING_CREATED_AT))


class MockPayStore:
    def __init__(
        self, *, sessions: Callable[[], AsyncSession], ttl_seconds: int,
        gated: Gated
    ) -> None:
        self.sessions = sessions
        self.ttl = ttl_seconds
        self.gated = gated

    # ---- checkout sessions

    async def save_session(self, psid: str, mapping: Dict[str, Any]) -> None:
        m = {k: mapping.get(k) for k in SESSION_FIELDS}
        m["psid"] = psid
        m["created_at"] = float(mapping.get("created_at") or time.time())
        m["expires_at"] = m["created_at"] + self.ttl
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    await db.execute(text("""
                      INSERT INTO mock_sessions(
                        psid, status, payment_status, amount, currency,
                        line_item, destination, metadata, idempotency_key,
                        success_url, cancel_url, customer_name,
                        customer_email, created_at, expires_at, paid_at
                      ) VALUES (
                        :psid, :status, :payment_status, :amount, :currency,
                        :line_item, :destination, :metadata,
                        :idempotency_key, :success_url, :cancel_url,
                        :customer_name, :customer_email, :created_at,
                        :expires_at, :paid_at
                      )
                    """), m)
                    await db.execute(text("""
                      INSERT INTO mock_sessions_pending(psid, created_at)
                      VALUES(:psid, :created_at)
                      ON CONFLICT (psid) DO UPDATE
                      SET created_at=EXCLUDED.created_at
                    """), {"psid": psid, "created_at": m["created_at"]})

    async def get_session(self, psid: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.sessions() as db:
                row = (await db.execute(text("""
                  SELECT * FROM mock_sessions WHERE psid=:psid
                """), {"psid": psid})).mappings().first()
                return dict(row) if row else None

    async def claim_idempotency_key(
        self, key: str, psid: str, window: int
    ) -> Optional[str]:
        """Bind key -> psid. Returns the psid already bound inside the
        window, or None when this call won the key."""
        now = time.time()
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    row = (await db.execute(text("""
                      INSERT INTO mock_idempotency_keys(key, psid, created_at)
                      VALUES (:key, :psid, :now)
                      ON CONFLICT (key) DO NOTHING
                      RETURNING psid
                    """), {"key": key, "psid": psid, "now": now})).first()
                    if row is not None:
                        return None
                    existing = (await db.execute(text("""
                      SELECT psid, created_at FROM mock_idempotency_keys
                      WHERE key=:key
                    """), {"key": key})).mappings().first()
                    if existing and existing["created_at"] + window > now:
                        return existing["psid"]
                    # stale key: rebind
                    await db.execute(text("""
                      UPDATE mock_idempotency_keys
                      SET psid=:psid, created_at=:now WHERE key=:key
                    """), {"key": key, "psid": psid, "now": now})
                    return None

    async def rebind_idempotency_key(
        self, key: str, psid: str, window: int
    ) -> None:
        """Point key at psid, restarting its window.

        The window itself is checked at claim time against created_at.
        """
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    await db.execute(text("""
                      INSERT INTO mock_idempotency_keys(key, psid, created_at)
                      VALUES (:key, :psid, :now)
                      ON CONFLICT (key) DO UPDATE
                      SET psid=EXCLUDED.psid, created_at=EXCLUDED.created_at
                    """), {"key": key, "psid": psid, "now": time.time()})

    async def mark_paid(
        self, psid: str, customer_name: Optional[str],
        customer_email: Optional[str], paid_at: float
    ) -> bool:
        """open -> complete/paid. False if the session was not open."""
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    res = await db.execute(text("""
                      UPDATE mock_sessions
                      SET status='complete', payment_status='paid',
                          customer_name=:customer_name,
                          customer_email=:customer_email, paid_at=:paid_at
                      WHERE psid=:psid AND status='open'
                    """), {
                        "psid": psid,
                        "customer_name": customer_name,
                        "customer_email": customer_email,
                        "paid_at": paid_at,
                    })
                    return res.rowcount == 1

    async def mark_expired(self, psid: str) -> bool:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    res = await db.execute(text("""
                      UPDATE mock_sessions SET status='expired'
                      WHERE psid=:psid AND status='open'
                    """), {"psid": psid})
                    return res.rowcount == 1

    async def remove_pending(self, psid: str) -> None:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    await db.execute(text(
                        "DELETE FROM mock_sessions_pending WHERE psid=:psid"
                    ), {"psid": psid})

    async def get_recent_payment_sessions(
        self, limit: int = 200
    ) -> Tuple[int, List[Dict[str, Any]]]:
        now = time.time()
        async with self.gated():
            async with self.sessions() as db:
                total = (await db.execute(text(
                    "SELECT COUNT(*) FROM mock_sessions_pending"
                ))).scalar_one()
                rows = (await db.execute(text("""
                  SELECT s.psid, s.created_at, s.amount, s.currency,
                         s.metadata, s.status
                  FROM mock_sessions_pending p
                  JOIN mock_sessions s ON s.psid = p.psid
                  ORDER BY p.created_at DESC
                  LIMIT :limit
                """), {"limit": max(1, limit)})).mappings().all()
        items = []
        for r in rows:
            created = float(r["created_at"])
            items.append({
                "psid": r["psid"],
                "created_at": created,
                "age_ms": int(max(0.0, now - created) * 1000),
                "amount": int(r["amount"]),
                "currency": r["currency"],
                "metadata": r["metadata"],
                "status": r["status"],
            })
        return int(total), items

    # ---- connected accounts

    async def save_account(
        self, account_id: str, mapping: Dict[str, Any]
    ) -> None:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    await db.execute(text("""
                      INSERT INTO mock_accounts(
                        account_id, email, charges_enabled, payouts_enabled,
                        created_at
                      ) VALUES (
                        :account_id, :email, :charges_enabled,
                        :payouts_enabled, :created_at
                      )
                      ON CONFLICT (account_id) DO UPDATE SET
                        email=EXCLUDED.email,
                        charges_enabled=EXCLUDED.charges_enabled,
                        payouts_enabled=EXCLUDED.payouts_enabled
                    """), {
                        "account_id": account_id,
                        "email": mapping.get("email"),
                        "charges_enabled": bool(
                            mapping.get("charges_enabled")
                        ),
                        "payouts_enabled": bool(
                            mapping.get("payouts_enabled")
                        ),
                        "created_at": float(
                            mapping.get("created_at") or time.time()
                        ),
                    })

    async def get_account(self, account_id: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.sessions() as db:
                row = (await db.execute(text("""
                  SELECT * FROM mock_accounts WHERE account_id=:account_id
                """), {"account_id": account_id})).mappings().first()
        if not row:
            return None
        d = dict(row)
        d["charges_enabled"] = bool(d["charges_enabled"])
        d["payouts_enabled"] = bool(d["payouts_enabled"])
        return d
