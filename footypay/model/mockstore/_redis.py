from __future__ import annotations
from typing import Any, Dict, List, Optional, Tuple
import time
import redis.asyncio as redis
from redis.exceptions import WatchError


# ---- keys
def k_ps(psid: str) -> str: return f"mps:{psid}"
def k_idemp(key: str) -> str: return f"midemp:{key}"
def k_acct(account_id: str) -> str: return f"macct:{account_id}"


PENDING_INDEX = "mock_pendings"


def _s(v: Any) -> str:
    # decode_responses=True: store everything as strings
    if v is None:
        return ""
    if isinstance(v, bool):
        return "1" if v else "0"
    return str(v)


def _session_from_hash(h: Dict[str, str]) -> Dict[str, Any]:
    d: Dict[str, Any] = {k: (v if v != "" else None) for k, v in h.items()}
    d["amount"] = int(h.get("amount") or 0)
    for k in ("created_at", "expires_at", "paid_at"):
        d[k] = float(h[k]) if h.get(k) else None
    return d


class MockPayStore:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    # ---- checkout sessions

    async def save_session(self, psid: str, mapping: Dict[str, Any]) -> None:
        created = float(mapping.get("created_at") or time.time())
        m = {k: _s(v) for k, v in mapping.items()}
        m["psid"] = psid
        m["created_at"] = _s(created)
        m["expires_at"] = _s(created + self.ttl)
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_ps(psid), mapping=m)
        # completed sessions are kept for a day so late confirmations resolve
        pipe.expire(k_ps(psid), self.ttl + 24 * 3600)
        pipe.zadd(PENDING_INDEX, {psid: created})
        await pipe.execute()

    async def get_session(self, psid: str) -> Optional[Dict[str, Any]]:
        h = await self.r.hgetall(k_ps(psid))
        return _session_from_hash(h) if h else None

    async def claim_idempotency_key(
        self, key: str, psid: str, window: int
    ) -> Optional[str]:
        ok = await self.r.set(k_idemp(key), psid, nx=True, ex=max(1, window))
        if ok:
            return None
        return await self.r.get(k_idemp(key))

    async def rebind_idempotency_key(
        self, key: str, psid: str, window: int
    ) -> None:
        await self.r.set(k_idemp(key), psid, ex=max(1, window))

    async def _transition(
        self, psid: str, mapping: Dict[str, str]
    ) -> bool:
        """open -> mapping, atomically. False if the session was not open."""
        async with self.r.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(k_ps(psid))
                if await pipe.hget(k_ps(psid), "status") != "open":
                    return False
                pipe.multi()
                pipe.hset(k_ps(psid), mapping=mapping)
                await pipe.execute()
                return True
            except WatchError:
                # someone else moved the session first
                return False

    async def mark_paid(
        self, psid: str, customer_name: Optional[str],
        customer_email: Optional[str], paid_at: float
    ) -> bool:
        return await self._transition(psid, {
            "status": "complete",
            "payment_status": "paid",
            "customer_name": _s(customer_name),
            "customer_email": _s(customer_email),
            "paid_at": _s(paid_at),
        })

    async def mark_expired(self, psid: str) -> bool:
        return await self._transition(psid, {"status": "expired"})

    async def remove_pending(self, psid: str) -> None:
        await self.r.zrem(PENDING_INDEX, psid)

    async def get_recent_payment_sessions(
        self, limit: int = 200
    ) -> Tuple[int, List[Dict[str, Any]]]:
        total = await self.r.zcard(PENDING_INDEX)
        psids = await self.r.zrevrange(PENDING_INDEX, 0, max(0, limit - 1))
        pipe = self.r.pipeline()
        for psid in psids:
            pipe.hgetall(k_ps(psid))
        rows = await pipe.execute()

        now = time.time()
        items = []
        for psid, h in zip(psids, rows):
            # house-keeping
            if not h:
                await self.remove_pending(psid)
                continue
            created = float(h.get("created_at") or 0.0)
            items.append({
                "psid": psid,
                "created_at": created,
                "age_ms": int(max(0.0, now - created) * 1000),
                "amount": int(h.get("amount") or 0),
                "currency": h.get("currency", ""),
                "metadata": h.get("metadata", "{}"),
                "status": h.get("status", ""),
            })
        return total, items

    # ---- connected accounts

    async def save_account(
        self, account_id: str, mapping: Dict[str, Any]
    ) -> None:
        m = {k: _s(v) for k, v in mapping.items()}
        m["account_id"] = account_id
        m.setdefault("created_at", _s(time.time()))
        await self.r.hset(k_acct(account_id), mapping=m)

    async def get_account(self, account_id: str) -> Optional[Dict[str, Any]]:
        h = await self.r.hgetall(k_acct(account_id))
        if not h:
            return None
        d: Dict[str, Any] = dict(h)
        d["charges_enabled"] = h.get("charges_enabled") == "1"
        d["payouts_enabled"] = h.get("payouts_enabled") == "1"
        d["email"] = h.get("email") or None
        return d
