from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, List, Mapping, Optional, TypeVar
import asyncio
import base64
import hashlib
import hmac
import json
import logging
import os
import time
import uuid

import pydantic
from pydantic import BaseModel, ConfigDict, Field
import stripe

from .errors import (
    InvalidSignature, NotFound, UpstreamUnavailable, ValidationError
)
from .infra.timings import timeit
from .model.mockstore import MockPayStore

logger = logging.getLogger(__name__)

MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
MOCK_SIGNATURE_HEADER = "x-mockpay-signature"
STRIPE_SIGNATURE_HEADER = "stripe-signature"
PAYMENTS_TIMEOUT = float(os.environ.get("PAYMENTS_TIMEOUT", "10"))
CHECKOUT_IDEMPOTENCY_WINDOW = int(
    os.environ.get("CHECKOUT_IDEMPOTENCY_WINDOW", "600")
)

# event types that mean "this session's money arrived"
PAID_EVENT_TYPES = frozenset({
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
})

T = TypeVar("T")


# ----------------------------
# Boundary DTOs
# ----------------------------
class SessionMetadata(BaseModel):
    """What a checkout session says about who is joining which game."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    game_id: str = Field(alias="gameId", min_length=1)
    name: str = Field(min_length=1)
    spots: int = Field(default=1, ge=1)

    def to_processor(self) -> Dict[str, str]:
        # processors only carry string metadata values
        return {"gameId": self.game_id, "name": self.name,
                "spots": str(self.spots)}


def parse_metadata(raw: Optional[Mapping[str, Any]]) -> SessionMetadata:
    try:
        return SessionMetadata.model_validate(dict(raw or {}))
    except pydantic.ValidationError as e:
        fields = ", ".join(
            ".".join(str(p) for p in err["loc"]) for err in e.errors()
        )
        raise ValidationError(f"invalid session metadata: {fields}")


class CheckoutSession(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    status: str = "open"                # open | complete | expired
    payment_status: str = "unpaid"      # paid | unpaid | no_payment_required
    metadata: Dict[str, str] = Field(default_factory=dict)
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    created: Optional[float] = None
    url: Optional[str] = None

    @property
    def paid(self) -> bool:
        return self.payment_status == "paid"


class PaymentEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    session: Optional[CheckoutSession] = None

    @property
    def settles_payment(self) -> bool:
        return self.type in PAID_EVENT_TYPES


class AccountStatus(BaseModel):
    id: str
    charges_enabled: bool = False
    payouts_enabled: bool = False
    currently_due: List[str] = Field(default_factory=list)
    disabled_reason: Optional[str] = None

    @property
    def payment_enabled(self) -> bool:
        return self.charges_enabled and self.payouts_enabled


@dataclass(frozen=True)
class CheckoutRequest:
    metadata: SessionMetadata
    amount: int          # minor units, total
    currency: str
    line_item: str
    destination: str     # organiser's connected account
    idempotency_key: str
    success_url: str
    cancel_url: str


def session_from_object(obj: Mapping[str, Any]) -> CheckoutSession:
    """Build a CheckoutSession from a processor-shaped session object."""
    try:
        details = obj.get("customer_details") or {}
        return CheckoutSession(
            id=obj["id"],
            status=obj.get("status") or "open",
            payment_status=obj.get("payment_status") or "unpaid",
            metadata={
                str(k): str(v) for k, v in (obj.get("metadata") or {}).items()
            },
            amount_total=obj.get("amount_total"),
            currency=obj.get("currency"),
            customer_name=details.get("name"),
            customer_email=details.get("email"),
            created=obj.get("created"),
            url=obj.get("url"),
        )
    except (KeyError, AttributeError, pydantic.ValidationError) as e:
        raise ValidationError(f"malformed checkout session: {e}")


def event_from_object(obj: Mapping[str, Any]) -> PaymentEvent:
    try:
        etype = obj["type"]
        eid = obj["id"]
    except (KeyError, TypeError):
        raise ValidationError("malformed event")
    session = None
    data_obj = (obj.get("data") or {}).get("object") or {}
    if etype.startswith("checkout.session."):
        try:
            session = session_from_object(data_obj)
        except ValidationError as e:
            # signed but unusable; redelivery will not fix it
            logger.error("event %s carries no usable session: %s", eid, e)
    return PaymentEvent(id=eid, type=etype, session=session)


async def processor_call(
    kind: str, aw: Awaitable[T], timeout: float = PAYMENTS_TIMEOUT
) -> T:
    """Await a processor call with a bounded timeout.

    A timeout says nothing about whether a payment happened, so it surfaces as
    the retriable UpstreamUnavailable.
    """
    async with timeit(kind):
        try:
            return await asyncio.wait_for(aw, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("%s timed out after %.1fs", kind, timeout)
            raise UpstreamUnavailable(f"{kind} timed out")


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    signature_header: str = ""

    @abstractmethod
    async def create_checkout_session(
            self, req: CheckoutRequest
    ) -> CheckoutSession: ...

    @abstractmethod
    async def retrieve_session(self, session_id: str) -> CheckoutSession: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: Mapping[str, str]
                       ) -> PaymentEvent: ...

    @abstractmethod
    async def create_account(self, email: str) -> AccountStatus: ...

    @abstractmethod
    async def retrieve_account(self, account_id: str) -> AccountStatus: ...

    @abstractmethod
    async def create_account_link(
            self, account_id: str, refresh_url: str, return_url: str
    ) -> str: ...


# ----------------------------
# MockPay implementation
# ----------------------------
def sign_payload(payload: bytes, secret: str = MOCK_SECRET) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


@dataclass(frozen=True)
class MockEmission:
    event: PaymentEvent
    payload: bytes
    signature: str
    redirect_url: str


class MockPay(PaymentAdapter):
    """In-house processor: hosted page, webhooks and connected accounts."""

    signature_header = MOCK_SIGNATURE_HEADER

    def __init__(self, store: MockPayStore, secret: str = MOCK_SECRET,
                 base_url: str = "",
                 idempotency_window: int = CHECKOUT_IDEMPOTENCY_WINDOW):
        self.store = store
        self.secret = secret
        self.base_url = base_url.rstrip("/")
        self.idempotency_window = idempotency_window

    def _session_url(self, psid: str) -> str:
        return f"{self.base_url}/mockpay/sessions/{psid}"

    def _to_object(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        status = row["status"]
        expires_at = row.get("expires_at")
        if status == "open" and expires_at and expires_at < time.time():
            status = "expired"
        return {
            "id": row["psid"],
            "object": "checkout.session",
            "status": status,
            "payment_status": row["payment_status"],
            "metadata": json.loads(row.get("metadata") or "{}"),
            "amount_total": int(row["amount"]),
            "currency": row["currency"],
            "customer_details": {
                "name": row.get("customer_name"),
                "email": row.get("customer_email"),
            },
            "created": row["created_at"],
            "url": self._session_url(row["psid"]),
        }

    async def create_checkout_session(
            self, req: CheckoutRequest
    ) -> CheckoutSession:
        psid = f"mock_{uuid.uuid4().hex}"
        await self.store.save_session(psid, {
            "status": "open",
            "payment_status": "unpaid",
            "amount": req.amount,
            "currency": req.currency,
            "line_item": req.line_item,
            "destination": req.destination,
            "metadata": json.dumps(req.metadata.to_processor()),
            "idempotency_key": req.idempotency_key,
            "success_url": req.success_url,
            "cancel_url": req.cancel_url,
            "created_at": time.time(),
        })
        if req.idempotency_key:
            existing = await self.store.claim_idempotency_key(
                req.idempotency_key, psid, self.idempotency_window
            )
            if existing and existing != psid:
                try:
                    prior = await self.retrieve_session(existing)
                except NotFound:
                    prior = None
                if prior is not None and prior.status == "open":
                    # drop the duplicate we just wrote
                    await self.store.mark_expired(psid)
                    await self.store.remove_pending(psid)
                    logger.info("checkout deduplicated: %s -> %s",
                                psid, existing)
                    return prior
                # prior is paid or gone: the new session takes over the key
                await self.store.rebind_idempotency_key(
                    req.idempotency_key, psid, self.idempotency_window
                )
        return await self.retrieve_session(psid)

    async def retrieve_session(self, session_id: str) -> CheckoutSession:
        row = await self.store.get_session(session_id)
        if not row:
            raise NotFound("checkout session", session_id)
        return session_from_object(self._to_object(row))

    def verify_webhook(self, payload: bytes, headers: Mapping[str, str]
                       ) -> PaymentEvent:
        sig = headers.get(MOCK_SIGNATURE_HEADER)
        expected = sign_payload(payload, self.secret)
        if not sig or not hmac.compare_digest(expected, sig):
            raise InvalidSignature("invalid signature")
        try:
            obj = json.loads(payload.decode())
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise ValidationError("invalid JSON")
        return event_from_object(obj)

    def build_event(self, etype: str, session_obj: Dict[str, Any]
                    ) -> tuple[bytes, str]:
        event = {
            "id": f"evt_{uuid.uuid4().hex}",
            "object": "event",
            "type": etype,
            "created": int(time.time()),
            "data": {"object": session_obj},
        }
        payload = json.dumps(event).encode()
        return payload, sign_payload(payload, self.secret)

    async def complete_session(
            self, psid: str, kind: str = "succeeded",
            customer_name: Optional[str] = None,
            customer_email: Optional[str] = None,
    ) -> MockEmission:
        """Act out the hosted page: pay or cancel, and build the webhook."""
        row = await self.store.get_session(psid)
        if not row:
            raise NotFound("checkout session", psid)
        if self._to_object(row)["status"] == "expired":
            # lapsed sessions can no longer be paid
            await self.store.mark_expired(psid)
        if kind == "succeeded":
            if await self.store.mark_paid(
                psid, customer_name, customer_email, time.time()
            ):
                logger.info("mock session %s paid", psid)
            etype = "checkout.session.completed"
            redirect = row["success_url"]
        elif kind == "canceled":
            await self.store.mark_expired(psid)
            etype = "checkout.session.expired"
            redirect = row["cancel_url"]
        else:
            raise ValidationError(f"invalid kind: {kind}")
        await self.store.remove_pending(psid)

        # rebuild from the stored state: a replay carries the same facts
        row = await self.store.get_session(psid)
        session_obj = self._to_object(row)
        if session_obj["payment_status"] != "paid" and kind == "succeeded":
            etype = "checkout.session.expired"
            redirect = row["cancel_url"]
        payload, sig = self.build_event(etype, session_obj)
        return MockEmission(
            event=event_from_object(json.loads(payload)),
            payload=payload,
            signature=sig,
            redirect_url=redirect.replace("{CHECKOUT_SESSION_ID}", psid),
        )

    async def create_account(self, email: str) -> AccountStatus:
        account_id = f"acct_mock_{uuid.uuid4().hex[:16]}"
        await self.store.save_account(account_id, {
            "email": email,
            "charges_enabled": False,
            "payouts_enabled": False,
            "created_at": time.time(),
        })
        return await self.retrieve_account(account_id)

    async def retrieve_account(self, account_id: str) -> AccountStatus:
        acct = await self.store.get_account(account_id)
        if not acct:
            raise NotFound("account", account_id)
        enabled = acct["charges_enabled"] and acct["payouts_enabled"]
        return AccountStatus(
            id=account_id,
            charges_enabled=acct["charges_enabled"],
            payouts_enabled=acct["payouts_enabled"],
            currently_due=[] if enabled else ["external_account"],
            disabled_reason=None if enabled else "requirements.past_due",
        )

    async def create_account_link(
            self, account_id: str, refresh_url: str, return_url: str
    ) -> str:
        await self.retrieve_account(account_id)
        return f"{self.base_url}/mockpay/onboard/{account_id}"

    async def complete_onboarding(self, account_id: str) -> AccountStatus:
        acct = await self.store.get_account(account_id)
        if not acct:
            raise NotFound("account", account_id)
        await self.store.save_account(account_id, {
            "email": acct.get("email"),
            "charges_enabled": True,
            "payouts_enabled": True,
            "created_at": acct.get("created_at"),
        })
        return await self.retrieve_account(account_id)


# ----------------------------
# Stripe implementation
# ----------------------------
def _plain(obj: Any) -> Dict[str, Any]:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def new_stripe_client(api_key: str,
                      timeout: float = PAYMENTS_TIMEOUT) -> stripe.StripeClient:
    return stripe.StripeClient(
        api_key,
        http_client=stripe.HTTPXClient(timeout=timeout),
        max_network_retries=2,
    )


class StripePay(PaymentAdapter):
    signature_header = STRIPE_SIGNATURE_HEADER

    def __init__(self, client: stripe.StripeClient, webhook_secret: str):
        self.client = client
        self.webhook_secret = webhook_secret

    async def _call(self, aw: Awaitable[Any], kind: str, ident: str = ""):
        try:
            return await aw
        except stripe.IdempotencyError as e:
            # same key, different request: a stale checkout still holds it
            raise ValidationError(
                f"checkout already in progress with other details: "
                f"{e.user_message or e}"
            )
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                raise NotFound(kind, ident)
            raise ValidationError(e.user_message or str(e))
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            raise UpstreamUnavailable(f"stripe: {e.user_message or e}")
        except stripe.APIError as e:
            raise UpstreamUnavailable(f"stripe: {e.user_message or e}")

    async def create_checkout_session(
            self, req: CheckoutRequest
    ) -> CheckoutSession:
        params = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "client_reference_id": req.metadata.game_id,
            "metadata": req.metadata.to_processor(),
            "line_items": [{
                "price_data": {
                    "currency": req.currency,
                    "product_data": {"name": req.line_item},
                    "unit_amount": req.amount,
                },
                "quantity": 1,
            }],
            "payment_intent_data": {
                "transfer_data": {"destination": req.destination},
            },
            "success_url": req.success_url,
            "cancel_url": req.cancel_url,
        }
        s = await self._call(
            self.client.checkout.sessions.create_async(
                params, {"idempotency_key": req.idempotency_key}
            ),
            "checkout session",
        )
        return session_from_object(_plain(s))

    async def retrieve_session(self, session_id: str) -> CheckoutSession:
        s = await self._call(
            self.client.checkout.sessions.retrieve_async(session_id),
            "checkout session", session_id,
        )
        return session_from_object(_plain(s))

    def verify_webhook(self, payload: bytes, headers: Mapping[str, str]
                       ) -> PaymentEvent:
        sig = headers.get(STRIPE_SIGNATURE_HEADER)
        if not sig:
            raise InvalidSignature("missing signature")
        try:
            event = self.client.construct_event(
                payload, sig, self.webhook_secret
            )
        except stripe.SignatureVerificationError:
            raise InvalidSignature("invalid signature")
        except ValueError:
            raise ValidationError("invalid JSON")
        return event_from_object(_plain(event))

    def _status(self, acct: Mapping[str, Any]) -> AccountStatus:
        req = acct.get("requirements") or {}
        return AccountStatus(
            id=acct["id"],
            charges_enabled=bool(acct.get("charges_enabled")),
            payouts_enabled=bool(acct.get("payouts_enabled")),
            currently_due=list(req.get("currently_due") or []),
            disabled_reason=req.get("disabled_reason"),
        )

    async def create_account(self, email: str) -> AccountStatus:
        acct = await self._call(
            self.client.accounts.create_async({
                "type": "express",
                "email": email,
                "business_type": "individual",
                "capabilities": {
                    "card_payments": {"requested": True},
                    "transfers": {"requested": True},
                },
            }),
            "account",
        )
        return self._status(_plain(acct))

    async def retrieve_account(self, account_id: str) -> AccountStatus:
        acct = await self._call(
            self.client.accounts.retrieve_async(account_id),
            "account", account_id,
        )
        return self._status(_plain(acct))

    async def create_account_link(
            self, account_id: str, refresh_url: str, return_url: str
    ) -> str:
        link = await self._call(
            self.client.account_links.create_async({
                "account": account_id,
                "type": "account_onboarding",
                "refresh_url": refresh_url,
                "return_url": return_url,
                "collect": "currently_due",
            }),
            "account", account_id,
        )
        return _plain(link)["url"]
