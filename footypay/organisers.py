"""Organiser payout accounts: connect, refresh the onboarding link, status."""
from __future__ import annotations
import logging
from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession

from .checkout import SITE_URL, onboarding_link
from .errors import NotFound, ValidationError
from .helpers import normalize_email
from .model.games import get_organiser, save_organiser
from .payments import AccountStatus, PaymentAdapter, processor_call

logger = logging.getLogger(__name__)


async def account_status(
    payments: PaymentAdapter, account_id: str
) -> AccountStatus:
    if not account_id:
        raise ValidationError("missing accountId")
    return await processor_call(
        "payments.retrieve_account", payments.retrieve_account(account_id)
    )


async def connect_organiser(
    db: AsyncSession,
    payments: PaymentAdapter,
    email: str,
    site_url: str = SITE_URL,
) -> Dict[str, Any]:
    """Reuse or create the organiser's connected account.

    Always hands back an onboarding link so outstanding requirements can be
    completed, along with the account's current status.
    """
    email = normalize_email(email)
    if not email:
        raise ValidationError("organiser email is required")

    org = await get_organiser(db, email)
    account_id = org.account_id if org is not None else None
    if not account_id:
        acct = await processor_call(
            "payments.create_account", payments.create_account(email)
        )
        account_id = acct.id
        await save_organiser(db, email, account_id)
        logger.info("connected account %s created for %s", account_id, email)

    url = await onboarding_link(payments, account_id, site_url)
    status = await account_status(payments, account_id)
    return {"accountId": account_id, "url": url, "status": status}


async def refresh_onboarding_link(
    db: AsyncSession,
    payments: PaymentAdapter,
    email: str,
    site_url: str = SITE_URL,
) -> str:
    org = await get_organiser(db, email)
    if org is None:
        raise NotFound("organiser", normalize_email(email))
    if not org.account_id:
        raise NotFound("account", org.email)
    return await onboarding_link(payments, org.account_id, site_url)
