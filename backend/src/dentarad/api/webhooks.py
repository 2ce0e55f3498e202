"""Inbound webhooks. These are authenticated by signature, not by user token."""

from typing import Any

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..billing.stripe_webhook import handle_stripe_webhook
from ..db import get_db

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    session: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    payload = await request.body()
    return await handle_stripe_webhook(payload, stripe_signature, session=session)
