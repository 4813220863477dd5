"""API routes receiving billing provider webhooks."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from ..billing import WebhookEngine
from ..schemas.billing import WebhookAcknowledgement
from ..services.billing import get_webhook_engine


router = APIRouter(tags=["billing"])


@router.post("/webhook", response_model=WebhookAcknowledgement)
async def receive_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    engine: WebhookEngine = Depends(get_webhook_engine),
) -> JSONResponse:
    # Signature verification needs the exact bytes; never parse the body here.
    raw_body = await request.body()
    outcome = await engine.handle(raw_body, stripe_signature)
    acknowledgement = WebhookAcknowledgement.from_outcome(outcome)
    return JSONResponse(
        status_code=outcome.status_code,
        content=acknowledgement.model_dump(mode="json", by_alias=True),
    )
