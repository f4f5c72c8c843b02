from fastapi import APIRouter, HTTPException, Query, Request
from typing import Optional
import logging

from drip_engine.exceptions import WebhookPayloadError, WebhookVerificationError
from drip_engine.services.provider_events import PARSERS
from drip_engine.services.webhook_reconciler import SIGNATURE_HEADER, IngestResult, WebhookReconciler

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/webhooks/{provider}", response_model=IngestResult)
async def provider_webhook(
    provider: str,
    request: Request,
    correlation_id: Optional[str] = Query(None, description="Message id echoed back by the provider"),
):
    """
    Delivery/engagement callback from a channel provider. The raw body must be
    signed with the provider's shared secret (X-Drip-Signature header).
    """
    if provider not in PARSERS:
        logger.warning(f"[WEBHOOK] Callback for unknown provider '{provider}'")
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")

    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    logger.info(f"[WEBHOOK] {provider} callback received ({len(raw_body)} bytes)")

    try:
        return await WebhookReconciler().ingest_payload(provider, raw_body, signature, correlation_id)
    except WebhookVerificationError as e:
        logger.warning(f"[WEBHOOK] Rejected {provider} callback: {e}")
        raise HTTPException(status_code=401, detail="Invalid signature")
    except WebhookPayloadError as e:
        logger.warning(f"[WEBHOOK] Malformed {provider} callback: {e}")
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/webhooks/health")
async def webhooks_health():
    return {
        "status": "healthy",
        "providers": sorted(PARSERS),
        "signature_header": SIGNATURE_HEADER,
    }
