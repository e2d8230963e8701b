# kato_license/routes/webhooks.py
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from starlette.concurrency import run_in_threadpool

from kato_license.deps import get_repository, get_webhook_processor
from kato_license.repository import LicenseRepository
from kato_license.webhooks.pipeline import WebhookProcessor

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/lemon-squeezy")
async def lemon_squeezy_webhook(
    request: Request,
    x_signature: Optional[str] = Header(None, alias="X-Signature"),
    repo: LicenseRepository = Depends(get_repository),
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    # Raw body, unparsed: the signature covers these exact bytes
    body = await request.body()
    await run_in_threadpool(processor.process, body, x_signature, repo)
    return {"success": True}
