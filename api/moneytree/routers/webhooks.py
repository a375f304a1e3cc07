from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from moneytree.core.config import settings
from moneytree.core.database import get_db
from moneytree.core.deps import get_dispatcher
from moneytree.core.limiter import limiter
from moneytree.services.dispatcher import SyncDispatcher
from moneytree.services.webhooks import WebhookConfig, WebhookIngress

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def raw_body(request: Request) -> bytes:
    return await request.body()


def get_webhook_config() -> WebhookConfig:
    return WebhookConfig.from_settings()


@router.post("/provider")
@limiter.limit(settings.webhook_rate_limit)
def provider_webhook(
    request: Request,
    body: bytes = Depends(raw_body),
    db: Session = Depends(get_db),
    dispatcher: SyncDispatcher = Depends(get_dispatcher),
    config: WebhookConfig = Depends(get_webhook_config),
):
    """Verify a signed provider webhook and enqueue an incremental sync."""
    outcome = WebhookIngress(db, dispatcher, config).handle(
        body,
        request.headers.get(config.signature_header),
        client_ip=request.client.host if request.client else None,
    )
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)
