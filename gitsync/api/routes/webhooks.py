from fastapi import APIRouter, Depends, Header, HTTPException, status
from fastapi.responses import JSONResponse
from starlette.requests import Request

from gitsync.core.config import Settings, get_settings
from gitsync.services.repository import get_repository
from gitsync.services.ttl_stores import DeliveryDedupStore, get_delivery_store
from gitsync.services.webhook_ingest import BodyReader, WebhookIngestor, WebhookRejected

router = APIRouter()


def capped_body_reader(request: Request) -> BodyReader:
    async def read(limit: int) -> bytes:
        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > limit:
            raise WebhookRejected(status.HTTP_413_CONTENT_TOO_LARGE, "webhook payload too large")

        body = bytearray()
        async for chunk in request.stream():
            body.extend(chunk)
            if len(body) > limit:
                raise WebhookRejected(status.HTTP_413_CONTENT_TOO_LARGE, "webhook payload too large")
        return bytes(body)

    return read


@router.post("/webhook", status_code=status.HTTP_202_ACCEPTED)
async def receive_github_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    deliveries: DeliveryDedupStore = Depends(get_delivery_store),
    x_github_event: str | None = Header(default=None, alias="X-GitHub-Event"),
    x_hub_signature_256: str | None = Header(default=None, alias="X-Hub-Signature-256"),
    x_github_delivery: str | None = Header(default=None, alias="X-GitHub-Delivery"),
) -> JSONResponse:
    ingestor = WebhookIngestor(
        repository=repository,
        deliveries=deliveries,
        secret=settings.github_webhook_secret,
        max_body_bytes=settings.webhook_max_body_bytes,
        webhook_max_attempts=settings.webhook_job_max_attempts,
    )
    try:
        outcome = await ingestor.handle(
            event_type=x_github_event,
            signature=x_hub_signature_256,
            delivery_id=x_github_delivery,
            read_body=capped_body_reader(request),
        )
    except WebhookRejected as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc

    return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=outcome.body)
