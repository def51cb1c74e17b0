import io
import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, Header, HTTPException, status, Query, UploadFile, File
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from notifier.config import settings
from notifier.correlator import WebhookCorrelator
from notifier.dispatcher import Dispatcher
from notifier.exceptions import BatchNotFound, MalformedRecord
from notifier.formatter import TemplateConfig
from notifier.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from notifier.messaging import WhatsAppCloudClient
from notifier.metrics import record_batch_ingested, get_metrics, get_metrics_content_type
from notifier.parser import parse_records
from notifier.reporting import export_batch
from notifier.schemas import (
    BatchListItem,
    BatchSummary,
    DashboardResponse,
    DispatchResponse,
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    UploadResponse,
    WebhookResponse,
)
from notifier.storage import (
    SessionLocal,
    batch_summary,
    check_db_health,
    create_batch,
    get_batch,
    get_db,
    init_db,
    list_batches,
    list_messages,
)
from notifier.utils import verify_hmac_signature, verify_subscription


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, build the messaging client, dispatcher and correlator
    - Shutdown: let running dispatches finish their snapshot, close the client
    """
    init_db()

    client = WhatsAppCloudClient.from_settings(settings)
    app.state.messaging_client = client
    app.state.dispatcher = Dispatcher(
        session_factory=SessionLocal,
        client=client,
        templates=TemplateConfig.from_settings(settings),
        send_interval=settings.SEND_INTERVAL_SECONDS,
    )
    app.state.correlator = WebhookCorrelator(session_factory=SessionLocal, client=client)

    if not settings.whatsapp_configured:
        logger.warning("WHATSAPP_TOKEN or PHONE_NUMBER_ID not set; sends will fail")

    yield

    await app.state.dispatcher.wait_idle()
    await client.close()


app = FastAPI(
    title="Appointment Notifier",
    description="Batch WhatsApp appointment notifications with reply tracking",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


def get_correlator(request: Request) -> WebhookCorrelator:
    return request.app.state.correlator


def _load_batch(db: Session, batch_id: int):
    try:
        return get_batch(db, batch_id)
    except BatchNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"batch {batch_id} not found"
        )


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. WhatsApp credentials are configured
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.whatsapp_configured:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="WhatsApp credentials not configured"
        )

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Ingestion and Dispatch Routes
# =============================================================================

@app.post(
    "/upload",
    response_model=UploadResponse,
    responses={
        400: {"model": ErrorResponse, "description": "File is not UTF-8 text"},
        422: {"model": ErrorResponse, "description": "Malformed line in strict mode"},
    }
)
async def upload(
    file: UploadFile = File(..., description="Pipe-delimited appointment file"),
    strict: Annotated[bool, Query(description="Reject the file on the first malformed line")] = False,
    db: Session = Depends(get_db)
) -> UploadResponse:
    """
    Create a batch from an uploaded file.

    The first line is a header. Lines with an empty name or phone are
    ignored; lines with missing columns are skipped unless strict=true.
    """
    content = await file.read()
    source_name = file.filename or "upload.txt"
    logger.info(f"Upload received: {source_name}, {len(content)} bytes")

    try:
        records = list(parse_records(io.BytesIO(content), strict=strict))
    except UnicodeDecodeError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="file must be UTF-8 encoded text"
        )
    except MalformedRecord as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e)
        )

    batch_id = create_batch(db, source_name, records)
    record_batch_ingested()

    return UploadResponse(batch_id=batch_id, total_records=len(records))


@app.post(
    "/batch/{batch_id}/send",
    response_model=DispatchResponse,
    responses={404: {"model": ErrorResponse, "description": "Unknown batch"}},
)
async def send_batch(
    batch_id: int,
    db: Session = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> DispatchResponse:
    """
    Start sending the batch's PENDING messages in the background.

    Returns as soon as processing is scheduled; poll /dashboard/{batch_id}
    for progress. Calling it again only touches messages still PENDING.
    """
    _load_batch(db, batch_id)
    dispatcher.dispatch(batch_id)
    return DispatchResponse()


# =============================================================================
# Webhook Routes
# =============================================================================

@app.get("/webhook", response_class=PlainTextResponse)
async def verify_webhook(
    mode: Annotated[str | None, Query(alias="hub.mode")] = None,
    token: Annotated[str | None, Query(alias="hub.verify_token")] = None,
    challenge: Annotated[str | None, Query(alias="hub.challenge")] = None,
) -> PlainTextResponse:
    """One-time subscription handshake: echo hub.challenge when the token matches."""
    if verify_subscription(mode, token, settings.WEBHOOK_VERIFY_TOKEN):
        logger.info("Webhook verified")
        return PlainTextResponse(challenge or "")

    logger.warning("Webhook verification failed")
    return PlainTextResponse("Forbidden", status_code=status.HTTP_403_FORBIDDEN)


@app.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={401: {"model": ErrorResponse, "description": "Invalid signature"}},
)
async def webhook(
    request: Request,
    x_hub_signature: Annotated[str | None, Header(alias="X-Hub-Signature-256")] = None,
    correlator: WebhookCorrelator = Depends(get_correlator),
) -> WebhookResponse:
    """
    Receive provider events (button replies, delivery statuses).

    Always answers 200 once the signature (if configured) is accepted, even
    when the body is unusable, so the provider does not retry.
    """
    raw_body = await request.body()

    if settings.WEBHOOK_APP_SECRET and not verify_hmac_signature(
        raw_body, x_hub_signature or "", settings.WEBHOOK_APP_SECRET
    ):
        logger.error("Invalid webhook signature")
        log_webhook_data(request, result="invalid_signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid signature"
        )

    try:
        payload = json.loads(raw_body)
    except (ValueError, RecursionError) as e:
        # JSONDecodeError and UnicodeDecodeError are ValueErrors; pathological
        # nesting exhausts the decoder stack instead
        logger.error(f"Invalid webhook JSON: {e.__class__.__name__}: {str(e)[:200]}")
        log_webhook_data(request, result="invalid_json")
        return WebhookResponse(status="ok")

    result = await correlator.handle_inbound_event(payload)
    log_webhook_data(
        request,
        result="processed",
        correlated=result.correlated,
        not_found=result.not_found,
        statuses=result.statuses,
        errors=result.errors,
    )
    return WebhookResponse(status="ok")


# =============================================================================
# Reporting Routes
# =============================================================================

@app.get("/batches", response_model=list[BatchListItem])
async def batches(db: Session = Depends(get_db)) -> list[BatchListItem]:
    """All batches, newest first, with delivery and reply counts."""
    return [BatchListItem(**row) for row in list_batches(db)]


@app.get(
    "/dashboard/{batch_id}",
    response_model=DashboardResponse,
    responses={404: {"model": ErrorResponse, "description": "Unknown batch"}},
)
async def dashboard(batch_id: int, db: Session = Depends(get_db)) -> DashboardResponse:
    """Summary counts plus every message of the batch."""
    _load_batch(db, batch_id)
    return DashboardResponse(
        summary=BatchSummary(**batch_summary(db, batch_id)),
        messages=[MessageResponse.model_validate(m) for m in list_messages(db, batch_id)],
    )


@app.get(
    "/batch/{batch_id}/export",
    response_class=PlainTextResponse,
    responses={404: {"model": ErrorResponse, "description": "Unknown batch"}},
)
async def export(batch_id: int, db: Session = Depends(get_db)) -> PlainTextResponse:
    """Download the pipe-delimited return file for a batch."""
    _load_batch(db, batch_id)
    content = export_batch(db, batch_id, settings.REPORT_TIMEZONE)
    return PlainTextResponse(
        content,
        headers={"Content-Disposition": f"attachment; filename=retorno_lote_{batch_id}.txt"},
    )


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


def run() -> None:
    """Entry point of the `notifier` console script."""
    import uvicorn

    uvicorn.run(
        "notifier.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
