import logging
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import Body, Depends, FastAPI, HTTPException, Path, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from wa_store.config import settings
from wa_store.events import EventSink, sink
from wa_store.logging_utils import RequestLoggingMiddleware, log_send_data, setup_logging
from wa_store.metrics import get_metrics, get_metrics_content_type, record_send_outcome
from wa_store.schemas import (
    BulkError,
    BulkMessageItem,
    BulkResult,
    BulkSendResponse,
    DeleteMessageRequest,
    ErrorResponse,
    HealthResponse,
    MessagesListResponse,
    SendMessageRequest,
)
from wa_store.service import SessionHandle, WhatsappService, whatsapp_service
from wa_store.storage import check_db_health, engine, get_db, init_db, list_messages
from wa_store.utils import delay, serialize_message


setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables
    - Shutdown: finish pending outcome deliveries, dispose of the engine's connections
    """
    await init_db()
    yield
    await sink.drain()
    await engine.dispose()


app = FastAPI(
    title="WhatsApp Message Store",
    description="Mirrors WhatsApp session message events into a relational store",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Dependencies
# =============================================================================

def get_service() -> WhatsappService:
    return whatsapp_service


def get_sink() -> EventSink:
    return sink


def get_session_handle(
    session_id: Annotated[str, Path()],
    service: WhatsappService = Depends(get_service),
) -> SessionHandle:
    """Resolve the live session for the path, 404 when it is not registered."""
    session = service.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return session


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
    Readiness probe - returns 200 only if the DB is reachable and the
    schema is applied, otherwise 503.
    """
    if not await check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Message Routes
# =============================================================================

@app.get(
    "/{session_id}/messages",
    response_model=MessagesListResponse,
    responses={404: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def list_session_messages(
    session_id: str,
    cursor: Annotated[int | None, Query(ge=0, description="pkId returned by the previous page")] = None,
    limit: Annotated[int | None, Query(ge=1, le=1000, description="Maximum number of messages to return")] = None,
    session: SessionHandle = Depends(get_session_handle),
    db: AsyncSession = Depends(get_db),
) -> MessagesListResponse:
    """
    List stored messages of a session, ordered by pkId.

    Pass the returned ``cursor`` back to get the next page; it is null once
    a page comes back shorter than ``limit``.
    """
    limit = limit or settings.MESSAGES_PAGE_SIZE
    logger.info(f"GET /{session_id}/messages: cursor={cursor}, limit={limit}")

    try:
        messages = [serialize_message(m) for m in await list_messages(db, session_id, cursor, limit)]
    except Exception as e:
        message = "An error occurred during message list"
        logger.error(f"{message}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=message)

    next_cursor = messages[-1]["pkId"] if messages and len(messages) == limit else None
    return MessagesListResponse(data=messages, cursor=next_cursor)


@app.post(
    "/{session_id}/messages/send",
    responses={
        400: {"model": ErrorResponse, "description": "Recipient is not on WhatsApp"},
        404: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
)
async def send_message(
    session_id: str,
    body: SendMessageRequest,
    request: Request,
    session: SessionHandle = Depends(get_session_handle),
    service: WhatsappService = Depends(get_service),
    events: EventSink = Depends(get_sink),
) -> Any:
    """Send one message from the session."""
    logger.info(f"Send request for session {session_id}")

    try:
        jid = await service.valid_jid(session, body.jid, body.type)
        if not jid:
            record_send_outcome("invalid_jid")
            log_send_data(request, jid=body.jid, result="invalid_jid")
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="JID does not exists")

        await service.update_presence(session, "available", jid)
        result = await session.send_message(jid, body.message, body.options)
    except HTTPException:
        raise
    except Exception as e:
        message = "An error occurred during message send"
        logger.error(f"{message}: {e}")
        record_send_outcome("error")
        log_send_data(request, jid=body.jid, result="error")
        events.emit("send.message", session_id, None, "error", f"{message}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=message)

    events.emit("send.message", session_id, {"jid": jid, "result": result})
    record_send_outcome("sent")
    log_send_data(request, jid=jid, result="sent")
    return result


@app.post(
    "/{session_id}/messages/send/bulk",
    response_model=BulkSendResponse,
    responses={404: {"model": ErrorResponse}},
)
async def send_bulk(
    session_id: str,
    body: list[BulkMessageItem],
    response: Response,
    session: SessionHandle = Depends(get_session_handle),
    service: WhatsappService = Depends(get_service),
    events: EventSink = Depends(get_sink),
) -> BulkSendResponse:
    """
    Send several messages in order.

    Every item after the first waits ``delay`` ms (default
    BULK_SEND_DELAY_MS). Failed items are reported in ``errors`` and do not
    stop the batch; the status is 500 only when every item failed.
    """
    logger.info(f"Bulk send of {len(body)} messages for session {session_id}")
    results: list[BulkResult] = []
    errors: list[BulkError] = []

    for index, item in enumerate(body):
        try:
            jid = await service.valid_jid(session, item.jid, item.type)
            if not jid:
                record_send_outcome("invalid_jid")
                errors.append(BulkError(index=index, error="JID does not exists"))
                continue

            if index > 0:
                await delay(item.delay if item.delay is not None else settings.BULK_SEND_DELAY_MS)

            await service.update_presence(session, "available", jid)
            result = await session.send_message(jid, item.message, item.options)
            results.append(BulkResult(index=index, result=result))
            record_send_outcome("sent")
            events.emit("send.message", session_id, {"jid": jid, "result": result})
        except Exception as e:
            message = "An error occurred during message send"
            logger.error(f"{message} (index {index}): {e}")
            record_send_outcome("error")
            errors.append(BulkError(index=index, error=message))
            events.emit("send.message", session_id, None, "error", f"{message}: {e}")

    if body and len(errors) == len(body):
        response.status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return BulkSendResponse(results=results, errors=errors)


@app.post(
    "/{session_id}/messages/download",
    responses={
        200: {"content": {"application/octet-stream": {}}},
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
)
async def download_media(
    session_id: str,
    message: Annotated[dict[str, Any], Body()],
    session: SessionHandle = Depends(get_session_handle),
    service: WhatsappService = Depends(get_service),
) -> Response:
    """Download the media of a stored/received message (full WebMessageInfo body)."""
    content = message.get("message") or {}
    if not isinstance(content, dict) or not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Message has no content")

    media = next(iter(content.values())) or {}
    mimetype = media.get("mimetype") if isinstance(media, dict) else None

    try:
        buffer = await service.download_media(session, message)
    except Exception as e:
        detail = "An error occurred during message media download"
        logger.error(f"{detail}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)

    return Response(content=buffer, media_type=mimetype or "application/octet-stream")


@app.delete(
    "/{session_id}/messages/delete",
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def delete_message(
    session_id: str,
    body: DeleteMessageRequest,
    session: SessionHandle = Depends(get_session_handle),
    service: WhatsappService = Depends(get_service),
) -> Any:
    """
    Delete a message for everyone in the chat.

    Example body:
        {"jid": "120363xxx8@g.us", "type": "group",
         "message": {"remoteJid": "120363xxx8@g.us", "fromMe": true, "id": "3EB0829036xxxxx"}}
    """
    try:
        if not await service.jid_exists(session, body.jid, body.type):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="JID does not exists")
        jid = service.format_jid(body.jid, body.type)
        return await session.send_message(jid, {"delete": body.message})
    except HTTPException:
        raise
    except Exception as e:
        message = "An error occurred during message delete"
        logger.error(f"{message}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=message)


@app.delete(
    "/{session_id}/messages/delete/onlyme",
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def delete_message_for_me(
    session_id: str,
    body: DeleteMessageRequest,
    session: SessionHandle = Depends(get_session_handle),
    service: WhatsappService = Depends(get_service),
) -> Any:
    """
    Delete a message from this device only.

    Example body:
        {"jid": "120363xxx8@g.us", "type": "group",
         "message": {"id": "ATWYHDNNWU81732J", "fromMe": false, "timestamp": "1654823909"}}
    """
    if not body.message.get("id"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Message id is required")

    try:
        if not await service.jid_exists(session, body.jid, body.type):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="JID does not exists")
        jid = service.format_jid(body.jid, body.type)
        clear = {
            "messages": [
                {
                    "id": body.message["id"],
                    "fromMe": bool(body.message.get("fromMe", False)),
                    "timestamp": body.message.get("timestamp"),
                }
            ]
        }
        return await session.chat_modify({"clear": clear}, jid)
    except HTTPException:
        raise
    except Exception as e:
        message = "An error occurred during message delete"
        logger.error(f"{message}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=message)


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
