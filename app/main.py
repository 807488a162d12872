import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, HTTPException, status, Query, Path
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import MessageValidationError, StorageError
from app.storage import (
    init_db,
    check_db_health,
    get_db,
    insert_message,
    get_messages,
    delete_message,
    get_deleted_message_ids,
)
from app.logging_utils import setup_logging, RequestLoggingMiddleware, log_message_data
from app.metrics import record_message_operation, get_metrics, get_metrics_content_type
from app.schemas import (
    HealthResponse,
    Message,
    MessageCreate,
    StatusResponse,
    ErrorResponse,
)


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    yield


app = FastAPI(
    title="Message Board API",
    description="Message board with cursor pagination and a deletion log",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)

FromServerId = Annotated[
    int | None,
    Query(description="Sync cursor; when absent the newest entries come first")
]
Limit = Annotated[
    int | None,
    Query(ge=0, description="Page size; defaults to and is capped at 256, 0 returns an empty page")
]

STORAGE_ERROR_RESPONSES = {
    500: {"model": ErrorResponse, "description": "Storage failure"},
}


def _storage_failure(request: Request, operation: str, server_id: int = None) -> HTTPException:
    record_message_operation(operation, "storage_error")
    log_message_data(request, result="storage_error", server_id=server_id)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="storage error"
    )


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and both
    the messages and deleted_messages tables exist.

    Otherwise returns 503 (Service Unavailable).
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Message Routes
# =============================================================================

@app.post(
    "/messages",
    response_model=Message,
    responses={
        422: {"model": ErrorResponse, "description": "Invalid message text"},
        **STORAGE_ERROR_RESPONSES,
    }
)
def post_message(
    request: Request,
    body: MessageCreate,
    db: Session = Depends(get_db)
) -> Message:
    """
    Append a message to the board.

    The text must be non-blank and at most MESSAGE_MAX_LENGTH characters.
    Returns the stored message with its server_id.
    """
    try:
        message = insert_message(db, Message(text=body.text))
    except MessageValidationError as e:
        logger.warning(f"Message rejected: {e}")
        record_message_operation("insert", "validation_error")
        log_message_data(request, result="validation_error")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e)
        )
    except StorageError as e:
        logger.error(f"Insert failed: {e}")
        raise _storage_failure(request, "insert")

    record_message_operation("insert", "created")
    log_message_data(request, result="created", server_id=message.server_id)
    return message


@app.get(
    "/messages",
    response_model=list[Message],
    responses=STORAGE_ERROR_RESPONSES,
)
def list_messages(
    request: Request,
    from_server_id: FromServerId = None,
    limit: Limit = None,
    db: Session = Depends(get_db)
) -> list[Message]:
    """
    Page through messages.

    Query Parameters:
        - from_server_id: when present, messages with a greater id in
          ascending order; when absent, the newest messages in descending order
        - limit: page size (default 256, never more than 256; 0 gives an empty page)
    """
    try:
        messages = get_messages(db, from_server_id=from_server_id, limit=limit)
    except StorageError as e:
        logger.error(f"List messages failed: {e}")
        raise _storage_failure(request, "list")

    record_message_operation("list", "listed")
    log_message_data(request, result="listed")
    return messages


@app.delete(
    "/messages/{server_id}",
    response_model=StatusResponse,
    responses=STORAGE_ERROR_RESPONSES,
)
def remove_message(
    request: Request,
    server_id: Annotated[int, Path(description="Identifier of the message to delete")],
    db: Session = Depends(get_db)
) -> StatusResponse:
    """
    Delete a message and record its id in the deletion log.

    Idempotent: deleting an id that does not exist still returns 200.
    """
    try:
        count = delete_message(db, server_id)
    except StorageError as e:
        logger.error(f"Delete failed: {e}")
        raise _storage_failure(request, "delete", server_id=server_id)

    result = "deleted" if count > 0 else "not_found"
    record_message_operation("delete", result)
    log_message_data(request, result=result, server_id=server_id)
    return StatusResponse(status="ok")


@app.get(
    "/deleted_messages",
    response_model=list[int],
    responses=STORAGE_ERROR_RESPONSES,
)
def list_deleted_messages(
    request: Request,
    from_server_id: FromServerId = None,
    limit: Limit = None,
    db: Session = Depends(get_db)
) -> list[int]:
    """
    Page through the ids of deleted messages, in the order they were deleted.

    Query Parameters:
        - from_server_id: when present, ids deleted after this one, oldest
          deletion first; when absent, the most recent deletions first
        - limit: same default and cap as GET /messages
    """
    try:
        ids = get_deleted_message_ids(db, from_server_id=from_server_id, limit=limit)
    except StorageError as e:
        logger.error(f"List deleted messages failed: {e}")
        raise _storage_failure(request, "list_deletions")

    record_message_operation("list_deletions", "listed")
    log_message_data(request, result="listed")
    return ids


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Includes:
    - http_requests_total: Total HTTP requests by method, path, status
    - request_latency_seconds: Request latency histogram
    - message_operations_total: Store operation outcomes
    - message_rows_skipped_total: Rows dropped from list responses
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
