"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for the send/delete endpoints
- Response models for API responses
- The outcome event published on the event sink
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


JidType = Literal["number", "group"]


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendMessageRequest(BaseModel):
    """
    Body of POST /{session_id}/messages/send.

    ``message`` is passed as-is to the session's send_message, e.g.
    {"text": "Hello"} or {"image": {"url": "..."}, "caption": "..."}.
    """
    jid: str = Field(..., min_length=1, description="Recipient number or group jid")
    type: JidType = Field(default="number", description="Recipient kind")
    message: dict[str, Any] = Field(..., description="Message content")
    options: Optional[dict[str, Any]] = Field(None, description="Send options")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "jid": "6281234567890",
                    "type": "number",
                    "message": {"text": "Hello"},
                }
            ]
        }
    }


class BulkMessageItem(SendMessageRequest):
    """One entry of a bulk send; ``delay`` is applied before every item but the first."""
    delay: Optional[int] = Field(
        None,
        ge=0,
        description="Milliseconds to wait before sending this item"
    )


class DeleteMessageRequest(BaseModel):
    """
    Body of the delete endpoints.

    ``message`` is the key of the message to delete, e.g.
    {"remoteJid": "120363xxx8@g.us", "fromMe": false, "id": "3EB0829036xxxxx"}.
    The "only me" variant also needs the message "timestamp".
    """
    jid: str = Field(..., min_length=1)
    type: JidType = Field(default="number")
    message: dict[str, Any] = Field(...)


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class MessagesListResponse(BaseModel):
    """
    Response model for GET /{session_id}/messages.

    ``cursor`` is the pkId to pass back for the next page, or null when
    the last page has been reached.
    """
    data: list[dict[str, Any]] = Field(default_factory=list)
    cursor: Optional[int] = Field(None, description="pkId of the last returned message")


class BulkResult(BaseModel):
    index: int
    result: Any = None


class BulkError(BaseModel):
    index: int
    error: str


class BulkSendResponse(BaseModel):
    """Per-item outcome of a bulk send, keyed by position in the request."""
    results: list[BulkResult] = Field(default_factory=list)
    errors: list[BulkError] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


# =============================================================================
# Event Models
# =============================================================================

class OutcomeEvent(BaseModel):
    """Result of a store operation, published on the event sink."""
    event: str
    session_id: str = Field(..., serialization_alias="sessionId")
    data: Any = None
    status: Literal["success", "error"] = "success"
    message: Optional[str] = None
