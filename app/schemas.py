"""
Pydantic schemas for request/response validation.

This module contains:
- The Message model shared by requests, responses and row decoding
- Response models for acknowledgements, errors and health checks
"""

from typing import Optional

from pydantic import BaseModel, Field

from app.config import settings


# =============================================================================
# Message Models
# =============================================================================

class MessageCreate(BaseModel):
    """Request body for POST /messages."""
    text: str = Field(..., description="Message text content")

    model_config = {
        "json_schema_extra": {
            "examples": [{"text": "Hello"}]
        }
    }


class Message(BaseModel):
    """
    A message on the board.

    server_id is assigned by the store on insert and is absent on
    client-submitted messages that have not been stored yet.
    """
    server_id: Optional[int] = Field(
        None,
        description="Server-assigned identifier (row-sequence value)"
    )
    text: str = Field(..., description="Message text content")

    def is_valid(self) -> bool:
        """
        Text must contain a non-whitespace character and be at most
        MESSAGE_MAX_LENGTH characters long. Whitespace is kept as submitted.
        """
        if not self.text or not self.text.strip():
            return False
        return len(self.text) <= settings.MESSAGE_MAX_LENGTH


# =============================================================================
# Pydantic Response Models
# =============================================================================

class StatusResponse(BaseModel):
    """Acknowledgement for operations without a payload."""
    status: str = Field(default="ok", description="Operation status")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
