"""Schemas shared by every v1 router."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class PaginationParams(BaseModel):
    page: int = Field(default=1, ge=1, description="Page number (1-indexed)")
    per_page: int = Field(default=20, ge=1, le=100, description="Items per page (max 100)")


class ErrorResponse(BaseModel):
    """Body of every 4xx/5xx raised through ``AutomationError``."""

    detail: str
    request_id: Optional[str] = None
    errors: Optional[List[Dict[str, Any]]] = Field(
        default=None, description="Per-node validation errors, when the request was rejected for them"
    )
