"""
Pydantic schemas and response envelopes for the HTTP API.

Separated from the route handlers so they are reusable across
the codebase (route modules, tests).

Envelopes:

    {"success": true, "message": "...", "data": {...}}

    {"success": true, "data": [...], "page": 1, "pageSize": 20,
     "totalCount": 42, "totalPages": 3}
"""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class CreateMessageRequest(BaseModel):
    """Request body for POST /api/v1/messages."""
    model_config = ConfigDict(populate_by_name=True)

    content: str = Field(
        ..., min_length=1,
        description="Message body",
        examples=["Your verification code is 123456"],
    )
    phone_number: str = Field(
        ..., alias="phoneNumber", min_length=1, max_length=20,
        description="Destination phone number",
        examples=["+905551234567"],
    )

    @field_validator("content", "phone_number")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v


class StartSchedulerRequest(BaseModel):
    """Optional request body for POST /api/v1/scheduler/start."""
    model_config = ConfigDict(populate_by_name=True)

    interval: Optional[int] = Field(
        None, ge=1,
        description="Minutes between passes (defaults to MESSAGE_SEND_INTERVAL_MINUTES)",
        examples=[2],
    )
    failure_rate: float = Field(
        0.0, alias="failureRate", ge=0.0, le=1.0,
        description="Probability of a simulated delivery failure",
        examples=[0.1],
    )


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------

def success(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    body["data"] = data
    return body


def paginated(items: List[Any], page: int, page_size: int, total: int) -> Dict[str, Any]:
    return {
        "success": True,
        "data": items,
        "page": page,
        "pageSize": page_size,
        "totalCount": total,
        "totalPages": math.ceil(total / page_size) if page_size > 0 else 0,
    }
