"""
Pydantic schemas for the operator conflict queue endpoints.
"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field


class ConflictItem(BaseModel):
    review_id: str
    account_id: str
    currency: str
    window_start: date
    statement_id: Optional[str] = None
    order_ref: str
    reason: str
    reason_details: Optional[str] = None
    priority: int
    status: str
    created_at: datetime


class ConflictListResponse(BaseModel):
    items: list[ConflictItem]
    limit: int
    offset: int


class ReviewStats(BaseModel):
    pending: int
    in_review: int
    resolved: int
    skipped: int
    total: int


class ResolveRequest(BaseModel):
    note: Optional[str] = Field(default=None, max_length=2000)
    skipped: bool = False
