from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class AuthRequest(BaseModel):
    email: str


class AuthResponse(BaseModel):
    email: str
    plan: str
    balance: int


class JobCreateResponse(BaseModel):
    id: str


class JobDetailResponse(BaseModel):
    id: str
    status: str
    model: str
    prompt: str
    duration_seconds: int
    resolution: str
    aspect_ratio: str
    credits_reserved: int
    error_message: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    download_url: Optional[str] = None


class WebhookPayload(BaseModel):
    id: str = Field(min_length=1)
    status: Literal["starting", "processing", "succeeded", "failed", "canceled"]
    output: Any = None
    error: Optional[str] = None


class CreditBalanceResponse(BaseModel):
    balance: int
    total_granted: int
    total_used: int
    total_refunded: int
    monthly_usage: int


class CreditTransactionEntry(BaseModel):
    id: str
    type: str
    amount: int
    balance_after: int
    related_job_id: Optional[str] = None
    reason: str
    created_at: datetime


class CreditHistoryResponse(BaseModel):
    transactions: List[CreditTransactionEntry]


class GrantRequest(BaseModel):
    email: str
    amount: int
    reason: str = "Admin grant"


class GrantResponse(BaseModel):
    email: str
    balance: int


class QuoteResponse(BaseModel):
    model: str
    resolution: str
    duration_seconds: int
    credits: int
    cost_per_second_usd: str
    total_usd: str


class PricingMatrixResponse(BaseModel):
    models: Dict[str, Dict[str, Dict[str, int]]]


class PricingConfigUpdate(BaseModel):
    key: str
    value: str
    resolution: Optional[str] = None
    model: Optional[str] = None


class JobListResponse(BaseModel):
    jobs: List[JobDetailResponse]
