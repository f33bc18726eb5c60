from typing import Any, Literal

from pydantic import BaseModel, Field


class CreateJobRequest(BaseModel):
    kind: Literal["text-based", "avatar-based"]
    title: str = Field(default="", max_length=200)
    provider: str | None = None
    prompt: str = Field(default="", max_length=5000)
    script: str = Field(default="", max_length=2000)
    image_url: str | None = None
    audio_url: str | None = None
    voice: str | None = None
    avatar_type: str | None = None
    duration: float | None = Field(default=None, ge=0, le=60)
    aspect_ratio: str = "9:16"
    seed: int | None = None


class JobResponse(BaseModel):
    job_id: str
    user_id: str
    kind: str
    title: str = ""
    params: dict[str, Any] = Field(default_factory=dict)
    status: str
    provider_name: str
    provider_task_id: str | None = None
    credit_reservation_id: str | None = None
    credits_cost: int = 0
    retry_count: int = 0
    error_message: str | None = None
    failure_reason_code: str | None = None
    artifact_url: str | None = None
    thumbnail_url: str | None = None
    actual_duration: float | None = None
    file_size_bytes: int | None = None
    created_at: str
    updated_at: str
    processing_started_at: str | None = None
    processing_completed_at: str | None = None


class CreditBalanceResponse(BaseModel):
    user_id: str
    available: int
    reserved: int
    balance: int
    total_used: int
    total_purchased: int


class AdminGrantRequest(BaseModel):
    user_id: str
    credits: int
    note: str = "manual grant"
    external_ref: str | None = None


class PurchaseRequest(BaseModel):
    receipt: dict[str, Any]
