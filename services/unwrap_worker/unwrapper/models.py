from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class UrlIn(BaseModel):
    url: str = Field(min_length=1)


class ResolveOut(BaseModel):
    status: str
    url: str | None = None
    variant: str | None = None
    kind: str | None = None
    reason: str | None = None
    detail: str | None = None
    status_code: int | None = None


class ProbeOut(BaseModel):
    variant: str
    legacy: bool


class ValidateOut(BaseModel):
    ok: bool
    reason: str | None = None
    detail: str | None = None


class ClassifyIn(BaseModel):
    error: str


class ClassifyOut(BaseModel):
    disposition: str
    retryable: bool


class BackoffOut(BaseModel):
    retry_count: int
    seconds: float


class ArticleIn(BaseModel):
    id: int
    url: str = Field(min_length=1)


class DecisionOut(BaseModel):
    article_id: int
    action: str
    retry_count: int
    next_retry_at: datetime | None = None
    error: str | None = None
    reason: str | None = None
    canonical_url: str | None = None
