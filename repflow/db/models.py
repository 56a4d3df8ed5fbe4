from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, Column, DateTime, TypeDecorator
from sqlmodel import Field, SQLModel

from ..utils.clock import ensure_utc, utcnow


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, hands back aware UTC datetimes."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        return ensure_utc(value).replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


def _ts(nullable: bool = False, index: bool = False) -> Column:
    return Column(UTCDateTime(), nullable=nullable, index=index)


class CachedResponse(SQLModel, table=True):
    """Durable tier of the response cache."""

    __tablename__ = "ai_response_cache"

    id: Optional[int] = Field(default=None, primary_key=True)
    cache_key: str = Field(unique=True, index=True)
    cache_type: str = Field(index=True)
    entity_id: Optional[str] = Field(default=None, index=True)
    context_hash: str = ""
    response: Any = Field(default=None, sa_column=Column(JSON))
    model_used: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0
    total_cost: float = 0.0
    generation_ms: Optional[int] = None
    hit_count: int = 0
    last_accessed_at: Optional[datetime] = Field(default=None, sa_column=_ts(nullable=True))
    expires_at: datetime = Field(sa_column=_ts(index=True))
    created_at: datetime = Field(default_factory=utcnow, sa_column=_ts())


class UsageRecord(SQLModel, table=True):
    """One tracked call to an external generator."""

    __tablename__ = "ai_usage"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    endpoint: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0
    total_cost: float = 0.0
    duration_ms: Optional[int] = None
    cache_hit: bool = False
    details: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_column=_ts(index=True))


class QuotaCounter(SQLModel, table=True):
    """Per-user rolling usage counters and plan limits."""

    __tablename__ = "ai_quotas"

    user_id: str = Field(primary_key=True)
    plan: str = "free"
    generation_limit: int = 5
    chat_limit: int = 100
    generation_count: int = 0
    chat_count: int = 0
    tokens_used: int = 0
    cost_usd: float = 0.0
    period_start: datetime = Field(sa_column=_ts())
    period_end: datetime = Field(sa_column=_ts(index=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=_ts())


class GenerationJob(SQLModel, table=True):
    """User-visible status of a background generation."""

    __tablename__ = "ai_generation_jobs"

    id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    kind: str = "workout"
    status: str = "pending"
    params: dict = Field(default_factory=dict, sa_column=Column(JSON))
    result: Any = Field(default=None, sa_column=Column(JSON))
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_column=_ts())
    updated_at: datetime = Field(default_factory=utcnow, sa_column=_ts())
    completed_at: Optional[datetime] = Field(default=None, sa_column=_ts(nullable=True))


class DomainRow(SQLModel, table=True):
    """Generic keyed document for application rows (members, goals, snapshots)."""

    __tablename__ = "domain_rows"

    kind: str = Field(primary_key=True)
    key: str = Field(primary_key=True)
    data: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_column=_ts(index=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=_ts())
