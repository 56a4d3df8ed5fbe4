from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import delete, func, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel, select

from ..constants import QUOTA_PERIOD_DAYS
from .models import CachedResponse, DomainRow, GenerationJob, QuotaCounter, UsageRecord

logger = logging.getLogger(__name__)


def normalize_url(database_url: str) -> str:
    """Map plain ``sqlite://``/``postgresql://`` URLs onto async drivers."""
    if database_url.startswith("sqlite:///"):
        return database_url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql+asyncpg://", 1)
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


class Database:
    """Async row store used by the cache, usage tracking and domain workflows.

    Every write that can race between concurrent runs is a single
    ``INSERT ... ON CONFLICT`` or ``UPDATE ... SET x = x + n`` statement.
    """

    def __init__(self, database_url: str) -> None:
        url = normalize_url(database_url)
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.engine = create_async_engine(
            url, echo=False, future=True, connect_args=connect_args
        )

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    def _insert(self, model: Any) -> Any:
        dialect = postgresql if self.engine.dialect.name == "postgresql" else sqlite
        return dialect.insert(model.__table__)

    # ------------------------------------------------------------------
    # Response cache rows
    async def get_cached(self, cache_key: str, now: datetime) -> CachedResponse | None:
        async with self.session() as session:
            result = await session.execute(
                select(CachedResponse).where(
                    CachedResponse.cache_key == cache_key, CachedResponse.expires_at > now
                )
            )
            return result.scalars().first()

    async def upsert_cached(self, values: Dict[str, Any]) -> None:
        """Insert or replace a cache row, resetting its hit count."""
        stmt = self._insert(CachedResponse).values(**values)
        replace = {
            k: stmt.excluded[k]
            for k in values
            if k not in ("cache_key", "id")
        }
        replace["hit_count"] = 0
        stmt = stmt.on_conflict_do_update(index_elements=["cache_key"], set_=replace)
        async with self.session() as session:
            await session.execute(stmt)
            await session.commit()

    async def touch_cached(self, cache_key: str, now: datetime) -> None:
        async with self.session() as session:
            await session.execute(
                update(CachedResponse)
                .where(CachedResponse.cache_key == cache_key)
                .values(hit_count=CachedResponse.hit_count + 1, last_accessed_at=now)
            )
            await session.commit()

    async def delete_cached(self, cache_key: str) -> int:
        return await self._delete(delete(CachedResponse).where(CachedResponse.cache_key == cache_key))

    async def delete_cached_prefix(self, prefix: str) -> int:
        return await self._delete(
            delete(CachedResponse).where(CachedResponse.cache_key.startswith(prefix, autoescape=True))
        )

    async def delete_cached_entity(self, entity_id: str) -> int:
        return await self._delete(delete(CachedResponse).where(CachedResponse.entity_id == entity_id))

    async def delete_expired_cached(self, now: datetime) -> int:
        return await self._delete(delete(CachedResponse).where(CachedResponse.expires_at <= now))

    async def top_cached(self, now: datetime, limit: int = 100) -> List[CachedResponse]:
        async with self.session() as session:
            result = await session.execute(
                select(CachedResponse)
                .where(CachedResponse.expires_at > now)
                .order_by(CachedResponse.hit_count.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def cached_counts(self, now: datetime) -> Dict[str, int]:
        async with self.session() as session:
            result = await session.execute(
                select(CachedResponse.cache_type, func.count())
                .where(CachedResponse.expires_at > now)
                .group_by(CachedResponse.cache_type)
            )
            return {cache_type: count for cache_type, count in result.all()}

    async def _delete(self, stmt: Any) -> int:
        async with self.session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0

    # ------------------------------------------------------------------
    # Usage and quotas
    async def ensure_quota(
        self,
        user_id: str,
        plan: str,
        generation_limit: int,
        chat_limit: int,
        now: datetime,
        period_days: int = QUOTA_PERIOD_DAYS,
    ) -> None:
        stmt = (
            self._insert(QuotaCounter)
            .values(
                user_id=user_id,
                plan=plan,
                generation_limit=generation_limit,
                chat_limit=chat_limit,
                generation_count=0,
                chat_count=0,
                tokens_used=0,
                cost_usd=0.0,
                period_start=now,
                period_end=now + timedelta(days=period_days),
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
        async with self.session() as session:
            await session.execute(stmt)
            await session.commit()

    async def get_quota(self, user_id: str) -> QuotaCounter | None:
        async with self.session() as session:
            return await session.get(QuotaCounter, user_id)

    async def sync_quota_limits(
        self,
        user_id: str,
        plan: str,
        generation_limit: int,
        chat_limit: int,
        now: datetime,
        period_days: int = QUOTA_PERIOD_DAYS,
    ) -> None:
        stmt = self._insert(QuotaCounter).values(
            user_id=user_id,
            plan=plan,
            generation_limit=generation_limit,
            chat_limit=chat_limit,
            generation_count=0,
            chat_count=0,
            tokens_used=0,
            cost_usd=0.0,
            period_start=now,
            period_end=now + timedelta(days=period_days),
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id"],
            set_={
                "plan": stmt.excluded.plan,
                "generation_limit": stmt.excluded.generation_limit,
                "chat_limit": stmt.excluded.chat_limit,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        async with self.session() as session:
            await session.execute(stmt)
            await session.commit()

    async def reset_expired_quotas(
        self,
        now: datetime,
        period_days: int = QUOTA_PERIOD_DAYS,
        user_id: Optional[str] = None,
    ) -> int:
        """Start a fresh period for every counter (or one user's) whose period ended."""
        stmt = update(QuotaCounter).where(QuotaCounter.period_end <= now)
        if user_id is not None:
            stmt = stmt.where(QuotaCounter.user_id == user_id)
        async with self.session() as session:
            result = await session.execute(
                stmt
                .values(
                    generation_count=0,
                    chat_count=0,
                    tokens_used=0,
                    cost_usd=0.0,
                    period_start=now,
                    period_end=now + timedelta(days=period_days),
                    updated_at=now,
                )
            )
            await session.commit()
            return result.rowcount or 0

    async def record_usage(
        self,
        record: UsageRecord,
        generation_increment: int = 0,
        chat_increment: int = 0,
    ) -> None:
        """Insert a usage row and bump the user's counters in one transaction."""
        async with self.session() as session:
            async with session.begin():
                session.add(record)
                await session.execute(
                    update(QuotaCounter)
                    .where(QuotaCounter.user_id == record.user_id)
                    .values(
                        generation_count=QuotaCounter.generation_count + generation_increment,
                        chat_count=QuotaCounter.chat_count + chat_increment,
                        tokens_used=QuotaCounter.tokens_used
                        + record.input_tokens
                        + record.output_tokens,
                        cost_usd=QuotaCounter.cost_usd + record.total_cost,
                        updated_at=record.created_at,
                    )
                )

    async def list_usage(self, user_id: str, limit: int = 100) -> List[UsageRecord]:
        async with self.session() as session:
            result = await session.execute(
                select(UsageRecord)
                .where(UsageRecord.user_id == user_id)
                .order_by(UsageRecord.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Generation jobs
    async def create_job(self, job: GenerationJob) -> bool:
        stmt = (
            self._insert(GenerationJob)
            .values(**job.model_dump())
            .on_conflict_do_nothing(index_elements=["id"])
        )
        async with self.session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return bool(result.rowcount)

    async def update_job(self, job_id: str, now: datetime, **fields: Any) -> None:
        fields["updated_at"] = now
        async with self.session() as session:
            await session.execute(
                update(GenerationJob).where(GenerationJob.id == job_id).values(**fields)
            )
            await session.commit()

    async def get_job(self, job_id: str) -> GenerationJob | None:
        async with self.session() as session:
            return await session.get(GenerationJob, job_id)

    # ------------------------------------------------------------------
    # Domain rows
    async def put_row(
        self,
        kind: str,
        key: str,
        data: Dict[str, Any],
        now: datetime,
        if_absent: bool = False,
        created_at: Optional[datetime] = None,
    ) -> bool:
        """Upsert a row; with ``if_absent`` an existing row is left untouched."""
        stmt = self._insert(DomainRow).values(
            kind=kind, key=key, data=data, created_at=created_at or now, updated_at=now
        )
        if if_absent:
            stmt = stmt.on_conflict_do_nothing(index_elements=["kind", "key"])
        else:
            stmt = stmt.on_conflict_do_update(
                index_elements=["kind", "key"],
                set_={"data": stmt.excluded.data, "updated_at": stmt.excluded.updated_at},
            )
        async with self.session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return bool(result.rowcount)

    async def get_row(self, kind: str, key: str) -> Dict[str, Any] | None:
        async with self.session() as session:
            row = await session.get(DomainRow, (kind, key))
            return dict(row.data) if row else None

    async def list_rows(self, kind: str, **match: Any) -> List[DomainRow]:
        """Rows of ``kind`` whose data contains every ``match`` key/value."""
        async with self.session() as session:
            result = await session.execute(
                select(DomainRow).where(DomainRow.kind == kind).order_by(DomainRow.created_at)
            )
            rows = list(result.scalars().all())
        return [r for r in rows if all(r.data.get(k) == v for k, v in match.items())]

    async def delete_rows(self, kind: str, keys: List[str]) -> int:
        if not keys:
            return 0
        return await self._delete(
            delete(DomainRow).where(DomainRow.kind == kind, DomainRow.key.in_(keys))
        )

    async def delete_rows_before(self, kind: str, cutoff: datetime) -> int:
        return await self._delete(
            delete(DomainRow).where(DomainRow.kind == kind, DomainRow.created_at < cutoff)
        )
