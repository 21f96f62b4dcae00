from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Protocol

from .errors import RetryStateClosedError, StaleRetryStateError


class ArticleStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class RetryState:
    retry_count: int = 0
    next_retry_at: datetime | None = None
    last_error: str | None = None
    status: ArticleStatus = ArticleStatus.PENDING
    version: int = 0

    @property
    def terminal(self) -> bool:
        if self.status is ArticleStatus.SUCCESS:
            return True
        return self.status is ArticleStatus.FAILED and self.next_retry_at is None


@dataclass(frozen=True)
class ArticleRef:
    id: int
    wrapped_link: str
    retry_state: RetryState = field(default_factory=RetryState)
    canonical_url: str | None = None


class ArticleStore(Protocol):
    """Persistence of per-article retry bookkeeping, owned outside this service.

    Every write accepts ``expected_version``; when given, the write only applies if
    the stored state still has that version, otherwise StaleRetryStateError.
    A terminal state is never written again and ``retry_count`` never goes down.
    """

    async def load_retry_state(self, article_id: int) -> RetryState: ...

    async def save_retry_state(
        self,
        article_id: int,
        state: RetryState,
        *,
        expected_version: int | None = None,
        canonical_url: str | None = None,
    ) -> RetryState: ...

    async def record_success(
        self, article_id: int, canonical_url: str, *, expected_version: int | None = None
    ) -> RetryState: ...

    async def record_failure(
        self,
        article_id: int,
        error: str,
        retry_count: int,
        next_retry_at: datetime,
        *,
        expected_version: int | None = None,
    ) -> RetryState: ...

    async def record_permanent_failure(
        self, article_id: int, error: str, *, expected_version: int | None = None
    ) -> RetryState: ...

    async def find_due_for_retry(self, now: datetime, limit: int | None = None) -> list[ArticleRef]: ...


class InMemoryArticleStore:
    """Process-local ArticleStore used by the service and in tests."""

    def __init__(self) -> None:
        self._rows: dict[int, ArticleRef] = {}
        self._lock = asyncio.Lock()

    async def add(self, article_id: int, wrapped_link: str) -> ArticleRef:
        async with self._lock:
            ref = self._rows.get(article_id)
            if ref is None:
                ref = ArticleRef(id=article_id, wrapped_link=wrapped_link)
                self._rows[article_id] = ref
            return ref

    async def get(self, article_id: int) -> ArticleRef:
        async with self._lock:
            return self._get(article_id)

    def _get(self, article_id: int) -> ArticleRef:
        try:
            return self._rows[article_id]
        except KeyError:
            raise KeyError(f"unknown article: {article_id}")

    async def load_retry_state(self, article_id: int) -> RetryState:
        return (await self.get(article_id)).retry_state

    def _commit(
        self,
        ref: ArticleRef,
        state: RetryState,
        expected_version: int | None,
        canonical_url: str | None,
    ) -> RetryState:
        # caller holds self._lock
        current = ref.retry_state
        if expected_version is not None and current.version != expected_version:
            raise StaleRetryStateError(
                f"article {ref.id}: expected version {expected_version}, found {current.version}"
            )
        if current.terminal:
            raise RetryStateClosedError(f"article {ref.id} is already {current.status.value}")
        if state.retry_count < current.retry_count:
            raise ValueError(
                f"article {ref.id}: retry_count cannot go from {current.retry_count} to {state.retry_count}"
            )
        saved = replace(state, version=current.version + 1)
        self._rows[ref.id] = replace(ref, retry_state=saved, canonical_url=canonical_url or ref.canonical_url)
        return saved

    async def save_retry_state(
        self,
        article_id: int,
        state: RetryState,
        *,
        expected_version: int | None = None,
        canonical_url: str | None = None,
    ) -> RetryState:
        async with self._lock:
            return self._commit(self._get(article_id), state, expected_version, canonical_url)

    async def _write(
        self,
        article_id: int,
        expected_version: int | None,
        canonical_url: str | None = None,
        **changes,
    ) -> RetryState:
        async with self._lock:
            ref = self._get(article_id)
            return self._commit(ref, replace(ref.retry_state, **changes), expected_version, canonical_url)

    async def record_success(
        self, article_id: int, canonical_url: str, *, expected_version: int | None = None
    ) -> RetryState:
        return await self._write(
            article_id,
            expected_version,
            canonical_url=canonical_url,
            status=ArticleStatus.SUCCESS,
            next_retry_at=None,
            last_error=None,
        )

    async def record_failure(
        self,
        article_id: int,
        error: str,
        retry_count: int,
        next_retry_at: datetime,
        *,
        expected_version: int | None = None,
    ) -> RetryState:
        return await self._write(
            article_id,
            expected_version,
            status=ArticleStatus.FAILED,
            retry_count=retry_count,
            next_retry_at=next_retry_at,
            last_error=error,
        )

    async def record_permanent_failure(
        self, article_id: int, error: str, *, expected_version: int | None = None
    ) -> RetryState:
        return await self._write(
            article_id,
            expected_version,
            status=ArticleStatus.FAILED,
            next_retry_at=None,
            last_error=error,
        )

    async def find_due_for_retry(self, now: datetime, limit: int | None = None) -> list[ArticleRef]:
        async with self._lock:
            due = [
                ref
                for ref in self._rows.values()
                if ref.retry_state.status is ArticleStatus.FAILED
                and ref.retry_state.next_retry_at is not None
                and ref.retry_state.next_retry_at <= now
            ]
        due.sort(key=lambda r: r.retry_state.next_retry_at)  # type: ignore[arg-type, return-value]
        return due[:limit] if limit is not None else due
