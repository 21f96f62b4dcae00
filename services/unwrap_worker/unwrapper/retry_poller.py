from __future__ import annotations

import asyncio
import logging
from collections import Counter

from .config import settings
from .decoder import WrapperDecoder
from .scheduler import ResolutionRetryScheduler, ScheduleDecision
from .store import ArticleRef


class RetryPoller:
    """Re-attempts articles whose scheduled retry time has passed.

    One decoder instance is shared so its rate limiter spaces all live requests
    made by this process.
    """

    def __init__(
        self,
        decoder: WrapperDecoder,
        scheduler: ResolutionRetryScheduler,
        *,
        interval_seconds: int | None = None,
        batch_limit: int | None = None,
    ) -> None:
        self.decoder = decoder
        self.scheduler = scheduler
        self.interval = max(1, int(interval_seconds or settings.retry_poll_interval_seconds))
        self.batch_limit = int(batch_limit or settings.retry_batch_limit)
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()
        self._logger = logging.getLogger(__name__)

    async def resolve_article(self, ref: ArticleRef) -> ScheduleDecision:
        """Run one resolution attempt for ``ref`` and record its outcome."""
        outcome = await self.decoder.decode(ref.wrapped_link)
        return await self.scheduler.report(ref.id, outcome, wrapped_link=ref.wrapped_link)

    async def poll_once(self, *, limit: int | None = None) -> dict[str, int]:
        due = await self.scheduler.pending_retries(limit=limit or self.batch_limit)
        counts: Counter[str] = Counter()
        for ref in due:
            try:
                decision = await self.resolve_article(ref)
            except Exception as e:
                self._logger.error(f"Retry of article {ref.id} failed: {e}")
                counts["error"] += 1
                continue
            counts[decision.action.value] += 1
        if due:
            self._logger.info(f"Retry poll processed {len(due)} articles: {dict(counts)}")
        return dict(counts)

    async def run(self) -> None:
        while not self._stop.is_set():
            try:
                await self.poll_once()
            except Exception as e:
                self._logger.error(f"Retry poller loop error: {e}")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._stop.clear()
            self._task = asyncio.create_task(self.run(), name="retry-poller")

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=5)
            except asyncio.TimeoutError:
                self._task.cancel()
