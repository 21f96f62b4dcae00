from __future__ import annotations

import logging
import random
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Union

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from .config import settings
from .dlq import write_dlq
from .errors import FailureKind, HttpStatusError, ResolutionError, RetryStateClosedError, StaleRetryStateError
from .logging_metrics import retry_decisions_total
from .outcomes import Blocked, Failed, Resolved, ResolutionOutcome
from .store import ArticleRef, ArticleStatus, ArticleStore, RetryState


class Disposition(str, Enum):
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


class ScheduleAction(str, Enum):
    COMPLETE = "complete"
    RETRY = "retry"
    GIVE_UP = "give_up"


RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 504})

_KIND_DISPOSITION: dict[FailureKind, Disposition] = {
    FailureKind.MALFORMED_PAYLOAD: Disposition.PERMANENT,
    FailureKind.NO_REDIRECT: Disposition.PERMANENT,
    FailureKind.HTTP_STATUS: Disposition.PERMANENT,  # unless the code is in RETRYABLE_STATUS_CODES
    FailureKind.TIMEOUT: Disposition.RETRYABLE,
    FailureKind.CONNECTION: Disposition.RETRYABLE,
    FailureKind.TOO_MANY_REDIRECTS: Disposition.PERMANENT,
    FailureKind.NOT_WRAPPED: Disposition.PERMANENT,
    FailureKind.BLOCKED_BY_POLICY: Disposition.PERMANENT,
}

# Free text from collaborators (content fetch, stored last_error). Permanent wins.
PERMANENT_PATTERNS = (
    "not found",
    "404",
    "forbidden",
    "403",
    "invalid url",
    "ssrf",
    "blocked",
    "parseable content",
)
RETRYABLE_PATTERNS = (
    "timeout",
    "timed out",
    "connection",
    "network",
    "dns",
    "429",
    "502",
    "503",
    "504",
    "rate limit",
)

FailureLike = Union[FailureKind, Blocked, Failed, BaseException, str]


def _classify_kind(kind: FailureKind, status_code: int | None = None) -> Disposition:
    if kind is FailureKind.HTTP_STATUS and status_code in RETRYABLE_STATUS_CODES:
        return Disposition.RETRYABLE
    return _KIND_DISPOSITION[kind]


def _classify_text(text: str) -> Disposition:
    lowered = text.lower()
    if any(p in lowered for p in PERMANENT_PATTERNS):
        return Disposition.PERMANENT
    if any(p in lowered for p in RETRYABLE_PATTERNS):
        return Disposition.RETRYABLE
    # Unknown errors are not retried
    return Disposition.PERMANENT


def classify_failure(error: FailureLike) -> Disposition:
    """Decide whether a failed resolution is worth another attempt later."""
    if isinstance(error, FailureKind):
        return _classify_kind(error)
    if isinstance(error, Blocked):
        return Disposition.PERMANENT
    if isinstance(error, Failed):
        return _classify_kind(error.kind, error.status_code)
    if isinstance(error, HttpStatusError):
        return _classify_kind(error.kind, error.status_code)
    if isinstance(error, ResolutionError):
        return _classify_kind(error.kind)
    if isinstance(error, Resolved):
        raise TypeError("a resolved outcome is not a failure")
    return _classify_text(str(error))


def is_retryable(error: FailureLike) -> bool:
    return classify_failure(error) is Disposition.RETRYABLE


def error_text(error: FailureLike) -> str:
    if isinstance(error, (Blocked, Failed)):
        return error.error
    if isinstance(error, FailureKind):
        return error.value
    return str(error)


def compute_backoff(
    retry_count: int,
    *,
    base: float | None = None,
    max_jitter: float | None = None,
    rng: random.Random | None = None,
) -> float:
    """Seconds to wait before the next attempt: ``base * 2**retry_count`` plus jitter.

    Jitter is uniform in [0, max_jitter) so that items failing together do not
    come back together. Defaults: 60s base, 10s jitter -> 60-70s, 120-130s, 240-250s.
    """
    b = float(base if base is not None else settings.retry_base_backoff)
    j = float(max_jitter if max_jitter is not None else settings.retry_max_jitter)
    r = (rng or random).random()
    return b * 2 ** max(0, int(retry_count)) + r * max(0.0, j)


@dataclass(frozen=True)
class ScheduleDecision:
    action: ScheduleAction
    retry_count: int
    next_retry_at: datetime | None = None
    error: str | None = None
    reason: str | None = None
    delay_seconds: float | None = None
    canonical_url: str | None = None


def decide(
    error: FailureLike,
    retry_count: int,
    *,
    now: datetime | None = None,
    max_retries: int | None = None,
    backoff: Callable[[int], float] = compute_backoff,
) -> ScheduleDecision:
    """Pure retry decision for an article that has failed ``retry_count`` times before."""
    limit = int(max_retries if max_retries is not None else settings.retry_max_attempts)
    text = error_text(error)
    if retry_count >= limit:
        return ScheduleDecision(ScheduleAction.GIVE_UP, retry_count, error=text, reason="max retries exceeded")
    if classify_failure(error) is Disposition.PERMANENT:
        return ScheduleDecision(ScheduleAction.GIVE_UP, retry_count, error=text, reason="permanent error")
    delay = backoff(retry_count)
    at = (now or datetime.now(timezone.utc)) + timedelta(seconds=delay)
    return ScheduleDecision(
        ScheduleAction.RETRY,
        retry_count + 1,
        next_retry_at=at,
        error=text,
        reason="retryable error",
        delay_seconds=delay,
    )


def transition(
    state: RetryState,
    outcome: Union[Resolved, FailureLike],
    *,
    now: datetime | None = None,
    max_retries: int | None = None,
    backoff: Callable[[int], float] = compute_backoff,
) -> tuple[ScheduleDecision, RetryState]:
    """Next retry state after one resolution attempt (or a reported failure).

    Pure; the store applies the returned state with a conditional write.
    """
    if state.terminal:
        raise RetryStateClosedError(f"retry state is terminal ({state.status.value})")
    if isinstance(outcome, Resolved):
        decision = ScheduleDecision(
            ScheduleAction.COMPLETE, state.retry_count, reason="resolved", canonical_url=outcome.url
        )
        return decision, replace(state, status=ArticleStatus.SUCCESS, next_retry_at=None, last_error=None)
    decision = decide(outcome, state.retry_count, now=now, max_retries=max_retries, backoff=backoff)
    if decision.action is ScheduleAction.RETRY:
        nxt = replace(
            state,
            status=ArticleStatus.FAILED,
            retry_count=decision.retry_count,
            next_retry_at=decision.next_retry_at,
            last_error=decision.error,
        )
    else:
        nxt = replace(state, status=ArticleStatus.FAILED, next_retry_at=None, last_error=decision.error)
    return decision, nxt


class ResolutionRetryScheduler:
    """Turns resolution failures into deferred retries or permanent failures.

    Retry bookkeeping lives in an external ArticleStore; this class only computes
    transitions and asks the store to apply them.
    """

    def __init__(
        self,
        store: ArticleStore,
        *,
        max_retries: int | None = None,
        base_backoff: float | None = None,
        max_jitter: float | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] | None = None,
        dead_letter: bool = True,
        cas_attempts: int = 3,
    ) -> None:
        self.store = store
        self.max_retries = int(max_retries if max_retries is not None else settings.retry_max_attempts)
        self.base_backoff = float(base_backoff if base_backoff is not None else settings.retry_base_backoff)
        self.max_jitter = float(max_jitter if max_jitter is not None else settings.retry_max_jitter)
        self._rng = rng or random.Random()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._dead_letter = dead_letter
        self._cas_attempts = cas_attempts
        self._logger = logging.getLogger(__name__)

    def classify(self, error: FailureLike) -> Disposition:
        return classify_failure(error)

    def compute_backoff(self, retry_count: int) -> float:
        return compute_backoff(retry_count, base=self.base_backoff, max_jitter=self.max_jitter, rng=self._rng)

    def next_delay(self, retry_count: int) -> timedelta:
        return timedelta(seconds=self.compute_backoff(retry_count))

    def decide(self, error: FailureLike, retry_count: int) -> ScheduleDecision:
        return decide(
            error, retry_count, now=self._clock(), max_retries=self.max_retries, backoff=self.compute_backoff
        )

    async def enqueue(
        self, article_id: int, error: FailureLike, retry_count: int, *, wrapped_link: str | None = None
    ) -> ScheduleDecision:
        """Schedule a retry for a failed article, or fail it for good.

        ``retry_count`` is the caller's view of past failures; a higher stored
        count wins. Raises RetryStateClosedError if the article is already final.
        """
        return await self._transact(article_id, error, retry_count=retry_count, wrapped_link=wrapped_link)

    async def report(
        self, article_id: int, outcome: ResolutionOutcome, *, wrapped_link: str | None = None
    ) -> ScheduleDecision:
        """Apply the outcome of one attempt using compare-and-swap on the stored version."""
        return await self._transact(article_id, outcome, wrapped_link=wrapped_link)

    async def mark_complete(self, article_id: int, canonical_url: str) -> ScheduleDecision:
        return await self.report(article_id, Resolved(url=canonical_url))

    async def pending_retries(self, now: datetime | None = None, limit: int | None = None) -> list[ArticleRef]:
        return await self.store.find_due_for_retry(now or self._clock(), limit)

    async def _transact(
        self,
        article_id: int,
        outcome: Union[Resolved, FailureLike],
        *,
        retry_count: int | None = None,
        wrapped_link: str | None = None,
    ) -> ScheduleDecision:
        async for attempt in AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self._cas_attempts),
            retry=retry_if_exception_type(StaleRetryStateError),
        ):
            with attempt:
                state = await self.store.load_retry_state(article_id)
                base = state
                if retry_count is not None and retry_count > state.retry_count:
                    base = replace(state, retry_count=retry_count)
                decision, nxt = transition(
                    base,
                    outcome,
                    now=self._clock(),
                    max_retries=self.max_retries,
                    backoff=self.compute_backoff,
                )
                await self.store.save_retry_state(
                    article_id, nxt, expected_version=state.version, canonical_url=decision.canonical_url
                )
        self._record(article_id, decision, wrapped_link)
        return decision

    def _record(self, article_id: int, decision: ScheduleDecision, wrapped_link: str | None) -> None:
        if decision.action is ScheduleAction.COMPLETE:
            self._logger.info(f"Article resolved: article_id={article_id} url={decision.canonical_url}")
        elif decision.action is ScheduleAction.RETRY:
            self._logger.warning(
                f"Article queued for retry: article_id={article_id} retry_count={decision.retry_count} "
                f"next_retry_at={decision.next_retry_at} backoff_seconds={decision.delay_seconds} "
                f"error={decision.error}"
            )
        else:
            self._logger.error(
                f"Article permanently failed: article_id={article_id} reason={decision.reason} error={decision.error}"
            )
            if self._dead_letter:
                write_dlq(
                    "resolve",
                    {"article_id": article_id, "wrapped_link": wrapped_link, "retry_count": decision.retry_count},
                    f"{decision.reason}: {decision.error}",
                )
        retry_decisions_total.labels(action=decision.action.value).inc()
