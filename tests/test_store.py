from datetime import datetime, timedelta, timezone

import pytest

from unwrapper.errors import RetryStateClosedError, StaleRetryStateError
from unwrapper.store import ArticleStatus, InMemoryArticleStore, RetryState

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_retry_state_terminal():
    assert not RetryState().terminal
    assert not RetryState(status=ArticleStatus.FAILED, next_retry_at=NOW).terminal
    assert RetryState(status=ArticleStatus.FAILED).terminal
    assert RetryState(status=ArticleStatus.SUCCESS).terminal


@pytest.mark.asyncio
async def test_add_is_idempotent():
    store = InMemoryArticleStore()
    first = await store.add(1, "https://news.google.com/articles/a")
    again = await store.add(1, "https://news.google.com/articles/other")
    assert again == first
    assert (await store.load_retry_state(1)) == RetryState()


@pytest.mark.asyncio
async def test_writes_bump_version_and_record_fields():
    store = InMemoryArticleStore()
    await store.add(1, "https://news.google.com/articles/a")
    state = await store.record_failure(1, "timeout", 1, NOW, expected_version=0)
    assert state == RetryState(
        retry_count=1, next_retry_at=NOW, last_error="timeout", status=ArticleStatus.FAILED, version=1
    )
    state = await store.record_success(1, "https://example.com/a", expected_version=1)
    assert state.status is ArticleStatus.SUCCESS
    assert state.next_retry_at is None and state.last_error is None
    assert state.retry_count == 1
    assert state.version == 2
    assert (await store.get(1)).canonical_url == "https://example.com/a"


@pytest.mark.asyncio
async def test_permanent_failure_clears_schedule():
    store = InMemoryArticleStore()
    await store.add(1, "https://news.google.com/articles/a")
    await store.record_failure(1, "timeout", 1, NOW)
    state = await store.record_permanent_failure(1, "HTTP 404")
    assert state.terminal
    assert state.last_error == "HTTP 404"
    assert state.retry_count == 1


@pytest.mark.asyncio
async def test_stale_version_rejected():
    store = InMemoryArticleStore()
    await store.add(1, "https://news.google.com/articles/a")
    await store.record_failure(1, "timeout", 1, NOW, expected_version=0)
    with pytest.raises(StaleRetryStateError):
        await store.record_success(1, "https://example.com/a", expected_version=0)
    assert (await store.load_retry_state(1)).status is ArticleStatus.FAILED


@pytest.mark.asyncio
async def test_unknown_article_raises_key_error():
    store = InMemoryArticleStore()
    with pytest.raises(KeyError):
        await store.load_retry_state(99)
    with pytest.raises(KeyError):
        await store.record_permanent_failure(99, "x")


@pytest.mark.asyncio
async def test_find_due_for_retry_orders_and_limits():
    store = InMemoryArticleStore()
    for i in range(1, 6):
        await store.add(i, f"https://news.google.com/articles/{i}")
    await store.record_failure(1, "timeout", 1, NOW - timedelta(seconds=10))
    await store.record_failure(2, "timeout", 1, NOW - timedelta(seconds=30))
    await store.record_failure(3, "timeout", 1, NOW + timedelta(seconds=30))  # not yet due
    await store.record_permanent_failure(4, "HTTP 404")
    await store.record_failure(5, "timeout", 2, NOW)  # due exactly now

    due = await store.find_due_for_retry(NOW)
    assert [r.id for r in due] == [2, 1, 5]
    assert [r.id for r in await store.find_due_for_retry(NOW, limit=2)] == [2, 1]


@pytest.mark.asyncio
async def test_terminal_rows_refuse_further_writes():
    store = InMemoryArticleStore()
    await store.add(1, "https://news.google.com/articles/a")
    await store.record_permanent_failure(1, "HTTP 404")
    closed = await store.load_retry_state(1)

    with pytest.raises(RetryStateClosedError):
        await store.record_failure(1, "timeout", 2, NOW)
    with pytest.raises(RetryStateClosedError):
        await store.record_success(1, "https://example.com/a")
    assert await store.load_retry_state(1) == closed

    await store.add(2, "https://news.google.com/articles/b")
    await store.record_success(2, "https://example.com/b")
    with pytest.raises(RetryStateClosedError):
        await store.record_permanent_failure(2, "late failure")


@pytest.mark.asyncio
async def test_retry_count_never_decreases():
    store = InMemoryArticleStore()
    await store.add(1, "https://news.google.com/articles/a")
    await store.record_failure(1, "timeout", 3, NOW)
    with pytest.raises(ValueError):
        await store.record_failure(1, "timeout", 1, NOW)
    with pytest.raises(ValueError):
        await store.save_retry_state(1, RetryState(retry_count=0, status=ArticleStatus.FAILED, next_retry_at=NOW))
    assert (await store.load_retry_state(1)).retry_count == 3


@pytest.mark.asyncio
async def test_save_retry_state_is_a_conditional_write():
    store = InMemoryArticleStore()
    await store.add(1, "https://news.google.com/articles/a")
    nxt = RetryState(retry_count=1, next_retry_at=NOW, last_error="timeout", status=ArticleStatus.FAILED)

    saved = await store.save_retry_state(1, nxt, expected_version=0)
    assert saved.version == 1
    assert saved.retry_count == 1 and saved.next_retry_at == NOW
    with pytest.raises(StaleRetryStateError):
        await store.save_retry_state(1, nxt, expected_version=0)

    done = RetryState(retry_count=1, status=ArticleStatus.SUCCESS)
    await store.save_retry_state(1, done, expected_version=1, canonical_url="https://example.com/a")
    assert (await store.get(1)).canonical_url == "https://example.com/a"
