from __future__ import annotations

import hashlib
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import uvicorn
from anyio import to_thread
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

from .config import settings
from .decoder import WrapperDecoder
from .errors import UnsafeUrlError
from .logging_metrics import (
    correlation_id,
    latency_hist,
    metrics_router,
    req_counter,
    set_ready,
    set_unready,
    setup_logging,
)
from .models import (
    ArticleIn,
    BackoffOut,
    ClassifyIn,
    ClassifyOut,
    DecisionOut,
    ProbeOut,
    ResolveOut,
    UrlIn,
    ValidateOut,
)
from .outcomes import Blocked, Failed, ResolutionOutcome
from .retry_poller import RetryPoller
from .scheduler import Disposition, ResolutionRetryScheduler, ScheduleDecision, classify_failure, compute_backoff
from .security import validate_outbound_url
from .store import InMemoryArticleStore


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    setup_logging(settings.log_level)
    # OTel instrumentation (safe if exporter unset)
    try:
        FastAPIInstrumentor.instrument_app(app)  # type: ignore[name-defined]
        HTTPXClientInstrumentor().instrument()
    except Exception as e:
        logging.getLogger(__name__).warning(f"OTel instrumentation failed: {e}")
    # Retry poller is not auto-started; triggered on demand via /retries/sync
    set_ready()
    yield
    set_unready()


app = FastAPI(title="Unwrap Worker", version="0.1.0", lifespan=lifespan)
app.include_router(metrics_router)

app.state.decoder = WrapperDecoder()
app.state.store = InMemoryArticleStore()
app.state.scheduler = ResolutionRetryScheduler(app.state.store)


@app.middleware("http")
async def correlation_mw(request: Request, call_next):  # type: ignore[no-untyped-def]
    url = str(request.url)
    cid = hashlib.sha256(f"{url}:{time.time_ns()}".encode()).hexdigest()[:16]
    token = correlation_id.set(cid)
    try:
        response = await call_next(request)
        response.headers["x-correlation-id"] = cid
        return response
    finally:
        correlation_id.reset(token)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    start = time.perf_counter()
    status = "500"
    try:
        response = await call_next(request)
        status = str(getattr(response, "status_code", 500))
        return response
    finally:
        elapsed = time.perf_counter() - start
        path = request.url.path
        try:
            latency_hist.labels(path=path).observe(elapsed)
            req_counter.labels(path=path, method=request.method, status=status).inc()
        except Exception:
            pass


@app.exception_handler(Exception)
async def unhandled(_request: Request, exc: Exception):  # type: ignore[no-untyped-def]
    logging.getLogger(__name__).exception("Unhandled error")
    return JSONResponse({"code": "ERR_UNKNOWN", "message": str(exc)}, status_code=500)


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok", "env": settings.env}


def _outcome_out(outcome: ResolutionOutcome) -> ResolveOut:
    variant = outcome.variant.value if outcome.variant else None
    if isinstance(outcome, Blocked):
        return ResolveOut(
            status=outcome.status,
            variant=variant,
            kind=outcome.kind.value,
            reason=outcome.reason,
            detail=outcome.detail,
        )
    if isinstance(outcome, Failed):
        return ResolveOut(
            status=outcome.status,
            variant=variant,
            kind=outcome.kind.value,
            detail=outcome.detail,
            status_code=outcome.status_code,
        )
    return ResolveOut(status=outcome.status, url=outcome.url, variant=variant)


def _decision_out(article_id: int, d: ScheduleDecision) -> DecisionOut:
    return DecisionOut(
        article_id=article_id,
        action=d.action.value,
        retry_count=d.retry_count,
        next_retry_at=d.next_retry_at,
        error=d.error,
        reason=d.reason,
        canonical_url=d.canonical_url,
    )


@app.post("/resolve", response_model=ResolveOut)
async def resolve(body: UrlIn, request: Request) -> ResolveOut:
    decoder: WrapperDecoder = request.app.state.decoder
    outcome = await decoder.decode(body.url)
    return _outcome_out(outcome)


@app.post("/probe", response_model=ProbeOut)
async def probe(body: UrlIn, request: Request) -> ProbeOut:
    decoder: WrapperDecoder = request.app.state.decoder
    variant = decoder.detect_variant(body.url)
    return ProbeOut(variant=variant.value, legacy=decoder.is_legacy_encoding(body.url))


@app.post("/validate", response_model=ValidateOut)
async def validate(body: UrlIn) -> ValidateOut:
    try:
        await to_thread.run_sync(validate_outbound_url, body.url)
    except UnsafeUrlError as e:
        return ValidateOut(ok=False, reason=e.reason, detail=e.detail)
    return ValidateOut(ok=True)


@app.post("/classify", response_model=ClassifyOut)
async def classify(body: ClassifyIn) -> ClassifyOut:
    disposition = classify_failure(body.error)
    return ClassifyOut(disposition=disposition.value, retryable=disposition is Disposition.RETRYABLE)


@app.get("/backoff/{retry_count}", response_model=BackoffOut)
async def backoff(retry_count: int) -> BackoffOut:
    if retry_count < 0:
        raise HTTPException(status_code=422, detail="retry_count must be >= 0")
    return BackoffOut(retry_count=retry_count, seconds=compute_backoff(retry_count))


@app.post("/articles", response_model=DecisionOut)
async def submit_article(body: ArticleIn, request: Request) -> DecisionOut:
    """Register a wrapped link under an article id and make the first attempt."""
    store: InMemoryArticleStore = request.app.state.store
    ref = await store.add(body.id, body.url)
    if ref.retry_state.terminal:
        raise HTTPException(status_code=409, detail=f"article {body.id} already {ref.retry_state.status.value}")
    poller = RetryPoller(request.app.state.decoder, request.app.state.scheduler)
    decision = await poller.resolve_article(ref)
    return _decision_out(body.id, decision)


@app.post("/retries/sync")
async def retries_sync(request: Request) -> dict[str, int]:
    """Run a single retry poll cycle immediately (no background loop).

    Query params:
      - limit=N to cap the number of articles attempted
    """
    lim_raw = request.query_params.get("limit")
    limit = int(lim_raw) if lim_raw is not None and lim_raw.strip().isdigit() else None
    poller = RetryPoller(request.app.state.decoder, request.app.state.scheduler)
    logging.getLogger(__name__).info(f"retries_sync: limit={limit}")
    counts = await poller.poll_once(limit=limit)
    return {k: int(v) for k, v in counts.items()}


def main() -> None:
    host = os.getenv("HOST", settings.api_host)
    port = int(os.getenv("PORT", str(settings.api_port)))
    uvicorn.run(
        "unwrapper.main:app",
        host=host,
        port=port,
        reload=False,
        log_level=settings.log_level.lower(),
        factory=False,
    )


if __name__ == "__main__":
    main()
