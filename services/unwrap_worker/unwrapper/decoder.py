from __future__ import annotations

import logging
import time
from typing import Callable, Iterable

import httpx
from anyio import to_thread

from .config import settings
from .errors import (
    DecodeError,
    FetchConnectionError,
    FetchTimeoutError,
    HttpStatusError,
    MalformedPayloadError,
    NoRedirectError,
    NotWrappedError,
    TooManyRedirectsError,
    UnsafeUrlError,
)
from .formats import EncodingVariant, detect_variant, extract_article_id, is_wrapped_link
from .http import async_http_client
from .logging_metrics import decode_total, redirect_latency_seconds, redirect_retries_total
from .outcomes import Blocked, Failed, Resolved, ResolutionOutcome
from .payload import decode_legacy_identifier
from .rate_limit import AsyncRateLimiter
from .retry import net_retry
from .security import validate_outbound_url


class WrapperDecoder:
    """Recover the destination behind an aggregator's wrapped link.

    Legacy links are decoded offline from the base64 identifier. Redirect-based
    links are requested and their redirect chain followed, spaced by a rate
    limiter and retried with exponential backoff. Either way the candidate URL
    passes the SSRF guard before it is returned as ``Resolved``.
    """

    def __init__(
        self,
        *,
        timeout: float | None = None,
        max_redirects: int | None = None,
        rate_limit_delay: float | None = None,
        max_retries: int | None = None,
        retry_initial_delay: float | None = None,
        user_agent: str | None = None,
        wrapper_hosts: Iterable[str] | None = None,
        legacy_markers: Iterable[str] | None = None,
        legacy_id_max_length: int | None = None,
        validate_hops: bool | None = None,
        limiter: AsyncRateLimiter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        validator: Callable[[str], None] | None = None,
    ) -> None:
        self.timeout = float(timeout if timeout is not None else settings.decoder_timeout)
        self.max_redirects = int(max_redirects if max_redirects is not None else settings.decoder_max_redirects)
        self.max_retries = int(max_retries if max_retries is not None else settings.decoder_max_retries)
        self.retry_initial_delay = float(
            retry_initial_delay if retry_initial_delay is not None else settings.decoder_retry_initial_delay
        )
        self.user_agent = user_agent or settings.decoder_user_agent
        self.wrapper_hosts = tuple(wrapper_hosts if wrapper_hosts is not None else settings.wrapper_hosts)
        self.legacy_markers = tuple(legacy_markers if legacy_markers is not None else settings.legacy_markers)
        self.legacy_id_max_length = int(
            legacy_id_max_length if legacy_id_max_length is not None else settings.legacy_id_max_length
        )
        self.validate_hops = settings.decoder_validate_hops if validate_hops is None else validate_hops
        delay = rate_limit_delay if rate_limit_delay is not None else settings.decoder_rate_limit_delay
        self._limiter = limiter or AsyncRateLimiter(delay)
        self._transport = transport
        self._validator = validator or validate_outbound_url
        self._logger = logging.getLogger(__name__)

    def detect_variant(self, link: str) -> EncodingVariant:
        return detect_variant(link, markers=self.legacy_markers, max_length=self.legacy_id_max_length)

    def is_legacy_encoding(self, link: str) -> bool:
        return self.detect_variant(link) is EncodingVariant.LEGACY_EMBEDDED

    async def decode(self, link: str) -> ResolutionOutcome:
        """Resolve ``link`` once. Failures come back as outcomes, not exceptions."""
        variant: EncodingVariant | None = None
        try:
            if not link:
                raise MalformedPayloadError("malformed payload: wrapped link is empty")
            if not is_wrapped_link(link, self.wrapper_hosts):
                raise NotWrappedError(f"not a wrapped link: {link[:120]}")
            variant = self.detect_variant(link)
            if variant is EncodingVariant.LEGACY_EMBEDDED:
                candidate = self._decode_legacy(link)
            else:
                candidate = await self._follow_redirects(link)
            await self._validate(candidate)
        except UnsafeUrlError as e:
            outcome: ResolutionOutcome = Blocked(reason=e.reason, detail=e.detail, variant=variant)
            self._logger.warning(f"Wrapped link blocked: {e.message} link={link[:120]}")
        except HttpStatusError as e:
            outcome = Failed(kind=e.kind, detail=e.message, variant=variant, status_code=e.status_code)
            self._logger.warning(f"Wrapped link failed: {e.message} link={link[:120]}")
        except DecodeError as e:
            outcome = Failed(kind=e.kind, detail=e.message, variant=variant)
            self._logger.warning(f"Wrapped link failed: {e.message} link={link[:120]}")
        else:
            outcome = Resolved(url=candidate, variant=variant)
            self._logger.info(f"Wrapped link resolved: variant={variant.value} url={candidate}")
        decode_total.labels(variant=variant.value if variant else "unknown", outcome=outcome.status).inc()
        return outcome

    def _decode_legacy(self, link: str) -> str:
        article_id = extract_article_id(link)
        if article_id is None:
            raise MalformedPayloadError("malformed payload: could not extract article id from URL")
        return decode_legacy_identifier(article_id, self.legacy_markers)

    async def _validate(self, url: str) -> None:
        # DNS lookup blocks; keep it off the event loop
        await to_thread.run_sync(self._validator, url)

    async def _guard_hop(self, request: httpx.Request) -> None:
        # wrapper hosts are trusted; a DNS miss there surfaces as a connection error
        if is_wrapped_link(str(request.url), self.wrapper_hosts):
            return
        await self._validate(str(request.url))

    async def _follow_redirects(self, link: str) -> str:
        @net_retry(
            self.max_retries,
            initial=self.retry_initial_delay,
            retry_on=(DecodeError,),
            before_sleep=lambda rs: redirect_retries_total.inc(),
        )
        async def _run() -> str:
            return await self._fetch_once(link)

        try:
            return await _run()
        except DecodeError as e:
            e.message = f"failed after {self.max_retries} attempts: {e.message}"
            e.args = (e.message,)
            raise

    async def _fetch_once(self, link: str) -> str:
        await self._limiter.acquire()
        hooks = [self._guard_hop] if self.validate_hops else []
        start = time.perf_counter()
        try:
            async with async_http_client(
                self.timeout,
                max_redirects=self.max_redirects,
                user_agent=self.user_agent,
                request_hooks=hooks,
                transport=self._transport,
            ) as client:
                r = await client.get(link)
        except httpx.UnsupportedProtocol as e:
            raise UnsafeUrlError("disallowed_scheme", f"redirect to unsupported scheme: {e}")
        except httpx.TimeoutException as e:
            raise FetchTimeoutError(f"timeout while following redirects: {str(e) or type(e).__name__}")
        except httpx.TooManyRedirects:
            raise TooManyRedirectsError(f"too many redirects (max {self.max_redirects})")
        except httpx.RequestError as e:
            raise FetchConnectionError(f"connection error while following redirects: {str(e) or type(e).__name__}")
        except httpx.InvalidURL as e:
            raise MalformedPayloadError(f"malformed payload: invalid URL ({e})")
        finally:
            redirect_latency_seconds.observe(time.perf_counter() - start)

        if r.status_code >= 400:
            raise HttpStatusError(r.status_code)
        if r.url == httpx.URL(link) or is_wrapped_link(str(r.url), self.wrapper_hosts):
            raise NoRedirectError("no redirect occurred, still on the wrapper host")
        return str(r.url)
