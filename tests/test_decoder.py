import time

import httpx
import pytest

from unwrapper.decoder import WrapperDecoder
from unwrapper.errors import FailureKind
from unwrapper.formats import EncodingVariant
from unwrapper.outcomes import Blocked, Failed, Resolved

from conftest import legacy_link

REDIRECT_LINK = "https://news.google.com/rss/articles/AU_yqLOcHb4xVw0aZr1jhZNk?oc=5"
METADATA_URL = "http://169.254.169.254/latest/meta-data/"


class CountingLimiter:
    def __init__(self) -> None:
        self.calls = 0

    async def acquire(self) -> None:
        self.calls += 1


def make_decoder(handler, **kw) -> WrapperDecoder:
    opts = {
        "rate_limit_delay": 0,
        "retry_initial_delay": 0,
        "transport": httpx.MockTransport(handler),
    }
    opts.update(kw)
    return WrapperDecoder(**opts)


def redirect_to(location: str):
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        if request.url.host == "news.google.com":
            return httpx.Response(302, headers={"Location": location})
        return httpx.Response(200, text="<html>article</html>")

    return handler, seen


def no_network(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected request to {request.url}")


@pytest.mark.asyncio
async def test_legacy_link_decoded_offline(public_dns):
    limiter = CountingLimiter()
    decoder = make_decoder(no_network, limiter=limiter)
    outcome = await decoder.decode(legacy_link("https://example.com/a"))
    assert outcome == Resolved(url="https://example.com/a", variant=EncodingVariant.LEGACY_EMBEDDED)
    assert outcome.status == "resolved"
    assert limiter.calls == 0


@pytest.mark.asyncio
async def test_legacy_link_to_private_address_is_blocked():
    decoder = make_decoder(no_network)
    outcome = await decoder.decode(legacy_link("http://127.0.0.1/admin"))
    assert isinstance(outcome, Blocked)
    assert outcome.reason == "blocked_ip"
    assert outcome.kind is FailureKind.BLOCKED_BY_POLICY
    assert outcome.variant is EncodingVariant.LEGACY_EMBEDDED


@pytest.mark.asyncio
async def test_legacy_link_with_broken_payload_fails():
    decoder = make_decoder(no_network)
    outcome = await decoder.decode("https://news.google.com/rss/articles/CBM!!!!")
    assert isinstance(outcome, Failed)
    assert outcome.kind is FailureKind.MALFORMED_PAYLOAD
    assert outcome.detail.startswith("malformed payload")


@pytest.mark.asyncio
async def test_redirect_link_followed(public_dns):
    handler, seen = redirect_to("https://publisher.example/story")
    limiter = CountingLimiter()
    decoder = make_decoder(handler, limiter=limiter)
    outcome = await decoder.decode(REDIRECT_LINK)
    assert outcome == Resolved(url="https://publisher.example/story", variant=EncodingVariant.REDIRECT_BASED)
    assert seen == [REDIRECT_LINK, "https://publisher.example/story"]
    assert limiter.calls == 1


@pytest.mark.asyncio
async def test_redirect_to_metadata_endpoint_never_requested(public_dns):
    handler, seen = redirect_to(METADATA_URL)
    decoder = make_decoder(handler)
    outcome = await decoder.decode(REDIRECT_LINK)
    assert isinstance(outcome, Blocked)
    assert outcome.reason == "blocked_ip"
    assert "169.254.169.254" in outcome.detail
    assert outcome.error.startswith("SSRF blocked")
    assert seen == [REDIRECT_LINK]


@pytest.mark.asyncio
async def test_wrapper_host_dns_not_checked_before_request(fake_dns):
    fake_dns["publisher.example"] = ["93.184.216.34"]
    handler, seen = redirect_to("https://publisher.example/story")
    decoder = make_decoder(handler)
    outcome = await decoder.decode(REDIRECT_LINK)
    assert outcome == Resolved(url="https://publisher.example/story", variant=EncodingVariant.REDIRECT_BASED)
    assert seen == [REDIRECT_LINK, "https://publisher.example/story"]


@pytest.mark.asyncio
async def test_wrapper_host_connect_failure_stays_retryable(fake_dns):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("name resolution failed", request=request)

    decoder = make_decoder(handler, max_retries=2)
    outcome = await decoder.decode(REDIRECT_LINK)
    assert isinstance(outcome, Failed)
    assert outcome.kind is FailureKind.CONNECTION
    assert "name resolution failed" in outcome.detail


@pytest.mark.asyncio
async def test_unresolvable_redirect_target_still_blocked(fake_dns):
    handler, seen = redirect_to("https://nowhere.example/story")
    decoder = make_decoder(handler)
    outcome = await decoder.decode(REDIRECT_LINK)
    assert isinstance(outcome, Blocked)
    assert outcome.reason == "unresolvable_host"
    assert seen == [REDIRECT_LINK]


@pytest.mark.asyncio
async def test_final_url_checked_when_hop_checks_disabled(public_dns):
    handler, seen = redirect_to(METADATA_URL)
    decoder = make_decoder(handler, validate_hops=False)
    outcome = await decoder.decode(REDIRECT_LINK)
    assert isinstance(outcome, Blocked)
    assert outcome.reason == "blocked_ip"
    assert seen == [REDIRECT_LINK, METADATA_URL]


@pytest.mark.asyncio
async def test_redirect_to_other_scheme_blocked(public_dns):
    handler, seen = redirect_to("ftp://files.example/x")
    decoder = make_decoder(handler)
    outcome = await decoder.decode(REDIRECT_LINK)
    assert isinstance(outcome, Blocked)
    assert outcome.reason == "disallowed_scheme"
    assert seen == [REDIRECT_LINK]


@pytest.mark.asyncio
async def test_timeouts_exhaust_inner_retries(public_dns):
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        raise httpx.ConnectTimeout("timed out", request=request)

    decoder = make_decoder(handler, max_retries=3)
    outcome = await decoder.decode(REDIRECT_LINK)
    assert isinstance(outcome, Failed)
    assert outcome.kind is FailureKind.TIMEOUT
    assert outcome.detail.startswith("failed after 3 attempts: timeout")
    assert calls["n"] == 3


@pytest.mark.asyncio
async def test_transient_error_then_success(public_dns):
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "news.google.com":
            calls["n"] += 1
            if calls["n"] == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(301, headers={"Location": "https://publisher.example/x"})
        return httpx.Response(200)

    decoder = make_decoder(handler)
    outcome = await decoder.decode(REDIRECT_LINK)
    assert outcome == Resolved(url="https://publisher.example/x", variant=EncodingVariant.REDIRECT_BASED)
    assert calls["n"] == 2


@pytest.mark.asyncio
async def test_http_error_status_reported(public_dns):
    decoder = make_decoder(lambda request: httpx.Response(404), max_retries=1)
    outcome = await decoder.decode(REDIRECT_LINK)
    assert isinstance(outcome, Failed)
    assert outcome.kind is FailureKind.HTTP_STATUS
    assert outcome.status_code == 404
    assert "HTTP 404" in outcome.detail


@pytest.mark.asyncio
async def test_no_redirect_reported(public_dns):
    decoder = make_decoder(lambda request: httpx.Response(200, text="consent page"), max_retries=2)
    outcome = await decoder.decode(REDIRECT_LINK)
    assert isinstance(outcome, Failed)
    assert outcome.kind is FailureKind.NO_REDIRECT


@pytest.mark.asyncio
async def test_redirect_loop_reported(public_dns):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(302, headers={"Location": f"https://news.google.com/loop/{time.monotonic_ns()}"})

    decoder = make_decoder(handler, max_redirects=2, max_retries=1)
    outcome = await decoder.decode(REDIRECT_LINK)
    assert isinstance(outcome, Failed)
    assert outcome.kind is FailureKind.TOO_MANY_REDIRECTS


@pytest.mark.asyncio
async def test_unwrapped_and_empty_links_rejected():
    decoder = make_decoder(no_network)
    outcome = await decoder.decode("https://example.com/articles/CBMabc")
    assert isinstance(outcome, Failed) and outcome.kind is FailureKind.NOT_WRAPPED
    outcome = await decoder.decode("")
    assert isinstance(outcome, Failed) and outcome.kind is FailureKind.MALFORMED_PAYLOAD


@pytest.mark.asyncio
async def test_requests_spaced_by_rate_limit(public_dns):
    stamps: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "news.google.com":
            stamps.append(time.monotonic())
            return httpx.Response(302, headers={"Location": "https://publisher.example/x"})
        return httpx.Response(200)

    decoder = make_decoder(handler, rate_limit_delay=0.05)
    for _ in range(3):
        await decoder.decode(REDIRECT_LINK)
    assert len(stamps) == 3
    assert stamps[1] - stamps[0] >= 0.045
    assert stamps[2] - stamps[1] >= 0.045


def test_legacy_check_matches_module_detection():
    decoder = WrapperDecoder()
    assert decoder.is_legacy_encoding(legacy_link("https://example.com/a"))
    assert not decoder.is_legacy_encoding(REDIRECT_LINK)
    assert decoder.detect_variant(REDIRECT_LINK) is EncodingVariant.REDIRECT_BASED
