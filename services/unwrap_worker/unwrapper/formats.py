from __future__ import annotations

from enum import Enum
from typing import Iterable
from urllib.parse import urlsplit

from .config import settings


_ARTICLES_SEGMENT = "/articles/"


class EncodingVariant(str, Enum):
    LEGACY_EMBEDDED = "legacy_embedded"
    REDIRECT_BASED = "redirect_based"


def extract_article_id(link: str) -> str | None:
    """Return the identifier after the last ``/articles/`` path segment.

    Query string and fragment are not part of the identifier. The identifier may
    itself contain ``/`` (standard base64 alphabet).
    """
    try:
        path = urlsplit(link).path
    except ValueError:
        return None
    idx = path.rfind(_ARTICLES_SEGMENT)
    if idx < 0:
        return None
    article_id = path[idx + len(_ARTICLES_SEGMENT):]
    return article_id or None


def detect_variant(
    link: str,
    *,
    markers: Iterable[str] | None = None,
    max_length: int | None = None,
) -> EncodingVariant:
    """Decide how a wrapped link encodes its destination.

    Legacy links carry the destination inside a short marker-prefixed identifier.
    Both conditions are required: long identifiers that happen to start with a
    marker are redirect-based. There is no version field to go by.
    """
    article_id = extract_article_id(link)
    if article_id is None:
        return EncodingVariant.REDIRECT_BASED
    prefixes = tuple(markers if markers is not None else settings.legacy_markers)
    limit = int(max_length if max_length is not None else settings.legacy_id_max_length)
    if article_id.startswith(prefixes) and len(article_id) < limit:
        return EncodingVariant.LEGACY_EMBEDDED
    return EncodingVariant.REDIRECT_BASED


def is_legacy_encoding(link: str) -> bool:
    return detect_variant(link) is EncodingVariant.LEGACY_EMBEDDED


def is_wrapped_link(link: str, hosts: Iterable[str] | None = None) -> bool:
    """True if ``link`` is served by one of the aggregator hosts (or a subdomain)."""
    try:
        host = (urlsplit(link).hostname or "").lower()
    except ValueError:
        return False
    if not host:
        return False
    for allowed in hosts if hosts is not None else settings.wrapper_hosts:
        allowed = allowed.lower()
        if host == allowed or host.endswith("." + allowed):
            return True
    return False
