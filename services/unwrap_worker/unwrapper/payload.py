"""Offline extraction of destination URLs from legacy wrapped-link identifiers.

The identifier is base64 over a loosely structured binary record (protobuf-like,
no published schema). One or more URLs are embedded in it, each followed by a
control byte or by the next field's tag bytes. The first URL is the canonical
one; later ones are usually AMP variants.
"""
from __future__ import annotations

import base64
import binascii
import re
from typing import Iterable

from .errors import MalformedPayloadError


# A URL run ends at a control byte or DEL. High bytes stay in it: paths may be UTF-8.
_URL_THEN_CONTROL = re.compile(rb"([a-z][a-z0-9+.-]*://[^\x00-\x1f\x7f]+?)[\x00-\x1f\x7f]", re.IGNORECASE)
_URL_THEN_SPACE = re.compile(rb"([a-z][a-z0-9+.-]*://[^\x00-\x20\x7f]+)\s", re.IGNORECASE)
_FALLBACK_SCHEMES = (b"https://", b"http://", b"ftp://", b"ftps://")
_KNOWN_SCHEMES = (b"https", b"http", b"ftps", b"ftp")
_TRAILING_CONTROL = bytes(range(0x20))

MARKER_LENGTH = 3


def decode_identifier(text: str) -> bytes:
    """Base64-decode ``text``; standard or URL-safe alphabet, padding optional."""
    if not text:
        raise MalformedPayloadError("malformed payload: identifier is empty")
    normalized = text.replace("-", "+").replace("_", "/").rstrip("=")
    if len(normalized) % 4 == 1:
        raise MalformedPayloadError("malformed payload: invalid base64 length")
    normalized += "=" * (-len(normalized) % 4)
    try:
        data = base64.b64decode(normalized, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedPayloadError(f"malformed payload: invalid base64 ({e})")
    if not data:
        raise MalformedPayloadError("malformed payload: decoded data is empty")
    return data


def _scan_for_scheme(data: bytes) -> bytes | None:
    lowered = data.lower()
    positions = [pos for pos in (lowered.find(s) for s in _FALLBACK_SCHEMES) if pos >= 0]
    if not positions:
        return None
    start = min(positions)
    end = start
    while end < len(data):
        b = data[end]
        if b < 0x20 or b == 0x7F:
            break
        end += 1
    return data[start:end]


def _strip_length_prefix(raw: bytes) -> bytes:
    # A length byte in the letter range glues onto the scheme: b"Ahttps://..."
    scheme = raw.split(b"://", 1)[0].lower()
    for known in _KNOWN_SCHEMES:
        if scheme != known and scheme.endswith(known):
            return raw[len(scheme) - len(known):]
    return raw


def _drop_partial_utf8(raw: bytes) -> bytes:
    # The next field's tag (e.g. 0xd2) sits right before a control byte and
    # leaves an unfinished UTF-8 sequence at the tail.
    while raw:
        try:
            raw.decode("utf-8")
        except UnicodeDecodeError as e:
            if e.end < len(raw):
                return raw
            raw = raw[: e.start]
        else:
            return raw
    return raw


def extract_url(data: bytes) -> str:
    """Pull the first embedded URL out of a decoded payload.

    Tried in order: a scheme-prefixed run ending at a control byte, the same run
    ending at whitespace, then a plain scan for a known scheme walked to the next
    control byte or the end of the buffer. The bytes are read as UTF-8, falling
    back to Latin-1 when they are not valid UTF-8.
    """
    m = _URL_THEN_CONTROL.search(data) or _URL_THEN_SPACE.search(data)
    raw = m.group(1) if m else _scan_for_scheme(data)
    if raw is None:
        raise MalformedPayloadError("malformed payload: no URL found in decoded data")
    raw = _drop_partial_utf8(_strip_length_prefix(raw.rstrip(_TRAILING_CONTROL)))
    if not raw:
        raise MalformedPayloadError("malformed payload: decoded URL is empty")
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("latin-1")


def decode_legacy_identifier(article_id: str, markers: Iterable[str] = ("CBM", "CWM")) -> str:
    """Recover the destination URL embedded in a legacy identifier.

    The marker is stripped and the rest decoded. Identifiers minted by the
    aggregator today keep the marker inside the base64 stream, so when the
    stripped form yields nothing the whole identifier is tried as well.
    """
    if not article_id:
        raise MalformedPayloadError("malformed payload: identifier is empty")
    body = article_id[MARKER_LENGTH:] if article_id.startswith(tuple(markers)) else article_id
    try:
        return extract_url(decode_identifier(body))
    except MalformedPayloadError as first:
        if body == article_id:
            raise
        try:
            return extract_url(decode_identifier(article_id))
        except MalformedPayloadError:
            raise first
