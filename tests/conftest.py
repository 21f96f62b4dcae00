import base64

import pytest

from unwrapper import dlq, security

PUBLIC_IP = "93.184.216.34"


def legacy_link(url: str, marker: str = "CBM", extra: bytes = b"") -> str:
    """Build a legacy wrapped link whose identifier embeds ``url``."""
    raw = url.encode("utf-8")
    record = b"\x08\x13\x22" + bytes([len(raw)]) + raw + extra
    ident = base64.urlsafe_b64encode(record).decode("ascii").rstrip("=")
    return f"https://news.google.com/rss/articles/{marker}{ident}?oc=5"


@pytest.fixture
def public_dns(monkeypatch):
    """Every hostname resolves to a public address; no real DNS traffic."""
    monkeypatch.setattr(security, "resolve_host", lambda host: [PUBLIC_IP])


@pytest.fixture
def fake_dns(monkeypatch):
    """Map hostnames to addresses explicitly; unknown names do not resolve."""
    table: dict[str, list[str]] = {}
    monkeypatch.setattr(security, "resolve_host", lambda host: list(table.get(host, [])))
    return table


@pytest.fixture
def buffer_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(dlq, "BUFFER_DIR", str(tmp_path))
    return tmp_path
