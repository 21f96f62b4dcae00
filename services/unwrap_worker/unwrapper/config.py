from __future__ import annotations

import os
from dataclasses import dataclass


def _csv(raw: str) -> tuple[str, ...]:
    return tuple(p.strip() for p in raw.split(",") if p.strip())


@dataclass
class Settings:
    api_host: str = os.getenv("API_HOST", "0.0.0.0")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    env: str = os.getenv("ENV", "dev")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Wrapped links
    wrapper_hosts: tuple[str, ...] = _csv(os.getenv("WRAPPER_HOSTS", "news.google.com"))
    legacy_markers: tuple[str, ...] = _csv(os.getenv("LEGACY_MARKERS", "CBM,CWM"))
    # Empirical: legacy identifiers stay under this length, redirect-based ones run longer
    legacy_id_max_length: int = int(os.getenv("LEGACY_ID_MAX_LENGTH", "150"))

    # Decoder (live redirect path)
    decoder_timeout: float = float(os.getenv("DECODER_TIMEOUT", "10"))
    decoder_max_redirects: int = int(os.getenv("DECODER_MAX_REDIRECTS", "10"))
    decoder_rate_limit_delay: float = float(os.getenv("DECODER_RATE_LIMIT_DELAY", "0.5"))
    decoder_max_retries: int = int(os.getenv("DECODER_MAX_RETRIES", "3"))
    decoder_retry_initial_delay: float = float(os.getenv("DECODER_RETRY_INITIAL_DELAY", "0.2"))
    decoder_user_agent: str = os.getenv(
        "DECODER_USER_AGENT",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    )
    # Validate every redirect hop, not only the final destination
    decoder_validate_hops: bool = os.getenv("DECODER_VALIDATE_HOPS", "1").lower() in ("1", "true", "yes")

    # Outbound URL safety
    max_url_length: int = int(os.getenv("MAX_URL_LENGTH", "2000"))

    # Retry/backoff for failed resolutions
    retry_max_attempts: int = int(os.getenv("RETRY_MAX_ATTEMPTS", "3"))
    retry_base_backoff: float = float(os.getenv("RETRY_BASE_BACKOFF", "60"))
    retry_max_jitter: float = float(os.getenv("RETRY_MAX_JITTER", "10"))
    retry_poll_interval_seconds: int = int(os.getenv("RETRY_POLL_INTERVAL_SECONDS", "60"))
    retry_batch_limit: int = int(os.getenv("RETRY_BATCH_LIMIT", "50"))

    # Observability
    otel_exporter_otlp_endpoint: str | None = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")


settings = Settings()
