from __future__ import annotations

from typing import Iterable, Type

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import settings


def net_retry(
    max_attempts: int | None = None,
    *,
    initial: float | None = None,
    retry_on: Iterable[Type[BaseException]] | None = None,
    before_sleep=None,
):
    """Retry decorator for the live redirect path.

    Waits ``initial * 2**n`` seconds after the n-th failed attempt (0.2s, 0.4s, ...)
    with no jitter; jitter belongs to the longer-horizon scheduler. Defaults come
    from DECODER_MAX_RETRIES and DECODER_RETRY_INITIAL_DELAY.
    """
    attempts = int(max_attempts if max_attempts is not None else settings.decoder_max_retries)
    init = float(initial if initial is not None else settings.decoder_retry_initial_delay)
    cond = retry_if_exception_type(tuple(retry_on) if retry_on else Exception)
    return retry(
        reraise=True,
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=init, min=0, max=max(init, 0.0) * 2 ** max(attempts, 1)),
        retry=cond,
        before_sleep=before_sleep,
    )
