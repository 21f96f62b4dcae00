from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from .errors import FailureKind
from .formats import EncodingVariant


@dataclass(frozen=True)
class Resolved:
    """Destination recovered and already accepted by the SSRF guard."""

    url: str
    variant: EncodingVariant | None = None

    @property
    def status(self) -> str:
        return "resolved"


@dataclass(frozen=True)
class Blocked:
    reason: str
    detail: str = ""
    variant: EncodingVariant | None = None

    @property
    def status(self) -> str:
        return "blocked"

    @property
    def kind(self) -> FailureKind:
        return FailureKind.BLOCKED_BY_POLICY

    @property
    def error(self) -> str:
        return f"SSRF blocked ({self.reason}): {self.detail}" if self.detail else f"SSRF blocked ({self.reason})"


@dataclass(frozen=True)
class Failed:
    kind: FailureKind
    detail: str
    variant: EncodingVariant | None = None
    status_code: int | None = None

    @property
    def status(self) -> str:
        return "failed"

    @property
    def error(self) -> str:
        return self.detail


ResolutionOutcome = Union[Resolved, Blocked, Failed]
