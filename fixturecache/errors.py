"""Exceptions raised by the upstream client."""
from __future__ import annotations
from dataclasses import dataclass


@dataclass(eq=False)
class UpstreamRequestError(RuntimeError):
    """An API-Football request failed (transport error, bad status, error payload)."""

    endpoint: str
    reason: str
    status_code: int | None = None

    def __post_init__(self) -> None:
        message = f"API-Football request to '{self.endpoint}' failed: {self.reason}"
        if self.status_code is not None:
            message += f" (HTTP {self.status_code})"
        super().__init__(message)


@dataclass(eq=False)
class QuotaExceededError(UpstreamRequestError):
    """The provider refused the request for quota, rate-limit or plan reasons."""
