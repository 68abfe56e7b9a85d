"""Exceptions raised by the orchestration engine."""

from __future__ import annotations

from typing import Any


class SwitchboardError(Exception):
    """Base class for all switchboard errors."""


class InvalidCredential(SwitchboardError):
    """A required API key is missing or malformed.

    Raised before any network I/O and never retried.
    """

    def __init__(self, provider_id: str, reason: str):
        self.provider_id = provider_id
        self.reason = reason
        super().__init__(f"Invalid credential for {provider_id}: {reason}")


class TransportError(SwitchboardError):
    """A provider request failed at the HTTP level.

    ``fatal`` errors (bad credentials, forbidden) will fail again if
    retried; everything else is marked ``retryable``.  ``status_code``
    is ``None`` for network failures that never produced a response.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str = "",
    ):
        self.status_code = status_code
        self.body = body
        super().__init__(message)

    @property
    def fatal(self) -> bool:
        return self.status_code in (401, 403)

    @property
    def retryable(self) -> bool:
        return not self.fatal


class RoundLimitExceeded(SwitchboardError):
    """The model kept requesting tools past the follow-up round ceiling.

    ``partial`` holds the result accumulated up to the last round.
    """

    def __init__(self, max_rounds: int, partial: Any = None):
        self.max_rounds = max_rounds
        self.partial = partial
        super().__init__(
            f"Model still requested tools after {max_rounds} rounds"
        )


class RequestCancelled(SwitchboardError):
    """The caller cancelled the request mid-stream."""
