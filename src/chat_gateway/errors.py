"""Error taxonomy for the chat gateway.

Only :class:`AdmissionDenied`, :class:`AllProvidersExhausted` and a
:class:`StorageFault` raised while persisting a turn are meant to reach the
HTTP layer. The rest are recovered where they happen.
"""

from __future__ import annotations

from typing import List, Optional, Tuple, Union


class GatewayError(Exception):
    """Base error. ``message`` is safe to show to callers."""

    status_code = 500

    def __init__(self, message: str = "An error occurred during the process.") -> None:
        super().__init__(message)
        self.message = message


class AdmissionDenied(GatewayError):
    """Quota exceeded or identity blocked."""

    status_code = 429

    def __init__(self, message: str, retry_after: Union[int, str]) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class AllProvidersExhausted(GatewayError):
    """Every candidate model failed for one request."""

    def __init__(self, failures: Optional[List[Tuple[str, str]]] = None) -> None:
        super().__init__("The AI service is temporarily unavailable. Please try again later.")
        self.failures = list(failures or [])


class StorageFault(GatewayError):
    """Key-value store read or write failed."""

    def __init__(self, message: str = "Storage is unavailable.") -> None:
        super().__init__(message)


class SessionNotFound(GatewayError):
    status_code = 404

    def __init__(self, message: str = "Session not found.") -> None:
        super().__init__(message)


class ProviderError(Exception):
    """One candidate failed (bad status, transport error, malformed body)."""


class AttemptTimeout(ProviderError):
    """One candidate did not answer within its per-attempt bound."""


class SummarizationFailure(Exception):
    """A session summary could not be produced."""
