#!/usr/bin/env python3
"""
Feed Error Taxonomy

Exceptions raised by the transaction feed engine and its transports.
"""


class FeedError(Exception):
    """Base class for all transaction feed errors."""


class TransportFailure(FeedError):
    """Network unreachable, timed out, or the server failed (5xx)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AuthExpired(TransportFailure):
    """Token refresh failed; the session is gone."""


class ValidationRejected(FeedError):
    """
    Payload rejected by the server (or by local pre-checks).

    The message is passed through verbatim so it can be shown to the user.
    """

    def __init__(self, message: str, field_errors: dict[str, str] | None = None):
        super().__init__(message)
        self.message = message
        self.field_errors = field_errors or {}


class StaleFingerprint(FeedError):
    """A next-page fetch was attempted against an invalidated fingerprint."""

    def __init__(self, fingerprint_key: str, cached_generation: int, current_generation: int):
        super().__init__(
            f"Fingerprint {fingerprint_key} is stale "
            f"(cached generation {cached_generation}, current {current_generation})"
        )
        self.fingerprint_key = fingerprint_key
        self.cached_generation = cached_generation
        self.current_generation = current_generation


class UnknownTransaction(FeedError):
    """No authoritative transaction exists for the given id."""
