"""
Typed failure conditions raised by adapters, the credential store and the
webhook layer.

The sync orchestrator maps each class to a job state transition via the
``retryable`` attribute; the webhook route maps the signature errors to 401.
"""
from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for all sync engine errors."""

    retryable: bool = True

    def __init__(self, message: str = "", provider: Optional[str] = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.provider = provider


class CredentialsInvalid(SyncError):
    """Token expired or revoked and no usable refresh token. User must reconnect."""

    retryable = False


class RateLimited(SyncError):
    """Provider asked us to slow down."""

    def __init__(
        self,
        message: str = "rate limited",
        provider: Optional[str] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message, provider)
        self.retry_after = retry_after


class ProviderTimeout(SyncError):
    """Provider (or collaborator) did not answer in time."""


class TransientNetworkError(SyncError):
    """5xx response or connection failure."""


class MalformedResponse(SyncError):
    """Response did not match the expected schema."""


class IntegrationNotFound(SyncError):
    retryable = False


class SignatureInvalid(SyncError):
    """Webhook signature missing or mismatched."""

    retryable = False


class ReplayTooOld(SyncError):
    """Webhook timestamp outside the accepted window."""

    retryable = False
