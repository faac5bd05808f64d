from __future__ import annotations


class HostplaneError(Exception):
    """Base error for hostplane."""


class ProviderConfigError(HostplaneError):
    """Missing or invalid provider configuration."""


class ProviderError(HostplaneError):
    """Cloud provider call failure."""

    def __init__(self, message: str, *, status_code: int | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class TransientProviderError(ProviderError):
    """Timeout, network failure, 5xx or rate limit; safe to retry."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
        retry_after_s: float | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code, code=code)
        self.retry_after_s = retry_after_s


class PermanentProviderError(ProviderError):
    """Validation, not-found or auth failure; never retried."""


class ProviderNotFoundError(PermanentProviderError):
    """The provider has no resource with the requested id."""


class ProviderAuthError(PermanentProviderError):
    """Provider rejected the API token."""


class ProvisioningTimeoutError(HostplaneError):
    """Readiness polling or the task wall-clock budget ran out."""


class QueueUnavailableError(HostplaneError):
    """Task broker cannot be reached."""


class InvalidTransitionError(HostplaneError):
    """Status change is not an edge of the lifecycle graph or lost a race."""


class ResourceNotFoundError(HostplaneError):
    """No managed resource with the requested id."""


class CatalogEntryNotFoundError(HostplaneError):
    """The provider catalog has no entry (or no price) for the requested option."""
