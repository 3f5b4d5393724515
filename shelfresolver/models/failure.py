"""
Failure classification for the resolution pipeline.

Every error that crosses a component boundary is a KnownError carrying a
FailureKind. Provider adapters translate transport failures (HTTP status,
timeouts) into the ProviderError family below; the retry policy decides
what to do from the exception type alone.

Response classes:
- Transient (rate limit, timeout): retried with backoff
- Not found: resolves to "no match" immediately
- Unauthorized: no match, except where a credential refresh is possible
- Configuration: the provider is skipped for the whole run
"""

from enum import Enum


class FailureKind(str, Enum):
    """What went wrong, independent of which component noticed."""

    NOT_FOUND = "not_found"

    # Provider failures
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    UNAUTHORIZED = "unauthorized"
    EXTERNAL_API_ERROR = "external_api_error"
    CONFIGURATION = "configuration"

    # The AI reply could not be read
    MALFORMED_RESPONSE = "malformed_response"


class KnownError(Exception):
    """
    Base class for exceptions that represent known, explainable failures.

    Subclass this for errors where the system knows exactly what went wrong.
    """

    def __init__(
        self,
        kind: FailureKind,
        message: str,
        detail: str | None = None,
        status_code: int | None = None,
    ):
        self.kind = kind
        self.message = message
        self.detail = detail
        self.status_code = status_code
        super().__init__(message)


# =============================================================================
# PROVIDER ERRORS
# =============================================================================


class ProviderError(KnownError):
    """A provider call failed with a status the retry policy does not handle."""

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: int | None = None,
        kind: FailureKind = FailureKind.EXTERNAL_API_ERROR,
    ):
        self.provider = provider
        super().__init__(
            kind=kind,
            message=message,
            detail=f"{provider} returned {status_code}" if status_code else None,
            status_code=status_code,
        )


class TransientProviderError(ProviderError):
    """Failure worth retrying after a backoff."""


class ProviderRateLimitedError(TransientProviderError):
    """HTTP 429 from a provider."""

    def __init__(self, provider: str):
        super().__init__(
            provider, f"{provider} rate limited the request", 429, FailureKind.RATE_LIMITED
        )


class ProviderTimeoutError(TransientProviderError):
    """The request to a provider timed out or was aborted."""

    def __init__(self, provider: str):
        super().__init__(provider, f"{provider} request timed out", None, FailureKind.TIMEOUT)


class ProviderNotFoundError(ProviderError):
    """HTTP 404 from a provider."""

    def __init__(self, provider: str):
        super().__init__(provider, f"{provider} has no such resource", 404, FailureKind.NOT_FOUND)


class ProviderUnauthorizedError(ProviderError):
    """HTTP 401 from a provider."""

    def __init__(self, provider: str):
        super().__init__(
            provider, f"{provider} rejected the credentials", 401, FailureKind.UNAUTHORIZED
        )


class ProviderConfigurationError(ProviderError):
    """The provider cannot be called because credentials are missing."""

    def __init__(self, provider: str, missing: str):
        self.missing = missing
        super().__init__(
            provider,
            f"{provider} is not configured: missing {missing}",
            None,
            FailureKind.CONFIGURATION,
        )


# =============================================================================
# AI ERRORS
# =============================================================================


class AiEnrichmentError(KnownError):
    """The AI second pass returned nothing usable."""

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(kind=FailureKind.MALFORMED_RESPONSE, message=message, detail=detail)
