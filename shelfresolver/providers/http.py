"""HTTP helper translating transport failures into provider errors."""

from typing import Any

import httpx

from shelfresolver.models.failure import (
    ProviderError,
    ProviderNotFoundError,
    ProviderRateLimitedError,
    ProviderTimeoutError,
    ProviderUnauthorizedError,
)


async def request_json(
    client: httpx.AsyncClient,
    provider: str,
    method: str,
    url: str,
    **kwargs: Any,
) -> Any:
    """
    Send a request and decode the JSON body.

    Raises:
        ProviderRateLimitedError: On HTTP 429
        ProviderNotFoundError: On HTTP 404
        ProviderUnauthorizedError: On HTTP 401
        ProviderTimeoutError: If the request times out
        ProviderError: On any other HTTP or transport failure, or a non-JSON body
    """
    try:
        response = await client.request(method, url, **kwargs)
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        status = e.response.status_code
        if status == 429:
            raise ProviderRateLimitedError(provider) from e
        if status == 404:
            raise ProviderNotFoundError(provider) from e
        if status == 401:
            raise ProviderUnauthorizedError(provider) from e
        raise ProviderError(provider, f"{provider} request failed: HTTP {status}", status) from e
    except httpx.TimeoutException as e:
        raise ProviderTimeoutError(provider) from e
    except httpx.RequestError as e:
        raise ProviderError(provider, f"{provider} request failed: {e}") from e

    try:
        return response.json()
    except ValueError as e:
        raise ProviderError(provider, f"{provider} returned a non-JSON body") from e
