"""HTTP client for the external job worker."""
from __future__ import annotations

import logging

import httpx

from reportflow.core.errors import DispatchError
from reportflow.core.schema import DispatchPayload

logger = logging.getLogger(__name__)

# RuntimeError is what httpx raises for a request on a closed client
_SEND_ERRORS = (httpx.HTTPError, httpx.InvalidURL, RuntimeError)


class WorkerClient:
    """Fire-and-forget trigger for worker webhooks.

    Only the acknowledgement of the request is awaited; progress arrives
    later through the callback URL carried in the payload.
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._timeout = timeout
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    def _http(self) -> httpx.AsyncClient:
        if self._owns_client and self._client.is_closed:
            logger.info("Worker HTTP client was closed; opening a new one")
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def trigger(self, url: str, payload: DispatchPayload, *, kind: str | None = None) -> None:
        """POST the payload, falling back to a GET with query parameters."""

        kind = kind or payload.action
        client = self._http()
        body = payload.model_dump(mode="json")
        try:
            response = await client.post(
                url,
                json=body,
                headers={"Accept": "application/json"},
            )
        except _SEND_ERRORS as exc:
            logger.error(f"Dispatch to {url} failed for job {payload.job}: {exc}")
            raise DispatchError(f"Failed to reach worker at {url}: {exc}", kind=kind) from exc

        if response.is_success:
            logger.info(f"Dispatched job {payload.job} ({kind}) to {url}")
            return

        logger.warning(
            f"Worker POST to {url} returned {response.status_code} for job {payload.job}; retrying as GET"
        )
        try:
            fallback = await client.get(
                url,
                params=payload.as_query(),
                headers={"Accept": "application/json"},
            )
        except _SEND_ERRORS as exc:
            logger.error(f"Dispatch GET to {url} failed for job {payload.job}: {exc}")
            raise DispatchError(f"Failed to reach worker at {url}: {exc}", kind=kind) from exc

        if not fallback.is_success:
            logger.error(f"Worker rejected job {payload.job}: {fallback.status_code} {fallback.text[:200]}")
            raise DispatchError(
                f"Failed to send webhook request to {url}",
                kind=kind,
                status_code=fallback.status_code,
            )
        logger.info(f"Dispatched job {payload.job} ({kind}) to {url} via GET")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
