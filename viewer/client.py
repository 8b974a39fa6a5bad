"""HTTP client for the catalogue service."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .models import Catalog, CatalogShapeError


class CatalogFetchError(Exception):
    """Raised when the catalogue cannot be fetched or parsed."""


class ConsentDeliveryError(Exception):
    """Raised when the server does not acknowledge a consent event."""

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class DocumentFetchError(Exception):
    """Raised when document bytes cannot be downloaded."""


class ViewerApiClient:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> ViewerApiClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_catalog(self) -> Catalog:
        try:
            response = await self._client.get("/api/pdfs")
        except httpx.HTTPError as exc:
            raise CatalogFetchError(f"Failed to reach catalog service: {exc}") from exc
        if response.status_code != 200:
            raise CatalogFetchError(
                f"Server responded with status: {response.status_code}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise CatalogFetchError("Catalog response is not valid JSON") from exc
        try:
            catalog = Catalog.from_payload(payload)
        except CatalogShapeError as exc:
            raise CatalogFetchError(str(exc)) from exc
        logging.info("VIEWER catalog fetched groups=%s", len(catalog))
        return catalog

    async def post_consent(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post("/api/consent", json=payload)
        except httpx.HTTPError as exc:
            raise ConsentDeliveryError(f"Failed to reach consent service: {exc}") from exc
        if response.status_code >= 500 or response.status_code == 429:
            raise ConsentDeliveryError(
                f"Consent service responded with status: {response.status_code}"
            )
        if response.status_code != 200:
            raise ConsentDeliveryError(
                f"Consent rejected with status: {response.status_code}",
                retryable=False,
            )
        try:
            return response.json()
        except ValueError:
            return {}

    async def fetch_document(self, url: str) -> bytes:
        try:
            response = await self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise DocumentFetchError(
                f"Server responded with status: {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise DocumentFetchError(str(exc) or type(exc).__name__) from exc
        return response.content
