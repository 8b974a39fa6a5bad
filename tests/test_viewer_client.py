from __future__ import annotations

import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
import httpx
import pytest

from viewer import CatalogFetchError, ConsentDeliveryError, DocumentFetchError, ViewerApiClient

CATALOG = {
    "groups": [
        {"name": "Group 1", "files": [{"id": "1", "name": "1.pdf", "url": "/api/pdf/1.pdf"}]},
    ]
}


def _client(handler) -> ViewerApiClient:
    return ViewerApiClient("http://viewer.test", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_fetch_catalog_parses_groups():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/pdfs"
        return httpx.Response(200, json=CATALOG)

    async with _client(handler) as client:
        catalog = await client.fetch_catalog()

    assert catalog[0].name == "Group 1"
    assert catalog[0].files[0].url == "/api/pdf/1.pdf"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, json={"error": "pdf_directory_not_found"}),
        httpx.Response(200, text="<html>"),
        httpx.Response(200, json={"unexpected": True}),
    ],
)
async def test_fetch_catalog_failures_are_typed(response):
    async with _client(lambda request: response) as client:
        with pytest.raises(CatalogFetchError):
            await client.fetch_catalog()


@pytest.mark.asyncio
async def test_fetch_catalog_network_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async with _client(handler) as client:
        with pytest.raises(CatalogFetchError):
            await client.fetch_catalog()


@pytest.mark.asyncio
async def test_post_consent_sends_json_and_classifies_errors():
    seen: list[dict] = []
    statuses = iter([200, 503, 400])

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        status = next(statuses)
        if status == 200:
            return httpx.Response(200, json={"message": "Consent recorded successfully", "timestamp": "t"})
        return httpx.Response(status, json={"error": "x"})

    async with _client(handler) as client:
        response = await client.post_consent({"consentType": "group"})
        assert response["message"] == "Consent recorded successfully"

        with pytest.raises(ConsentDeliveryError) as server_error:
            await client.post_consent({"consentType": "group"})
        assert server_error.value.retryable

        with pytest.raises(ConsentDeliveryError) as client_error:
            await client.post_consent({"consentType": "group"})
        assert not client_error.value.retryable

    assert seen == [{"consentType": "group"}] * 3


@pytest.mark.asyncio
async def test_fetch_document_returns_bytes_or_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/pdf/1.pdf":
            return httpx.Response(200, content=b"%PDF-1.7")
        return httpx.Response(404, json={"error": "not_found"})

    async with _client(handler) as client:
        assert await client.fetch_document("/api/pdf/1.pdf") == b"%PDF-1.7"
        with pytest.raises(DocumentFetchError):
            await client.fetch_document("/api/pdf/missing.pdf")
