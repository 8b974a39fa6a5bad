from __future__ import annotations

import asyncio
import json
import shutil
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
import httpx
import pytest
from aiohttp.test_utils import TestServer

from config import AppConfig
from main import create_app
from tests.fixtures.documents import make_pdf, seed_pdfs
from viewer import (
    ContainerGeometry,
    Phase,
    ViewerApiClient,
    ViewerController,
    ViewerError,
    ViewportGeometry,
)
from viewer.controller import CATALOG_ALERT, SIGNED_ALERT

GROUPS = json.dumps(
    [
        {"name": "Terms", "files": ["1.pdf", "2.pdf"]},
        {"name": "Privacy", "files": ["3.pdf", "broken.pdf"]},
    ]
)


class FakeLayout:
    def __init__(self) -> None:
        self.viewport = ViewportGeometry(height=800, scroll_y=0, document_height=6000)
        self.containers: dict[str, ContainerGeometry] = {}
        self.measurements = 0

    def measure(self):
        self.measurements += 1
        return self.viewport, dict(self.containers)


def _config(tmp_path: Path) -> AppConfig:
    config = AppConfig(
        pdf_dir=tmp_path / "pdfs",
        consent_log_dir=tmp_path / "consent_logs",
        static_dir=tmp_path / "public",
        groups_json=GROUPS,
    )
    seed_pdfs(config.pdf_dir, ["1.pdf", "3.pdf"])
    seed_pdfs(config.pdf_dir, ["2.pdf"], pages=2)
    (config.pdf_dir / "broken.pdf").write_bytes(b"this is not a pdf")
    return config


@pytest.mark.asyncio
async def test_full_review_flow_against_server(tmp_path):
    config = _config(tmp_path)
    layout = FakeLayout()

    async with TestServer(create_app(config)) as server:
        api = ViewerApiClient(str(server.make_url("")))
        controller = ViewerController(api, layout=layout, scroll_delay=0.01, resize_delay=0.01)
        try:
            assert await controller.start()
            session = controller.session
            assert session.current_group.name == "Terms"
            assert session.file_status("1") == "Ready"
            assert controller.page_counts["2"] == 2

            layout.containers = {
                "1": ContainerGeometry(top=0, bottom=700),
                "2": ContainerGeometry(top=900, bottom=2900),
            }
            controller.on_scroll()
            await controller.settle()
            assert session.is_file_viewed("1")
            assert not session.is_file_viewed("2")
            assert not session.control.enabled

            layout.viewport = ViewportGeometry(height=800, scroll_y=5150, document_height=6000)
            layout.containers["2"] = ContainerGeometry(top=-4000, bottom=4000)
            assert await controller.render_page("2", 1) is not None
            assert await controller.render_page("2", 1) is None
            assert not session.is_file_viewed("2")
            assert await controller.render_page("2", 2) is not None
            assert session.is_file_viewed("2")
            assert session.control.enabled

            group_event = await controller.next()
            assert group_event.consent_type == "group"
            assert session.current_group.name == "Privacy"
            assert session.file_status("3") == "Ready"
            assert session.file_status("broken").startswith("Failed to load PDF")
            with pytest.raises(ViewerError):
                await controller.render_page("1", 1)

            assert await controller.previous()
            assert session.current_group_index == 0
            assert session.is_group_fully_viewed()
            await controller.next()

            assert controller.override() == ["3", "broken"]
            assert session.control.label == "Sign"
            final_event = await controller.next()
            assert session.phase is Phase.SIGNED
            assert controller.alert == SIGNED_ALERT
            assert list(final_event.files) == ["1", "2", "3", "broken"]
        finally:
            await controller.close()
            await api.aclose()

    deliveries = controller.outbox.deliveries
    assert [delivery.status for delivery in deliveries] == ["sent", "sent", "sent"]
    records = [
        json.loads(path.read_text())
        for path in sorted(config.consent_log_dir.glob("consent_*.json"))
    ]
    assert sorted(record["consentType"] for record in records) == ["final", "group", "group"]
    final = next(record for record in records if record["consentType"] == "final")
    assert final["files"] == ["1", "2", "3", "broken"]
    assert "serverTimestamp" in final


@pytest.mark.asyncio
async def test_start_reports_alert_when_catalog_unavailable(tmp_path):
    config = _config(tmp_path)
    app = create_app(config)
    shutil.rmtree(config.pdf_dir)

    async with TestServer(app) as server:
        api = ViewerApiClient(str(server.make_url("")))
        controller = ViewerController(api)
        try:
            assert not await controller.start()
            assert controller.alert == CATALOG_ALERT
            assert controller.session.phase is Phase.LOADING
        finally:
            await controller.close()
            await api.aclose()


@pytest.mark.asyncio
async def test_scroll_and_resize_are_debounced_independently(tmp_path):
    config = _config(tmp_path)
    layout = FakeLayout()

    async with TestServer(create_app(config)) as server:
        api = ViewerApiClient(str(server.make_url("")))
        controller = ViewerController(api, layout=layout, scroll_delay=0.05, resize_delay=0.05)
        try:
            assert await controller.start()
            session = controller.session
            controller.on_scroll()
            controller.on_scroll()
            controller.on_resize()
            await asyncio.sleep(0.3)
            assert layout.measurements == 2

            layout.containers = {"1": ContainerGeometry(top=0, bottom=700)}
            controller.on_resize()
            assert not session.is_file_viewed("1")
            await controller.settle()
            assert session.is_file_viewed("1")
            assert not session.is_file_viewed("2")
        finally:
            await controller.close()
            await api.aclose()


@pytest.mark.asyncio
async def test_document_recovers_when_a_later_render_succeeds():
    data = make_pdf(1)
    document_requests: list[str] = []
    catalog = {
        "groups": [
            {"name": "Terms", "files": [{"id": "1", "name": "1.pdf", "url": "/api/pdf/1.pdf"}]}
        ]
    }

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/pdfs":
            return httpx.Response(200, json=catalog)
        if request.url.path == "/api/consent":
            return httpx.Response(200, json={"message": "Consent recorded successfully"})
        document_requests.append(request.url.path)
        if len(document_requests) == 1:
            return httpx.Response(503)
        return httpx.Response(200, content=data, headers={"Content-Type": "application/pdf"})

    layout = FakeLayout()
    layout.viewport = ViewportGeometry(height=800, scroll_y=5150, document_height=6000)
    layout.containers = {"1": ContainerGeometry(top=-4000, bottom=4000)}
    api = ViewerApiClient("http://viewer.test", transport=httpx.MockTransport(handler))
    controller = ViewerController(api, layout=layout)
    try:
        assert await controller.start()
        session = controller.session
        assert session.file_status("1").startswith("Failed to load PDF")
        assert "1" not in controller.page_counts

        assert await controller.render_page("1", 1) is not None

        assert controller.page_counts["1"] == 1
        assert session.file_error("1") is None
        assert session.is_file_viewed("1")
        assert session.file_status("1") == "Viewed"
        assert document_requests == ["/api/pdf/1.pdf", "/api/pdf/1.pdf"]
    finally:
        await controller.close()
        await api.aclose()


@pytest.mark.asyncio
async def test_start_reports_alert_for_empty_catalog(tmp_path):
    config = AppConfig(
        pdf_dir=tmp_path / "pdfs",
        consent_log_dir=tmp_path / "consent_logs",
        static_dir=tmp_path / "public",
        groups_json="[]",
    )
    seed_pdfs(config.pdf_dir, ["1.pdf"])

    async with TestServer(create_app(config)) as server:
        api = ViewerApiClient(str(server.make_url("")))
        controller = ViewerController(api)
        try:
            assert not await controller.start()
            assert controller.alert == CATALOG_ALERT
            assert controller.session.phase is Phase.LOADING
        finally:
            await controller.close()
            await api.aclose()
