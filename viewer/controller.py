"""Async orchestration of a review session: fetching, rendering, navigation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Protocol

from PIL import Image

from .client import CatalogFetchError, ViewerApiClient
from .debounce import Debouncer
from .models import Document
from .outbox import ConsentOutbox
from .render import DocumentLoadError, PdfRenderer
from .session import ConsentEvent, Phase, ViewerError, ViewerSession
from .visibility import (
    ContainerGeometry,
    ViewportGeometry,
    VisibilityPolicy,
    load_visibility_policy,
)

CATALOG_ALERT = "Failed to load PDF files. Please try again later."
SIGNED_ALERT = "Thank you! You have successfully consented to all document groups."

SCROLL_DEBOUNCE_SECONDS = 0.1
RESIZE_DEBOUNCE_SECONDS = 0.25


class LayoutProbe(Protocol):
    """Reports where document containers currently sit on screen."""

    def measure(self) -> tuple[ViewportGeometry, Mapping[str, ContainerGeometry]]: ...


class ViewerController:
    def __init__(
        self,
        api: ViewerApiClient,
        *,
        renderer: PdfRenderer | None = None,
        outbox: ConsentOutbox | None = None,
        layout: LayoutProbe | None = None,
        policy: VisibilityPolicy | None = None,
        scroll_delay: float = SCROLL_DEBOUNCE_SECONDS,
        resize_delay: float = RESIZE_DEBOUNCE_SECONDS,
    ) -> None:
        self.api = api
        self.renderer = renderer or PdfRenderer(api.fetch_document)
        self.outbox = outbox or ConsentOutbox(api)
        self.layout = layout
        self.session = ViewerSession(
            consent_sink=self.outbox.submit,
            policy=policy or load_visibility_policy(),
        )
        self.alert: str | None = None
        self.page_counts: dict[str, int] = {}
        self._rendered_pages: dict[str, set[int]] = {}
        self._scroll = Debouncer(scroll_delay, self.check_visibility, name="scroll")
        self._resize = Debouncer(resize_delay, self.check_visibility, name="resize")

    async def start(self) -> bool:
        """Fetch the catalogue and display the first group."""

        try:
            catalog = await self.api.fetch_catalog()
            self.session.load(catalog)
        except (CatalogFetchError, ViewerError) as exc:
            logging.error("VIEWER initialisation failed: %s", exc)
            self.alert = CATALOG_ALERT
            return False
        await self.outbox.start()
        await self.refresh()
        return True

    async def refresh(self) -> None:
        """(Re)build the display state of the active group."""

        group = self.session.current_group
        self._rendered_pages = {}
        logging.info(
            "VIEWER display group index=%s name=%s files=%s",
            self.session.current_group_index,
            group.name,
            len(group.files),
        )
        for document in group.files:
            self.renderer.preload(document.url)
        await asyncio.gather(*(self._open(document) for document in group.files))

    async def _open(self, document: Document) -> bool:
        try:
            opened = await self.renderer.open_document(document.url)
        except DocumentLoadError as exc:
            logging.error("VIEWER failed to load %s: %s", document.name, exc)
            self.session.mark_failed(document.id, str(exc))
            return False
        self.page_counts[document.id] = opened.page_count
        self.session.mark_ready(document.id)
        return True

    async def render_page(self, file_id: str, page_number: int) -> Image.Image | None:
        """Render one page of a document in the active group.

        Each page is rendered at most once per group display; repeated calls
        return ``None``. Failures stay confined to the page in question.
        """

        document = self.session.current_group.find(file_id)
        if document is None:
            raise ViewerError(f"document {file_id!r} is not in the active group")
        rendered = self._rendered_pages.setdefault(file_id, set())
        if page_number in rendered:
            return None
        rendered.add(page_number)
        if document.id not in self.page_counts and not await self._open(document):
            rendered.discard(page_number)
            return None
        try:
            image = await self.renderer.render_page(document.url, page_number)
        except DocumentLoadError as exc:
            rendered.discard(page_number)
            logging.error(
                "VIEWER failed to render page %s of %s: %s", page_number, file_id, exc
            )
            return None
        total = self.page_counts.get(file_id)
        if total is not None and len(rendered) >= total:
            logging.info("VIEWER completed rendering all pages of %s", file_id)
            self.session.mark_rendered(file_id)
            self.check_visibility()
        return image

    def on_scroll(self) -> None:
        self._scroll.trigger()

    def on_resize(self) -> None:
        self._resize.trigger()

    async def settle(self) -> None:
        """Run any pending debounced work now."""

        await self._scroll.flush()
        await self._resize.flush()

    def check_visibility(self) -> list[str]:
        if self.layout is None or self.session.phase is not Phase.DISPLAYING:
            return []
        viewport, containers = self.layout.measure()
        newly_viewed: list[str] = []
        for file_id in self.session.current_group.file_ids:
            container = containers.get(file_id)
            if container is None or self.session.is_file_viewed(file_id):
                continue
            if self.session.report_visibility(file_id, container, viewport):
                newly_viewed.append(file_id)
        return newly_viewed

    def override(self) -> list[str]:
        return self.session.override_current_group()

    async def next(self) -> ConsentEvent:
        event = self.session.advance()
        if self.session.phase is Phase.SIGNED:
            self.alert = SIGNED_ALERT
        else:
            await self.refresh()
        return event

    async def previous(self) -> bool:
        if not self.session.go_back():
            return False
        await self.refresh()
        return True

    async def close(self) -> None:
        self._scroll.cancel()
        self._resize.cancel()
        await self.outbox.drain()
        await self.outbox.stop()
        self.renderer.close()
