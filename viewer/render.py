"""PDF opening and page rasterisation backed by PyMuPDF."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import pymupdf
from PIL import Image

DEFAULT_SCALE = 1.5

DocumentFetcher = Callable[[str], Awaitable[bytes]]


class DocumentLoadError(Exception):
    """Raised when a document cannot be opened or one of its pages rendered."""


@dataclass(slots=True)
class RenderedDocument:
    url: str
    page_count: int
    handle: pymupdf.Document = field(repr=False)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


class PdfRenderer:
    """Opens documents by URL and renders individual pages to images.

    Opened documents are cached per URL for the lifetime of the renderer, so
    revisiting a group reuses what was already downloaded.
    """

    def __init__(self, fetch: DocumentFetcher, *, scale: float = DEFAULT_SCALE) -> None:
        self._fetch = fetch
        self.scale = scale
        self._cache: dict[str, asyncio.Task[RenderedDocument]] = {}

    def is_cached(self, url: str) -> bool:
        return url in self._cache

    def preload(self, url: str) -> None:
        self._task_for(url)

    async def open_document(self, url: str) -> RenderedDocument:
        task = self._task_for(url)
        try:
            return await asyncio.shield(task)
        except DocumentLoadError:
            # Failed loads are not cached so a later visit can retry.
            if self._cache.get(url) is task:
                self._cache.pop(url, None)
            raise

    async def render_page(
        self, url: str, page_number: int, *, scale: float | None = None
    ) -> Image.Image:
        document = await self.open_document(url)
        if not 1 <= page_number <= document.page_count:
            raise DocumentLoadError(
                f"page {page_number} out of range 1..{document.page_count}"
            )
        factor = scale if scale is not None else self.scale
        async with document.lock:
            try:
                return await asyncio.to_thread(
                    _rasterise, document.handle, page_number - 1, factor
                )
            except Exception as exc:
                raise DocumentLoadError(str(exc) or type(exc).__name__) from exc

    def close(self) -> None:
        for task in self._cache.values():
            if task.done() and not task.cancelled() and task.exception() is None:
                task.result().handle.close()
            elif not task.done():
                task.cancel()
        self._cache.clear()

    def _task_for(self, url: str) -> asyncio.Task[RenderedDocument]:
        task = self._cache.get(url)
        if task is None:
            logging.info("VIEWER loading PDF url=%s", url)
            task = asyncio.get_running_loop().create_task(self._load(url))
            task.add_done_callback(_consume_exception)
            self._cache[url] = task
        else:
            logging.debug("VIEWER using cached PDF url=%s", url)
        return task

    async def _load(self, url: str) -> RenderedDocument:
        try:
            data = await self._fetch(url)
        except Exception as exc:
            raise DocumentLoadError(str(exc) or type(exc).__name__) from exc
        try:
            handle = pymupdf.open(stream=data, filetype="pdf")
        except Exception as exc:
            raise DocumentLoadError(f"Invalid PDF structure: {exc}") from exc
        if handle.page_count < 1:
            handle.close()
            raise DocumentLoadError("Invalid PDF structure: no pages")
        return RenderedDocument(url=url, page_count=handle.page_count, handle=handle)


def _rasterise(handle: pymupdf.Document, page_index: int, scale: float) -> Image.Image:
    page = handle.load_page(page_index)
    pixmap = page.get_pixmap(matrix=pymupdf.Matrix(scale, scale), alpha=False)
    return Image.frombytes("RGB", (pixmap.width, pixmap.height), pixmap.samples)


def _consume_exception(task: asyncio.Task) -> None:
    if not task.cancelled():
        task.exception()
