from __future__ import annotations

import logging

from aiohttp import web

from api.errors import json_error
from catalog import GroupSpec, build_catalog, default_group_specs
from observability import record_document_served
from storage import DocumentStorage, StorageDirectoryMissing

PDF_CONTENT_TYPE = "application/pdf"
STREAM_CHUNK_SIZE = 256 * 1024


def _ensure_storage(app: web.Application) -> DocumentStorage:
    storage = app.get("document_storage")
    if storage is None:
        raise RuntimeError("Document storage is not configured")
    return storage


async def handle_list_documents(request: web.Request) -> web.Response:
    storage = _ensure_storage(request.app)
    specs: tuple[GroupSpec, ...] | None = request.app.get("group_specs")
    if specs is None:
        specs = default_group_specs()
    try:
        available = storage.list_documents()
    except StorageDirectoryMissing as exc:
        logging.error("CATALOG pdf directory not found path=%s", exc)
        return json_error(
            500, "pdf_directory_not_found", "The pdfs directory does not exist"
        )
    except OSError:
        logging.exception("CATALOG failed to list documents")
        return json_error(500, "catalog_failed", "Failed to get PDF list")
    catalog = build_catalog(specs, available)
    logging.info(
        "CATALOG served groups=%s files=%s",
        len(catalog),
        sum(len(group.files) for group in catalog.groups),
    )
    return web.json_response(catalog.to_payload())


async def handle_get_document(request: web.Request) -> web.StreamResponse:
    filename = request.match_info.get("filename", "")
    request["document"] = filename
    storage = _ensure_storage(request.app)
    path = storage.resolve(filename)
    if path is None:
        record_document_served("not_found")
        return json_error(404, "not_found", "PDF not found")
    record_document_served("ok")
    return web.FileResponse(
        path,
        chunk_size=STREAM_CHUNK_SIZE,
        headers={"Content-Type": PDF_CONTENT_TYPE},
    )


def setup_document_routes(
    app: web.Application,
    *,
    storage: DocumentStorage,
    group_specs: tuple[GroupSpec, ...] | None = None,
) -> None:
    app["document_storage"] = storage
    app["group_specs"] = group_specs if group_specs is not None else default_group_specs()
    app.router.add_get("/api/pdfs", handle_list_documents)
    app.router.add_get("/api/pdf/{filename}", handle_get_document)
