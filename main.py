from __future__ import annotations

import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from time import perf_counter
from typing import Any

from aiohttp import web

from api.consent import setup_consent_routes
from api.cors import create_cors_middleware
from api.documents import setup_document_routes
from api.rate_limit import create_rate_limit_middleware
from catalog import load_group_specs
from config import AppConfig, load_config
from observability import metrics_handler, observability_middleware, setup_logging
from storage import LocalConsentLog, LocalDocumentStorage, StorageDirectoryMissing
from viewer.models import isoformat_utc


def _read_version_from_changelog() -> str:
    changelog_path = Path(__file__).resolve().parent / "CHANGELOG.md"
    try:
        with changelog_path.open("r", encoding="utf-8") as changelog:
            for line in changelog:
                line = line.strip()
                if line.startswith("## ["):
                    closing = line.find("]", 4)
                    if closing == -1:
                        continue
                    version = line[4:closing].strip()
                    if not version:
                        continue
                    if version.lower() == "unreleased":
                        return "unreleased"
                    return version
    except FileNotFoundError:
        logging.warning("CHANGELOG.md not found while resolving version")
    return "dev"


APP_VERSION = os.getenv("APP_VERSION") or _read_version_from_changelog()


async def health_handler(request: web.Request) -> web.Response:
    documents: LocalDocumentStorage = request.app["document_storage"]
    consent_log: LocalConsentLog = request.app["consent_log"]
    started_at: datetime = request.app["started_at"]
    version = request.app.get("version", APP_VERSION)

    checks: dict[str, dict[str, Any]] = {}
    status = 200

    t0 = perf_counter()
    try:
        count = len(documents.list_documents())
        checks["pdf_dir"] = {
            "ok": True,
            "documents": count,
            "latency_ms": (perf_counter() - t0) * 1000.0,
        }
    except StorageDirectoryMissing:
        checks["pdf_dir"] = {"ok": False, "error": "pdf directory not found"}
        status = 503
    except OSError as exc:
        checks["pdf_dir"] = {"ok": False, "error": str(exc)}
        status = 503

    if consent_log.writable():
        checks["consent_dir"] = {"ok": True}
    else:
        checks["consent_dir"] = {"ok": False, "error": "consent directory not writable"}
        status = 503

    now_utc = datetime.now(UTC)
    uptime_s = max(0.0, (now_utc - started_at).total_seconds())
    payload = {
        "ok": status == 200,
        "version": version,
        "now": isoformat_utc(now_utc),
        "uptime_s": uptime_s,
        "checks": checks,
    }
    logging.info(
        "HEALTH pdf_dir=%s consent_dir=%s status=%s",
        "ok" if checks["pdf_dir"]["ok"] else "fail",
        "ok" if checks["consent_dir"]["ok"] else "fail",
        status,
    )
    return web.json_response(payload, status=status)


def _setup_static_routes(app: web.Application, static_dir: Path) -> None:
    if not static_dir.is_dir():
        logging.info("STATIC directory %s not found, skipping static routes", static_dir)
        return
    index_path = static_dir.resolve() / "index.html"

    async def index_handler(request: web.Request) -> web.StreamResponse:
        if not index_path.is_file():
            raise web.HTTPNotFound()
        return web.FileResponse(index_path)

    app.router.add_get("/", index_handler)
    app.router.add_static("/", static_dir.resolve())


def create_app(config: AppConfig | None = None) -> web.Application:
    config = config or load_config()
    group_specs = load_group_specs(
        groups_json=config.groups_json,
        groups_file=config.groups_file,
    )

    documents = LocalDocumentStorage(config.pdf_dir)
    documents.ensure()
    consent_log = LocalConsentLog(config.consent_log_dir)

    app = web.Application(
        middlewares=[
            observability_middleware,
            create_cors_middleware(config.cors_allow_origins),
            create_rate_limit_middleware(),
        ]
    )
    app["config"] = config
    app["started_at"] = datetime.now(UTC)
    app["version"] = APP_VERSION

    setup_document_routes(app, storage=documents, group_specs=group_specs)
    setup_consent_routes(app, consent_log=consent_log)
    app.router.add_get("/v1/health", health_handler)
    app.router.add_get("/metrics", metrics_handler)
    _setup_static_routes(app, config.static_dir)

    async def log_startup(app: web.Application) -> None:
        logging.info(
            "Application startup version=%s pdf_dir=%s groups=%s",
            APP_VERSION,
            documents.path,
            len(group_specs),
        )

    app.on_startup.append(log_startup)
    return app


def main() -> None:
    setup_logging()
    config = load_config()
    logging.info("Server is running on http://localhost:%s", config.port)
    web.run_app(create_app(config), port=config.port, print=None)


if __name__ == "__main__":
    main()
