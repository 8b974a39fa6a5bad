from __future__ import annotations

import json
import logging
from datetime import UTC, datetime

from aiohttp import web

from api.errors import json_error
from observability import log_exc, record_consent_event, record_consent_write_failure
from storage import ConsentLog
from viewer.models import isoformat_utc


def _ensure_consent_log(app: web.Application) -> ConsentLog:
    log = app.get("consent_log")
    if log is None:
        raise RuntimeError("Consent log is not configured")
    return log


async def handle_record_consent(request: web.Request) -> web.Response:
    consent_log = _ensure_consent_log(request.app)
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return json_error(400, "invalid_payload", "Body must be valid JSON")
    if not isinstance(payload, dict):
        return json_error(400, "invalid_payload", "Body must be a JSON object")

    consent_type = str(payload.get("consentType") or "unknown")
    request["consent_type"] = consent_type
    timestamp = isoformat_utc(datetime.now(UTC))
    files = payload.get("files")
    logging.info(
        "CONSENT recorded at %s type=%s group=%s files=%s",
        timestamp,
        consent_type,
        payload.get("groupName"),
        len(files) if isinstance(files, list) else 0,
    )
    record = {**payload, "serverTimestamp": timestamp}
    try:
        consent_log.append(record, timestamp=timestamp)
    except OSError as exc:
        log_exc("CONSENT write failed", exc)
        record_consent_write_failure()
        return json_error(500, "consent_write_failed", "Failed to record consent")
    record_consent_event(consent_type)
    return web.json_response(
        {"message": "Consent recorded successfully", "timestamp": timestamp}
    )


def setup_consent_routes(app: web.Application, *, consent_log: ConsentLog) -> None:
    app["consent_log"] = consent_log
    app.router.add_post("/api/consent", handle_record_consent)
