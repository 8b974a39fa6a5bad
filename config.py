from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip()
    return value or default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logging.warning("Invalid %s=%s, defaulting to %s", name, raw, default)
        return default


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(slots=True)
class AppConfig:
    port: int = 3000
    pdf_dir: Path = Path("pdfs")
    consent_log_dir: Path = Path("consent_logs")
    static_dir: Path = Path("public")
    groups_json: str | None = None
    groups_file: Path | None = None
    cors_allow_origins: tuple[str, ...] = ("*",)


def load_config() -> AppConfig:
    port = _env_int("PORT", 3000)
    if not 0 < port < 65536:
        logging.warning("Invalid PORT=%s, defaulting to 3000", port)
        port = 3000

    groups_file_raw = os.getenv("PDF_GROUPS_FILE")
    groups_file = Path(groups_file_raw.strip()) if groups_file_raw and groups_file_raw.strip() else None
    groups_json = os.getenv("PDF_GROUPS")
    if groups_json is not None and not groups_json.strip():
        groups_json = None

    return AppConfig(
        port=port,
        pdf_dir=Path(_env_str("PDF_DIR", "pdfs")),
        consent_log_dir=Path(_env_str("CONSENT_LOG_DIR", "consent_logs")),
        static_dir=Path(_env_str("STATIC_DIR", "public")),
        groups_json=groups_json,
        groups_file=groups_file,
        cors_allow_origins=_env_list("CORS_ALLOW_ORIGINS", ("*",)),
    )


__all__ = ["AppConfig", "load_config"]
