from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

PDF_SUFFIX = ".pdf"


class StorageDirectoryMissing(FileNotFoundError):
    """Raised when the backing document directory does not exist."""


class DocumentStorage(Protocol):
    def exists(self) -> bool: ...

    def list_documents(self) -> set[str]: ...

    def resolve(self, filename: str) -> Path | None: ...


class ConsentLog(Protocol):
    def append(self, record: dict[str, Any], *, timestamp: str) -> str: ...


class LocalDocumentStorage:
    def __init__(self, base_path: Path | str) -> None:
        self._base = Path(base_path).resolve()

    @property
    def path(self) -> Path:
        return self._base

    def ensure(self) -> None:
        if not self._base.exists():
            logging.info("STORAGE creating pdfs directory path=%s", self._base)
            self._base.mkdir(parents=True, exist_ok=True)

    def exists(self) -> bool:
        return self._base.is_dir()

    def list_documents(self) -> set[str]:
        if not self.exists():
            raise StorageDirectoryMissing(str(self._base))
        names = {
            entry.name
            for entry in self._base.iterdir()
            if entry.is_file() and entry.name.endswith(PDF_SUFFIX)
        }
        logging.debug("STORAGE found %s documents in %s", len(names), self._base)
        return names

    def resolve(self, filename: str) -> Path | None:
        """Return the on-disk path for ``filename`` or ``None`` if unavailable."""

        if not filename or not filename.endswith(PDF_SUFFIX):
            return None
        candidate = (self._base / filename).resolve()
        if candidate.parent != self._base:
            logging.warning("STORAGE rejected path outside base name=%s", filename)
            return None
        if not candidate.is_file():
            return None
        return candidate


class LocalConsentLog:
    """Writes each consent record to its own JSON file."""

    def __init__(self, base_path: Path | str) -> None:
        self._base = Path(base_path).resolve()

    @property
    def path(self) -> Path:
        return self._base

    def writable(self) -> bool:
        if self._base.exists():
            return self._base.is_dir() and os.access(self._base, os.W_OK)
        parent = self._base.parent
        while not parent.exists() and parent != parent.parent:
            parent = parent.parent
        return os.access(parent, os.W_OK)

    def append(self, record: dict[str, Any], *, timestamp: str) -> str:
        self._base.mkdir(parents=True, exist_ok=True)
        stamp = timestamp.replace(":", "-").replace(".", "-")
        name = f"consent_{stamp}_{uuid4().hex[:8]}.json"
        destination = self._base / name
        with destination.open("x", encoding="utf-8") as handle:
            json.dump(record, handle, indent=2, ensure_ascii=False)
        logging.info("CONSENT stored file=%s", name)
        return name

