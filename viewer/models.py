"""Data structures that describe the document catalogue."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import quote


DOCUMENT_URL_PREFIX = "/api/pdf/"
LEGACY_GROUP_NAME = "All PDFs"


class CatalogShapeError(ValueError):
    """Raised when a catalogue payload does not have the expected structure."""


def isoformat_utc(dt: datetime) -> str:
    """Format ``dt`` as ISO-8601 UTC with millisecond precision and a ``Z`` suffix."""

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def document_id(filename: str) -> str:
    """Return the stable document identifier for ``filename``."""

    path = PurePosixPath(filename)
    if path.suffix.lower() == ".pdf":
        return path.name[: -len(path.suffix)]
    return path.name


@dataclass(frozen=True, slots=True)
class Document:
    """A single reviewable file."""

    id: str
    name: str
    url: str

    @classmethod
    def from_filename(cls, filename: str, *, url_prefix: str = DOCUMENT_URL_PREFIX) -> Document:
        return cls(
            id=document_id(filename),
            name=filename,
            url=f"{url_prefix}{quote(filename)}",
        )

    @classmethod
    def from_payload(cls, payload: Any) -> Document:
        if not isinstance(payload, Mapping):
            raise CatalogShapeError("document entry must be an object")
        values = {}
        for key in ("id", "name", "url"):
            value = payload.get(key)
            if not isinstance(value, str) or not value:
                raise CatalogShapeError(f"document entry is missing {key!r}")
            values[key] = value
        return cls(**values)

    def to_payload(self) -> dict[str, str]:
        return {"id": self.id, "name": self.name, "url": self.url}


@dataclass(frozen=True, slots=True)
class Group:
    """An ordered set of documents reviewed together."""

    name: str
    files: tuple[Document, ...]

    @property
    def file_ids(self) -> tuple[str, ...]:
        return tuple(document.id for document in self.files)

    def find(self, file_id: str) -> Document | None:
        for document in self.files:
            if document.id == file_id:
                return document
        return None

    @classmethod
    def from_payload(cls, payload: Any) -> Group:
        if not isinstance(payload, Mapping):
            raise CatalogShapeError("group entry must be an object")
        name = payload.get("name")
        files = payload.get("files")
        if not isinstance(name, str):
            raise CatalogShapeError("group entry is missing 'name'")
        if not isinstance(files, list):
            raise CatalogShapeError(f"group {name!r} is missing 'files'")
        return cls(name=name, files=tuple(Document.from_payload(item) for item in files))

    def to_payload(self) -> dict[str, Any]:
        return {"name": self.name, "files": [document.to_payload() for document in self.files]}


@dataclass(frozen=True, slots=True)
class Catalog:
    """Ordered review sequence returned by ``GET /api/pdfs``."""

    groups: tuple[Group, ...]

    def __len__(self) -> int:
        return len(self.groups)

    def __getitem__(self, index: int) -> Group:
        return self.groups[index]

    @property
    def last_index(self) -> int:
        return len(self.groups) - 1

    def all_file_ids(self) -> set[str]:
        return {document.id for group in self.groups for document in group.files}

    @classmethod
    def from_groups(cls, groups: Iterable[Group]) -> Catalog:
        return cls(groups=tuple(groups))

    @classmethod
    def from_payload(cls, payload: Any) -> Catalog:
        """Parse a catalogue response.

        Both the grouped form ``{"groups": [...]}`` and the legacy flat form
        ``{"files": [...]}`` are accepted; the latter becomes a single group.
        """

        if not isinstance(payload, Mapping):
            raise CatalogShapeError("catalog response must be an object")
        groups = payload.get("groups")
        if groups is not None:
            if not isinstance(groups, Sequence) or isinstance(groups, str):
                raise CatalogShapeError("'groups' must be a list")
            return cls.from_groups(Group.from_payload(item) for item in groups)
        files = payload.get("files")
        if files is not None:
            return cls.from_groups(
                [Group.from_payload({"name": LEGACY_GROUP_NAME, "files": files})]
            )
        raise CatalogShapeError("No PDF files or groups found in server response")

    def to_payload(self) -> dict[str, Any]:
        return {"groups": [group.to_payload() for group in self.groups]}
