from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from viewer.models import Catalog, Document, Group

DEFAULT_GROUPS: dict[str, tuple[str, ...]] = {
    "Group 1": ("1.pdf", "2.pdf"),
    "Group 2": ("3.pdf", "4.pdf"),
    "Group 3": ("5.pdf",),
}


class CatalogConfigError(ValueError):
    """Raised when the group configuration cannot be parsed."""


@dataclass(frozen=True, slots=True)
class GroupSpec:
    name: str
    files: tuple[str, ...]


def default_group_specs() -> tuple[GroupSpec, ...]:
    return tuple(GroupSpec(name, files) for name, files in DEFAULT_GROUPS.items())


def _spec_from_pair(name: Any, files: Any) -> GroupSpec:
    if not isinstance(name, str) or not name.strip():
        raise CatalogConfigError("group name must be a non-empty string")
    if not isinstance(files, list) or not all(isinstance(item, str) for item in files):
        raise CatalogConfigError(f"group {name!r} must list file names")
    return GroupSpec(name=name, files=tuple(files))


def parse_group_specs(raw: Any) -> tuple[GroupSpec, ...]:
    """Parse a group configuration document.

    Accepts either ``{"Group 1": ["1.pdf", ...], ...}`` or
    ``[{"name": "Group 1", "files": ["1.pdf", ...]}, ...]``.
    """

    if isinstance(raw, Mapping):
        return tuple(_spec_from_pair(name, files) for name, files in raw.items())
    if isinstance(raw, list):
        specs = []
        for entry in raw:
            if not isinstance(entry, Mapping):
                raise CatalogConfigError("group entries must be objects")
            specs.append(_spec_from_pair(entry.get("name"), entry.get("files")))
        return tuple(specs)
    raise CatalogConfigError("group configuration must be an object or a list")


def load_group_specs(
    *, groups_json: str | None = None, groups_file: Path | None = None
) -> tuple[GroupSpec, ...]:
    if groups_json is not None:
        source = "PDF_GROUPS"
        text = groups_json
    elif groups_file is not None:
        source = str(groups_file)
        try:
            text = groups_file.read_text(encoding="utf-8")
        except OSError as exc:
            raise CatalogConfigError(f"cannot read {groups_file}: {exc}") from exc
    else:
        return default_group_specs()
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise CatalogConfigError(f"{source} is not valid JSON: {exc}") from exc
    specs = parse_group_specs(raw)
    if not specs:
        logging.warning("CATALOG %s configures no groups, serving an empty catalog", source)
    logging.info("CATALOG loaded %s groups from %s", len(specs), source)
    return specs


def build_catalog(specs: Iterable[GroupSpec], available: set[str]) -> Catalog:
    """Resolve configured groups against the files present on disk.

    Missing files are dropped; groups keep their configured order even when
    they end up empty.
    """

    groups = []
    for spec in specs:
        documents = tuple(
            Document.from_filename(name) for name in spec.files if name in available
        )
        missing = [name for name in spec.files if name not in available]
        if missing:
            logging.warning("CATALOG group=%s missing files=%s", spec.name, ",".join(missing))
        groups.append(Group(name=spec.name, files=documents))
    return Catalog.from_groups(groups)


__all__ = [
    "CatalogConfigError",
    "DEFAULT_GROUPS",
    "GroupSpec",
    "build_catalog",
    "default_group_specs",
    "load_group_specs",
    "parse_group_specs",
]
