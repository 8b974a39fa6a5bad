"""Per-viewer review state and the consent gate."""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .models import Catalog, Group, isoformat_utc
from .visibility import (
    ContainerGeometry,
    ViewportGeometry,
    VisibilityPolicy,
    compute_viewed,
)

NEXT_GROUP_LABEL = "Consent & Go to Next Group"
SIGN_LABEL = "Sign"
SIGNED_LABEL = "Signed"

STATUS_NOT_VIEWED = "Not Viewed"
STATUS_READY = "Ready"
STATUS_VIEWED = "Viewed"

logger = logging.getLogger(__name__)


class ViewerError(Exception):
    """Raised when an operation does not apply to the current session state."""


class ConsentGateClosed(ViewerError):
    """Raised when advancing while the active group still has unviewed files."""


class Phase(enum.Enum):
    LOADING = "loading"
    DISPLAYING = "displaying"
    SIGNED = "signed"


@dataclass(frozen=True, slots=True)
class ControlState:
    label: str
    enabled: bool
    signing: bool = False


@dataclass(frozen=True, slots=True)
class ConsentEvent:
    consent_type: str
    group_name: str
    timestamp: datetime
    files: tuple[str, ...]
    group_index: int | None = None
    groups: tuple[int, ...] = ()

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "consentType": self.consent_type,
            "groupName": self.group_name,
            "timestamp": isoformat_utc(self.timestamp),
            "files": list(self.files),
        }
        if self.consent_type == "group":
            payload["groupIndex"] = self.group_index
        else:
            payload["consented"] = True
            payload["groups"] = list(self.groups)
        return payload


def _utcnow() -> datetime:
    return datetime.now(UTC)


ConsentSink = Callable[[ConsentEvent], Any]


@dataclass
class ViewerSession:
    """Review state for one viewer instance.

    ``viewed_files`` only ever grows. ``viewed_groups`` is derived from it on
    every access so the two can never disagree.
    """

    consent_sink: ConsentSink | None = None
    policy: VisibilityPolicy = field(default_factory=VisibilityPolicy)
    clock: Callable[[], datetime] = _utcnow
    catalog: Catalog | None = field(default=None, init=False)
    current_group_index: int = field(default=-1, init=False)
    phase: Phase = field(default=Phase.LOADING, init=False)
    _viewed: dict[str, None] = field(default_factory=dict, init=False, repr=False)
    _ready: set[str] = field(default_factory=set, init=False, repr=False)
    _rendered: set[str] = field(default_factory=set, init=False, repr=False)
    _errors: dict[str, str] = field(default_factory=dict, init=False, repr=False)

    def load(self, catalog: Catalog) -> None:
        if self.phase is not Phase.LOADING:
            raise ViewerError("catalog already loaded")
        if len(catalog) == 0:
            raise ViewerError("catalog has no groups")
        self.catalog = catalog
        self.phase = Phase.DISPLAYING
        self.current_group_index = 0
        logger.info("VIEWER catalog loaded groups=%s", len(catalog))

    @property
    def viewed_files(self) -> tuple[str, ...]:
        return tuple(self._viewed)

    @property
    def viewed_groups(self) -> frozenset[int]:
        if self.catalog is None:
            return frozenset()
        return frozenset(
            index
            for index in range(len(self.catalog))
            if self.is_group_fully_viewed(index)
        )

    @property
    def current_group(self) -> Group:
        self._require_catalog()
        return self.catalog[self.current_group_index]  # type: ignore[index]

    @property
    def is_last_group(self) -> bool:
        return self.catalog is not None and self.current_group_index == self.catalog.last_index

    @property
    def can_go_back(self) -> bool:
        return self.phase is Phase.DISPLAYING and self.current_group_index > 0

    @property
    def progress(self) -> str:
        total = len(self.catalog) if self.catalog is not None else 0
        return f"{len(self.viewed_groups)} of {total} groups completed"

    def is_group_fully_viewed(self, index: int | None = None) -> bool:
        if self.catalog is None:
            return False
        if index is None:
            index = self.current_group_index
        if not 0 <= index < len(self.catalog):
            return False
        return all(file_id in self._viewed for file_id in self.catalog[index].file_ids)

    def is_file_viewed(self, file_id: str) -> bool:
        return file_id in self._viewed

    def mark_file_viewed(self, file_id: str) -> bool:
        """Record ``file_id`` as viewed; return ``True`` if it was new."""

        self._require_known(file_id)
        if file_id in self._viewed:
            return False
        self._viewed[file_id] = None
        logger.info("VIEWER file viewed id=%s group=%s", file_id, self.current_group_index)
        if self.is_group_fully_viewed():
            logger.info("VIEWER group complete index=%s", self.current_group_index)
        return True

    def mark_files_viewed(self, file_ids: Iterable[str]) -> list[str]:
        return [file_id for file_id in file_ids if self.mark_file_viewed(file_id)]

    def report_visibility(
        self,
        file_id: str,
        container: ContainerGeometry,
        viewport: ViewportGeometry,
    ) -> bool:
        """Evaluate the completion rules for one file; return its viewed state."""

        self._require_known(file_id)
        if file_id in self._viewed:
            return True
        rendered = file_id in self._rendered
        if compute_viewed(container, viewport, rendered=rendered, policy=self.policy):
            self.mark_file_viewed(file_id)
            return True
        return False

    def override_current_group(self) -> list[str]:
        """Force every file of the active group into the viewed set."""

        if self.phase is not Phase.DISPLAYING:
            raise ViewerError("no group is displayed")
        marked = self.mark_files_viewed(self.current_group.file_ids)
        logger.info(
            "VIEWER manual override group=%s marked=%s",
            self.current_group_index,
            len(marked),
        )
        return marked

    def mark_ready(self, file_id: str) -> None:
        self._require_known(file_id)
        self._ready.add(file_id)
        self._errors.pop(file_id, None)

    def mark_rendered(self, file_id: str) -> None:
        self._require_known(file_id)
        self._rendered.add(file_id)

    def mark_failed(self, file_id: str, reason: str) -> None:
        self._require_known(file_id)
        self._errors[file_id] = reason

    def file_error(self, file_id: str) -> str | None:
        return self._errors.get(file_id)

    def file_status(self, file_id: str) -> str:
        if file_id in self._viewed:
            return STATUS_VIEWED
        error = self._errors.get(file_id)
        if error is not None:
            return f"Failed to load PDF: {error}"
        if file_id in self._ready:
            return STATUS_READY
        return STATUS_NOT_VIEWED

    @property
    def control(self) -> ControlState:
        if self.phase is Phase.SIGNED:
            return ControlState(label=SIGNED_LABEL, enabled=False)
        if self.phase is Phase.LOADING:
            return ControlState(label="Loading documents", enabled=False)
        group = self.current_group
        if not self.is_group_fully_viewed():
            viewed = sum(1 for file_id in group.file_ids if file_id in self._viewed)
            action = "sign" if self.is_last_group else "continue"
            return ControlState(
                label=f"View all documents to {action} ({viewed} of {len(group.files)} viewed)",
                enabled=False,
                signing=self.is_last_group,
            )
        if self.is_last_group:
            return ControlState(label=SIGN_LABEL, enabled=True, signing=True)
        return ControlState(label=NEXT_GROUP_LABEL, enabled=True)

    def advance(self) -> ConsentEvent:
        """Consent to the active group and move on, or sign on the last group."""

        if self.phase is not Phase.DISPLAYING:
            raise ViewerError(f"cannot advance while {self.phase.value}")
        if not self.is_group_fully_viewed():
            raise ConsentGateClosed(
                f"group {self.current_group_index} has unviewed documents"
            )
        group = self.current_group
        if self.is_last_group:
            event = ConsentEvent(
                consent_type="final",
                group_name="All Groups",
                timestamp=self.clock(),
                files=self.viewed_files,
                groups=tuple(sorted(self.viewed_groups)),
            )
            self.phase = Phase.SIGNED
            logger.info("VIEWER final consent signed groups=%s", len(event.groups))
        else:
            event = ConsentEvent(
                consent_type="group",
                group_name=group.name,
                group_index=self.current_group_index,
                timestamp=self.clock(),
                files=self.viewed_files,
            )
            logger.info("VIEWER group consent index=%s", self.current_group_index)
            self.current_group_index += 1
        self._emit(event)
        return event

    def go_back(self) -> bool:
        if not self.can_go_back:
            return False
        self.current_group_index -= 1
        return True

    def _emit(self, event: ConsentEvent) -> None:
        if self.consent_sink is None:
            return
        try:
            self.consent_sink(event)
        except Exception:
            logger.exception("VIEWER consent sink failed type=%s", event.consent_type)

    def _require_catalog(self) -> None:
        if self.catalog is None:
            raise ViewerError("catalog not loaded")

    def _require_known(self, file_id: str) -> None:
        self._require_catalog()
        if file_id not in self.catalog.all_file_ids():  # type: ignore[union-attr]
            raise ViewerError(f"unknown document id {file_id!r}")
