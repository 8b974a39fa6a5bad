"""Geometry rules that decide when a document counts as viewed."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class ContainerGeometry:
    """Vertical extent of a document container relative to the viewport top."""

    top: float
    bottom: float

    @property
    def height(self) -> float:
        return max(0.0, self.bottom - self.top)


@dataclass(frozen=True, slots=True)
class ViewportGeometry:
    height: float
    scroll_y: float = 0.0
    document_height: float = 0.0


@dataclass(frozen=True, slots=True)
class VisibilityPolicy:
    min_visible_ratio: float = 0.5
    page_bottom_threshold_px: float = 100.0
    scrolled_past_factor: float = 1.2


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        logging.warning("Invalid %s=%s, using %s", name, raw, default)
        return default
    if value < 0:
        logging.warning("Negative %s=%s, using %s", name, raw, default)
        return default
    return value


def load_visibility_policy() -> VisibilityPolicy:
    defaults = VisibilityPolicy()
    return VisibilityPolicy(
        min_visible_ratio=_env_float("VIEWER_MIN_VISIBLE_RATIO", defaults.min_visible_ratio),
        page_bottom_threshold_px=_env_float(
            "VIEWER_PAGE_BOTTOM_THRESHOLD_PX", defaults.page_bottom_threshold_px
        ),
        scrolled_past_factor=_env_float(
            "VIEWER_SCROLLED_PAST_FACTOR", defaults.scrolled_past_factor
        ),
    )


def visible_ratio(container: ContainerGeometry, viewport: ViewportGeometry) -> float:
    """Return the share of the container height inside the viewport."""

    if container.height <= 0:
        return 0.0
    visible = min(container.bottom, viewport.height) - max(container.top, 0.0)
    return max(0.0, visible) / container.height


def reached_page_bottom(viewport: ViewportGeometry, policy: VisibilityPolicy) -> bool:
    return (
        viewport.scroll_y + viewport.height
        >= viewport.document_height - policy.page_bottom_threshold_px
    )


def compute_viewed(
    container: ContainerGeometry,
    viewport: ViewportGeometry,
    *,
    rendered: bool = False,
    policy: VisibilityPolicy | None = None,
) -> bool:
    """Return whether the container satisfies any automatic completion rule.

    A document is viewed once its content is fully rendered and the page is
    scrolled to the bottom, once enough of its container intersects the
    viewport, or once the container's bottom edge has come close to (or
    already passed) the bottom of the viewport.
    """

    policy = policy or VisibilityPolicy()
    if rendered and reached_page_bottom(viewport, policy):
        return True
    # Containers without layout yet carry no signal.
    if container.height <= 0:
        return False
    if visible_ratio(container, viewport) >= policy.min_visible_ratio:
        return True
    return container.bottom <= viewport.height * policy.scrolled_past_factor
