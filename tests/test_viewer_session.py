from __future__ import annotations

import sys
from datetime import UTC, datetime
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
import pytest

from viewer import (
    Catalog,
    ConsentGateClosed,
    ContainerGeometry,
    Document,
    Group,
    Phase,
    ViewerError,
    ViewerSession,
    ViewportGeometry,
)
FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def _doc(doc_id: str) -> Document:
    return Document(id=doc_id, name=f"{doc_id}.pdf", url=f"/api/pdf/{doc_id}.pdf")


def _catalog(*groups: tuple[str, list[str]]) -> Catalog:
    return Catalog.from_groups(
        Group(name=name, files=tuple(_doc(doc_id) for doc_id in ids)) for name, ids in groups
    )


def _session(catalog: Catalog) -> tuple[ViewerSession, list]:
    events: list = []
    session = ViewerSession(consent_sink=events.append, clock=lambda: FIXED_NOW)
    session.load(catalog)
    return session, events


def test_two_group_review_ends_with_final_consent() -> None:
    session, events = _session(_catalog(("A", ["docX", "docY"]), ("B", ["docZ"])))
    assert session.phase is Phase.DISPLAYING
    assert session.current_group_index == 0

    session.mark_file_viewed("docX")
    assert not session.control.enabled
    session.mark_file_viewed("docY")
    assert session.control.enabled
    assert session.control.label == "Consent & Go to Next Group"

    group_event = session.advance()
    assert group_event.to_payload() == {
        "consentType": "group",
        "groupName": "A",
        "groupIndex": 0,
        "timestamp": "2024-05-01T12:00:00.000Z",
        "files": ["docX", "docY"],
    }
    assert session.current_group_index == 1
    assert session.current_group.name == "B"

    session.mark_file_viewed("docZ")
    control = session.control
    assert control.enabled and control.signing
    assert control.label == "Sign"

    final_event = session.advance()
    payload = final_event.to_payload()
    assert payload["consentType"] == "final"
    assert payload["consented"] is True
    assert payload["groupName"] == "All Groups"
    assert payload["files"] == ["docX", "docY", "docZ"]
    assert payload["groups"] == [0, 1]
    assert session.phase is Phase.SIGNED
    assert session.control.label == "Signed"
    assert not session.control.enabled
    assert events == [group_event, final_event]


def test_advance_blocked_until_group_fully_viewed() -> None:
    session, events = _session(_catalog(("A", ["a1", "a2"]), ("B", ["b1"])))
    session.mark_file_viewed("a1")

    control = session.control
    assert not control.enabled
    assert control.label == "View all documents to continue (1 of 2 viewed)"
    with pytest.raises(ConsentGateClosed):
        session.advance()
    assert session.current_group_index == 0
    assert events == []


def test_signing_blocked_on_last_group_until_viewed() -> None:
    session, _ = _session(_catalog(("Only", ["x", "y"])))
    assert session.control.label == "View all documents to sign (0 of 2 viewed)"
    assert session.control.signing
    with pytest.raises(ConsentGateClosed):
        session.advance()
    assert session.phase is Phase.DISPLAYING


def test_manual_override_marks_whole_group() -> None:
    session, _ = _session(_catalog(("A", ["a1", "a2", "a3"]), ("B", ["b1"])))
    assert [session.file_status(i) for i in ("a1", "a2", "a3")] == ["Not Viewed"] * 3

    marked = session.override_current_group()

    assert marked == ["a1", "a2", "a3"]
    assert [session.file_status(i) for i in ("a1", "a2", "a3")] == ["Viewed"] * 3
    assert session.control.enabled
    assert session.override_current_group() == []


def test_group_membership_follows_viewed_files() -> None:
    session, _ = _session(_catalog(("A", ["a1", "a2"]), ("B", ["b1"]), ("C", [])))
    assert session.viewed_groups == frozenset({2})

    session.mark_file_viewed("b1")
    assert session.viewed_groups == frozenset({1, 2})
    assert not session.is_group_fully_viewed(0)

    session.mark_files_viewed(["a1", "a2"])
    for index in range(3):
        expected = all(session.is_file_viewed(i) for i in session.catalog[index].file_ids)
        assert session.is_group_fully_viewed(index) == expected
    assert session.progress == "3 of 3 groups completed"


def test_going_back_keeps_viewed_state() -> None:
    session, _ = _session(_catalog(("A", ["a1"]), ("B", ["b1", "b2"])))
    assert not session.go_back()

    session.mark_file_viewed("a1")
    session.advance()
    session.mark_file_viewed("b1")
    before_files = session.viewed_files
    before_groups = session.viewed_groups

    assert session.can_go_back
    assert session.go_back()
    assert session.current_group_index == 0
    assert session.viewed_files == before_files
    assert session.viewed_groups == before_groups
    assert session.control.enabled


def test_going_back_is_allowed_from_unviewed_group() -> None:
    session, _ = _session(_catalog(("A", ["a1"]), ("B", ["b1"])))
    session.override_current_group()
    session.advance()
    assert not session.is_group_fully_viewed()
    assert session.go_back()


def test_viewed_files_never_shrink() -> None:
    session, _ = _session(_catalog(("A", ["a1", "a2"]), ("B", ["b1"])))
    history = [session.viewed_files]
    session.mark_file_viewed("a2")
    history.append(session.viewed_files)
    session.mark_file_viewed("a2")
    history.append(session.viewed_files)
    session.override_current_group()
    history.append(session.viewed_files)
    session.advance()
    session.go_back()
    history.append(session.viewed_files)

    for earlier, later in zip(history, history[1:]):
        assert set(earlier) <= set(later)
    assert session.viewed_files == ("a2", "a1")


def test_visibility_reports_mark_files() -> None:
    session, _ = _session(_catalog(("A", ["a1", "a2"])))
    viewport = ViewportGeometry(height=800, scroll_y=0, document_height=4000)

    assert not session.report_visibility("a1", ContainerGeometry(top=900, bottom=2900), viewport)
    assert session.report_visibility("a1", ContainerGeometry(top=0, bottom=700), viewport)
    assert session.is_file_viewed("a1")
    # Once viewed, later geometry never reverts it.
    assert session.report_visibility("a1", ContainerGeometry(top=5000, bottom=6000), viewport)


def test_rendered_file_viewed_at_page_bottom() -> None:
    session, _ = _session(_catalog(("A", ["a1"])))
    container = ContainerGeometry(top=-3000, bottom=4000)
    bottom = ViewportGeometry(height=800, scroll_y=3150, document_height=4000)

    assert not session.report_visibility("a1", container, bottom)
    session.mark_rendered("a1")
    assert session.report_visibility("a1", container, bottom)


def test_file_status_reports_ready_and_failures() -> None:
    session, _ = _session(_catalog(("A", ["a1", "a2"])))
    session.mark_ready("a1")
    session.mark_failed("a2", "Invalid PDF structure")
    assert session.file_status("a1") == "Ready"
    assert session.file_status("a2") == "Failed to load PDF: Invalid PDF structure"
    assert session.file_error("a2") == "Invalid PDF structure"


def test_unknown_ids_and_bad_states_raise() -> None:
    session = ViewerSession()
    assert session.control.label == "Loading documents"
    with pytest.raises(ViewerError):
        session.mark_file_viewed("a1")
    with pytest.raises(ViewerError):
        session.advance()
    with pytest.raises(ViewerError):
        session.load(Catalog.from_groups([]))
    assert session.phase is Phase.LOADING

    session.load(_catalog(("A", ["a1"])))
    with pytest.raises(ViewerError):
        session.mark_file_viewed("nope")
    with pytest.raises(ViewerError):
        session.load(_catalog(("B", ["b1"])))


def test_sink_failure_does_not_block_transition() -> None:
    def broken_sink(event):
        raise RuntimeError("network down")

    session = ViewerSession(consent_sink=broken_sink)
    session.load(_catalog(("A", ["a1"]), ("B", ["b1"])))
    session.mark_file_viewed("a1")
    session.advance()
    assert session.current_group_index == 1


def test_sessions_are_independent() -> None:
    catalog = _catalog(("A", ["a1"]))
    first, _ = _session(catalog)
    second, _ = _session(catalog)
    first.mark_file_viewed("a1")
    assert first.is_group_fully_viewed()
    assert not second.is_group_fully_viewed()
