from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from app.schemas.call_intake import CallProvider, CandidateCall, MatchType
from app.services.call_record_store import (
    CallRecordFilter,
    CallRecordStore,
    InMemoryCallRecordStore,
    build_call_record_document,
)
from app.services.duplicate_call_matcher import (
    CompositeMatchStrategy,
    DuplicateCallMatcher,
    DuplicateMatch,
    ExternalIdMatchStrategy,
    MatchStrategy,
)

MEETING_START = datetime(2026, 3, 2, 15, 0, tzinfo=UTC)


def _candidate(**overrides: Any) -> CandidateCall:
    values: dict[str, Any] = {
        "organization_id": "org-a",
        "source": CallProvider.fireflies,
        "sales_rep_id": "rep-1",
        "scheduled_start_time": MEETING_START,
        "external_ids": {"fireflies": "ff-1"},
        "title": "Discovery call - Acme",
        "participant_emails": ["buyer@customer.io"],
        "participant_names": ["Bea Buyer"],
        "sales_rep_email": "rep@acme.com",
    }
    values.update(overrides)
    return CandidateCall(**values)


def _store_with(*candidates: CandidateCall) -> InMemoryCallRecordStore:
    store = InMemoryCallRecordStore()
    for candidate in candidates:
        store.insert_one(build_call_record_document(candidate))
    return store


def _matcher(store: CallRecordStore) -> DuplicateCallMatcher:
    return DuplicateCallMatcher(
        [
            ExternalIdMatchStrategy(store),
            CompositeMatchStrategy(store, tolerance=timedelta(minutes=5)),
        ],
    )


def test_same_external_id_for_same_rep_is_duplicate() -> None:
    store = _store_with(_candidate())

    result = _matcher(store).check_for_duplicate(_candidate(title="Renamed later"))

    assert result.is_duplicate is True
    assert result.match_type == MatchType.external_id
    assert result.existing_call_id == "memory-1"
    assert "memory-1" in result.message
    assert "fireflies id ff-1" in result.message


def test_same_external_id_for_different_rep_is_not_duplicate() -> None:
    store = _store_with(_candidate())

    result = _matcher(store).check_for_duplicate(_candidate(sales_rep_id="rep-2"))

    assert result.is_duplicate is False
    assert result.match_type == MatchType.none


def test_same_external_id_in_other_organization_is_not_duplicate() -> None:
    store = _store_with(_candidate())

    result = _matcher(store).check_for_duplicate(_candidate(organization_id="org-b"))

    assert result.is_duplicate is False


def test_composite_match_on_title_within_tolerance() -> None:
    store = _store_with(_candidate(external_ids={}))

    result = _matcher(store).check_for_duplicate(
        _candidate(
            external_ids={},
            scheduled_start_time=MEETING_START + timedelta(minutes=3),
            title="  discovery   CALL - acme ",
            participant_emails=[],
            participant_names=[],
        ),
    )

    assert result.is_duplicate is True
    assert result.match_type == MatchType.composite
    assert result.existing_call_id == "memory-1"
    assert "composite" in result.message


def test_composite_match_on_shared_participant_when_titles_differ() -> None:
    store = _store_with(_candidate(external_ids={}, title="Acme intro"))

    result = _matcher(store).check_for_duplicate(
        _candidate(
            external_ids={"zoom": "98765"},
            source=CallProvider.zoom,
            title="Zoom Meeting",
            participant_emails=["BUYER@customer.io"],
            participant_names=[],
            scheduled_start_time=MEETING_START - timedelta(minutes=2),
        ),
    )

    assert result.is_duplicate is True
    assert result.match_type == MatchType.composite
    assert "shared participant" in result.message


def test_different_ids_from_same_provider_are_not_composite_duplicates() -> None:
    store = _store_with(_candidate(external_ids={"fireflies": "ff-1"}))

    result = _matcher(store).check_for_duplicate(
        _candidate(
            external_ids={"fireflies": "ff-2"},
            scheduled_start_time=MEETING_START + timedelta(minutes=1),
        ),
    )

    assert result.is_duplicate is False


def test_rep_own_email_is_not_a_shared_participant() -> None:
    store = _store_with(
        _candidate(
            external_ids={},
            title="Pipeline review",
            participant_emails=["rep@acme.com", "buyer@customer.io"],
            participant_names=[],
        ),
    )

    result = _matcher(store).check_for_duplicate(
        _candidate(
            external_ids={},
            title="Another prospect",
            participant_emails=["rep@acme.com", "someone.else@prospect.com"],
            participant_names=[],
            scheduled_start_time=MEETING_START + timedelta(minutes=4),
        ),
    )

    assert result.is_duplicate is False


def test_start_time_outside_tolerance_is_not_duplicate() -> None:
    store = _store_with(_candidate(external_ids={}))

    result = _matcher(store).check_for_duplicate(
        _candidate(
            external_ids={},
            scheduled_start_time=MEETING_START + timedelta(minutes=5, seconds=1),
        ),
    )

    assert result.is_duplicate is False


def test_tolerance_boundary_is_inclusive() -> None:
    store = _store_with(_candidate(external_ids={}))

    result = _matcher(store).check_for_duplicate(
        _candidate(external_ids={}, scheduled_start_time=MEETING_START - timedelta(minutes=5)),
    )

    assert result.is_duplicate is True


def test_composite_requires_title_or_participant_signal() -> None:
    store = _store_with(_candidate(external_ids={}, title=None, participant_emails=[], participant_names=[]))

    result = _matcher(store).check_for_duplicate(
        _candidate(external_ids={}, title=None, participant_emails=[], participant_names=[]),
    )

    assert result.is_duplicate is False


def test_min_shared_participants_is_configurable() -> None:
    store = _store_with(
        _candidate(
            external_ids={},
            title="Intro",
            participant_emails=["a@customer.io", "b@customer.io"],
            participant_names=[],
        ),
    )
    strict_matcher = DuplicateCallMatcher(
        [CompositeMatchStrategy(store, min_shared_participants=2)],
    )

    single_overlap = strict_matcher.check_for_duplicate(
        _candidate(external_ids={}, title="Other", participant_emails=["a@customer.io"], participant_names=[]),
    )
    double_overlap = strict_matcher.check_for_duplicate(
        _candidate(
            external_ids={},
            title="Other",
            participant_emails=["a@customer.io", "b@customer.io"],
            participant_names=[],
        ),
    )

    assert single_overlap.is_duplicate is False
    assert double_overlap.is_duplicate is True


def test_external_id_strategy_short_circuits_composite() -> None:
    store = _store_with(
        _candidate(external_ids={}, title="Discovery call - Acme"),
        _candidate(external_ids={"fireflies": "ff-1"}, title="Different", scheduled_start_time=MEETING_START + timedelta(hours=2)),
    )

    result = _matcher(store).check_for_duplicate(_candidate())

    assert result.match_type == MatchType.external_id
    assert result.existing_call_id == "memory-2"


def test_custom_strategies_run_in_order() -> None:
    calls: list[str] = []

    class RecordingStrategy(MatchStrategy):
        match_type = MatchType.composite

        def __init__(self, name: str, matched: bool) -> None:
            self.name = name
            self.matched = matched

        def attempt_match(self, candidate: CandidateCall) -> DuplicateMatch | None:
            calls.append(self.name)
            if not self.matched:
                return None
            return DuplicateMatch(match_type=self.match_type, record={"_id": "rec-9"}, reason=self.name)

    matcher = DuplicateCallMatcher(
        [
            RecordingStrategy("first", matched=False),
            RecordingStrategy("second", matched=True),
            RecordingStrategy("third", matched=True),
        ],
    )

    result = matcher.check_for_duplicate(_candidate())

    assert calls == ["first", "second"]
    assert result.existing_call_id == "rec-9"


def test_unresolved_candidate_is_rejected() -> None:
    with pytest.raises(ValueError):
        _matcher(InMemoryCallRecordStore()).check_for_duplicate(_candidate(sales_rep_id=None))


def test_storage_errors_propagate() -> None:
    class BrokenStore(InMemoryCallRecordStore):
        def find_one(
            self,
            organization_id: str,
            sales_rep_id: str,
            record_filter: CallRecordFilter,
        ) -> dict[str, Any] | None:
            raise RuntimeError("storage offline")

    with pytest.raises(RuntimeError, match="storage offline"):
        _matcher(BrokenStore()).check_for_duplicate(_candidate())
