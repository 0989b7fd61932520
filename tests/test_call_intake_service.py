import logging
import threading
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from app.core.config import Settings
from app.schemas.call_intake import (
    CallProvider,
    CandidateCall,
    IntakeAction,
    MatchType,
    ResolvedBy,
)
from app.services.call_event_publisher import (
    CallEventPublisher,
    CallEventPublishError,
    InMemoryCallEventPublisher,
)
from app.services.call_intake_service import CallIntakeService
from app.services.call_record_store import CallRecordFilter, InMemoryCallRecordStore
from app.services.sales_rep_resolver import SalesRepResolutionError
from app.services.user_store import InMemoryUserStore

MEETING_START = datetime(2026, 3, 2, 15, 0, tzinfo=UTC)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        call_records_store="memory",
        user_data_store="memory",
        call_events_publisher="memory",
    )


@pytest.fixture
def user_store() -> InMemoryUserStore:
    return InMemoryUserStore()


@pytest.fixture
def owner(user_store: InMemoryUserStore) -> dict[str, Any]:
    return user_store.create_user(
        organization_id="org-a",
        email="owner@acme.com",
        full_name="Olive Owner",
    )


@pytest.fixture
def rep(user_store: InMemoryUserStore) -> dict[str, Any]:
    return user_store.create_user(
        organization_id="org-a",
        email="rep@acme.com",
        full_name="Rita Rep",
    )


@pytest.fixture
def store() -> InMemoryCallRecordStore:
    return InMemoryCallRecordStore()


@pytest.fixture
def publisher() -> InMemoryCallEventPublisher:
    return InMemoryCallEventPublisher()


@pytest.fixture
def service(
    settings: Settings,
    store: InMemoryCallRecordStore,
    user_store: InMemoryUserStore,
    publisher: InMemoryCallEventPublisher,
) -> CallIntakeService:
    return CallIntakeService(
        settings,
        store=store,
        user_store=user_store,
        event_publisher=publisher,
    )


def _candidate(**overrides: Any) -> CandidateCall:
    values: dict[str, Any] = {
        "organization_id": "org-a",
        "source": CallProvider.fireflies,
        "scheduled_start_time": MEETING_START,
        "external_ids": {"fireflies": "X1"},
        "title": "Discovery call",
        "participant_emails": ["buyer@customer.io"],
    }
    values.update(overrides)
    return CandidateCall(**values)


def test_new_call_is_created_as_pending_and_event_is_published(
    service: CallIntakeService,
    store: InMemoryCallRecordStore,
    publisher: InMemoryCallEventPublisher,
    owner: dict[str, Any],
) -> None:
    outcome = service.intake(_candidate(), str(owner["_id"]))

    assert outcome.action == IntakeAction.created
    assert outcome.call_id
    assert outcome.resolved_by == ResolvedBy.webhook_owner_fallback
    assert outcome.sales_rep_id == owner["_id"]

    record = store.get_by_id(outcome.call_id)
    assert record is not None
    assert record["status"] == "pending"
    assert record["sales_rep_id"] == owner["_id"]
    assert record["sales_rep_name"] == "Olive Owner"
    assert record["external_ids"] == {"fireflies": "X1"}
    assert publisher.events == [
        {"name": "call/process", "data": {"callRecordId": outcome.call_id, "source": "fireflies"}},
    ]


def test_redelivery_of_same_external_id_is_skipped(
    service: CallIntakeService,
    store: InMemoryCallRecordStore,
    publisher: InMemoryCallEventPublisher,
    owner: dict[str, Any],
) -> None:
    first = service.intake(_candidate(), str(owner["_id"]))
    second = service.intake(_candidate(), str(owner["_id"]))

    assert first.action == IntakeAction.created
    assert second.action == IntakeAction.skipped
    assert second.match_type == MatchType.external_id
    assert second.call_id == first.call_id
    assert first.call_id in second.detail
    assert store.count() == 1
    assert len(publisher.events) == 1


def test_host_email_of_active_rep_takes_credit_over_owner(
    service: CallIntakeService,
    store: InMemoryCallRecordStore,
    owner: dict[str, Any],
    rep: dict[str, Any],
) -> None:
    outcome = service.intake(_candidate(sales_rep_email="REP@acme.com"), str(owner["_id"]))

    assert outcome.resolved_by == ResolvedBy.exact_email_match
    assert outcome.sales_rep_id == rep["_id"]
    assert store.get_by_id(outcome.call_id)["sales_rep_id"] == rep["_id"]


def test_owner_fallback_records_owner_name_not_webhook_host(
    service: CallIntakeService,
    store: InMemoryCallRecordStore,
    owner: dict[str, Any],
) -> None:
    candidate = _candidate(
        source=CallProvider.fathom,
        external_ids={"fathom": "fathom-7"},
        sales_rep_email="gary@guest.io",
        host_name="Gary Guest",
        participant_names=["Gary Guest", "Bea Buyer"],
    )

    outcome = service.intake(candidate, str(owner["_id"]))

    assert outcome.resolved_by == ResolvedBy.webhook_owner_fallback
    record = store.get_by_id(outcome.call_id)
    assert record["sales_rep_id"] == owner["_id"]
    assert record["sales_rep_name"] == "Olive Owner"
    assert "name:gary guest" not in record["participant_keys"]
    assert "name:bea buyer" in record["participant_keys"]


def test_same_external_id_for_two_reps_creates_two_records(
    service: CallIntakeService,
    store: InMemoryCallRecordStore,
    owner: dict[str, Any],
    rep: dict[str, Any],
) -> None:
    via_owner = service.intake(_candidate(), str(owner["_id"]))
    via_rep = service.intake(_candidate(sales_rep_email="rep@acme.com"), str(owner["_id"]))

    assert via_owner.action == IntakeAction.created
    assert via_rep.action == IntakeAction.created
    assert via_owner.sales_rep_id != via_rep.sales_rep_id
    assert store.count() == 2


def test_composite_duplicate_without_external_ids_is_skipped(
    service: CallIntakeService,
    owner: dict[str, Any],
) -> None:
    first = service.intake(
        _candidate(source=CallProvider.zoom, external_ids={}, participant_emails=[]),
        str(owner["_id"]),
    )
    second = service.intake(
        _candidate(
            source=CallProvider.zoom,
            external_ids={},
            participant_emails=[],
            scheduled_start_time=MEETING_START + timedelta(minutes=2),
        ),
        str(owner["_id"]),
    )

    assert first.action == IntakeAction.created
    assert second.action == IntakeAction.skipped
    assert second.match_type == MatchType.composite
    assert second.call_id == first.call_id


def test_start_times_beyond_tolerance_are_both_created(
    service: CallIntakeService,
    owner: dict[str, Any],
) -> None:
    first = service.intake(_candidate(external_ids={}), str(owner["_id"]))
    second = service.intake(
        _candidate(external_ids={}, scheduled_start_time=MEETING_START + timedelta(minutes=30)),
        str(owner["_id"]),
    )

    assert first.action == IntakeAction.created
    assert second.action == IntakeAction.created


def test_concurrent_deliveries_create_exactly_one_record(
    settings: Settings,
    user_store: InMemoryUserStore,
    owner: dict[str, Any],
) -> None:
    delivery_count = 8
    barrier = threading.Barrier(delivery_count)

    class RacingStore(InMemoryCallRecordStore):
        def find_one(
            self,
            organization_id: str,
            sales_rep_id: str,
            record_filter: CallRecordFilter,
        ) -> dict[str, Any] | None:
            result = super().find_one(organization_id, sales_rep_id, record_filter)
            if record_filter.external_id:
                # Every delivery reads before any of them writes.
                barrier.wait(timeout=5)
            return result

    store = RacingStore()
    publisher = InMemoryCallEventPublisher()
    service = CallIntakeService(
        settings,
        store=store,
        user_store=user_store,
        event_publisher=publisher,
    )

    with ThreadPoolExecutor(max_workers=delivery_count) as executor:
        outcomes = list(
            executor.map(
                lambda _: service.intake(_candidate(title=None, participant_emails=[]), str(owner["_id"])),
                range(delivery_count),
            ),
        )

    created = [outcome for outcome in outcomes if outcome.action == IntakeAction.created]
    skipped = [outcome for outcome in outcomes if outcome.action == IntakeAction.skipped]
    assert len(created) == 1
    assert len(skipped) == delivery_count - 1
    assert all(outcome.call_id == created[0].call_id for outcome in skipped)
    assert store.count() == 1
    assert len(publisher.events) == 1


def test_publish_failure_does_not_undo_creation(
    settings: Settings,
    store: InMemoryCallRecordStore,
    user_store: InMemoryUserStore,
    owner: dict[str, Any],
    caplog: pytest.LogCaptureFixture,
) -> None:
    class FailingPublisher(CallEventPublisher):
        def publish(self, event_name: str, data: Mapping[str, Any]) -> None:
            raise CallEventPublishError("event bus down")

    service = CallIntakeService(
        settings,
        store=store,
        user_store=user_store,
        event_publisher=FailingPublisher(),
    )

    with caplog.at_level(logging.ERROR):
        outcome = service.intake(_candidate(), str(owner["_id"]))

    assert outcome.action == IntakeAction.created
    assert store.get_by_id(outcome.call_id) is not None
    assert "Call event publish failed" in caplog.text


def test_storage_failure_propagates(
    settings: Settings,
    user_store: InMemoryUserStore,
    publisher: InMemoryCallEventPublisher,
    owner: dict[str, Any],
) -> None:
    class UnavailableStore(InMemoryCallRecordStore):
        def insert_one(self, record: Mapping[str, Any]) -> str:
            raise ConnectionError("database unavailable")

    service = CallIntakeService(
        settings,
        store=UnavailableStore(),
        user_store=user_store,
        event_publisher=publisher,
    )

    with pytest.raises(ConnectionError):
        service.intake(_candidate(), str(owner["_id"]))
    assert publisher.events == []


def test_missing_integration_owner_raises(service: CallIntakeService) -> None:
    with pytest.raises(SalesRepResolutionError):
        service.intake(_candidate(), "unknown-owner")


def test_state_transitions_are_logged(
    service: CallIntakeService,
    owner: dict[str, Any],
    caplog: pytest.LogCaptureFixture,
) -> None:
    with caplog.at_level(logging.INFO, logger="app.services.call_intake_service"):
        service.intake(_candidate(), str(owner["_id"]))

    states = [
        message.split("state=")[1].split(" ")[0]
        for message in caplog.messages
        if "Call intake state=" in message
    ]
    assert states == ["received", "resolving", "matching", "created"]
