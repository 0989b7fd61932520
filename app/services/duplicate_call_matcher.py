from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from app.core.config import Settings
from app.schemas.call_intake import CandidateCall, DuplicateCheckResult, MatchType
from app.services.call_record_store import (
    CallRecordFilter,
    CallRecordStore,
    build_participant_keys,
    normalize_title,
)


@dataclass(frozen=True)
class DuplicateMatch:
    match_type: MatchType
    record: dict[str, Any]
    reason: str

    @property
    def record_id(self) -> str:
        return str(self.record.get("_id", ""))


class MatchStrategy(ABC):
    match_type: MatchType

    @abstractmethod
    def attempt_match(self, candidate: CandidateCall) -> DuplicateMatch | None:
        raise NotImplementedError


class ExternalIdMatchStrategy(MatchStrategy):
    match_type = MatchType.external_id

    def __init__(self, store: CallRecordStore) -> None:
        self.store = store

    def attempt_match(self, candidate: CandidateCall) -> DuplicateMatch | None:
        for provider, external_id in candidate.external_ids.items():
            record = self.store.find_one(
                candidate.organization_id,
                _require_sales_rep_id(candidate),
                CallRecordFilter.by_external_id(provider, external_id),
            )
            if record:
                return DuplicateMatch(
                    match_type=self.match_type,
                    record=record,
                    reason=f"{provider} id {external_id}",
                )
        return None


class CompositeMatchStrategy(MatchStrategy):
    """Scheduled start within tolerance plus same title or a shared participant.

    Used for providers without stable ids, and for the same meeting recorded
    by another provider. A record with a different id from the same provider
    is a separate recording. The rep's own identity never counts as shared.
    """

    match_type = MatchType.composite

    def __init__(
        self,
        store: CallRecordStore,
        *,
        tolerance: timedelta = timedelta(minutes=5),
        min_shared_participants: int = 1,
    ) -> None:
        self.store = store
        self.tolerance = tolerance
        self.min_shared_participants = min_shared_participants

    def attempt_match(self, candidate: CandidateCall) -> DuplicateMatch | None:
        title = normalize_title(candidate.title)
        participant_keys = frozenset(
            build_participant_keys(
                candidate.participant_emails,
                candidate.participant_names,
                exclude_emails=(candidate.sales_rep_email,),
                exclude_names=(candidate.sales_rep_name, candidate.host_name),
            ),
        )
        if not title and not participant_keys:
            return None

        record_filter = CallRecordFilter(
            scheduled_from=candidate.scheduled_start_time - self.tolerance,
            scheduled_to=candidate.scheduled_start_time + self.tolerance,
            normalized_title=title,
            participant_keys=participant_keys,
            min_shared_participants=self.min_shared_participants,
            known_external_ids=tuple(sorted(candidate.external_ids.items())),
        )
        record = self.store.find_one(
            candidate.organization_id,
            _require_sales_rep_id(candidate),
            record_filter,
        )
        if not record:
            return None

        if title and record.get("normalized_title") == title:
            reason = f'title "{candidate.title}" within {_format_tolerance(self.tolerance)}'
        else:
            reason = f"shared participant within {_format_tolerance(self.tolerance)}"
        return DuplicateMatch(match_type=self.match_type, record=record, reason=reason)


class DuplicateCallMatcher:
    def __init__(self, strategies: Sequence[MatchStrategy]) -> None:
        self.strategies = list(strategies)

    def check_for_duplicate(self, candidate: CandidateCall) -> DuplicateCheckResult:
        _require_sales_rep_id(candidate)
        for strategy in self.strategies:
            match = strategy.attempt_match(candidate)
            if match is None:
                continue
            return DuplicateCheckResult(
                is_duplicate=True,
                match_type=match.match_type,
                existing_call_id=match.record_id,
                message=(
                    f"Duplicate of call record {match.record_id} "
                    f"({match.match_type.value} match: {match.reason})"
                ),
            )

        return DuplicateCheckResult(
            is_duplicate=False,
            match_type=MatchType.none,
            message="No duplicate found",
        )


def build_default_matcher(store: CallRecordStore, settings: Settings) -> DuplicateCallMatcher:
    return DuplicateCallMatcher(
        [
            ExternalIdMatchStrategy(store),
            CompositeMatchStrategy(
                store,
                tolerance=timedelta(minutes=settings.composite_match_tolerance_minutes),
                min_shared_participants=settings.composite_match_min_shared_participants,
            ),
        ],
    )


def _require_sales_rep_id(candidate: CandidateCall) -> str:
    if not candidate.sales_rep_id:
        raise ValueError("Duplicate checks are scoped per sales rep; resolve the rep first.")
    return candidate.sales_rep_id


def _format_tolerance(tolerance: timedelta) -> str:
    minutes = tolerance.total_seconds() / 60
    if minutes.is_integer():
        return f"±{int(minutes)} min"
    return f"±{minutes:g} min"
