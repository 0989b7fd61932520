import logging
import time

from app.core.config import Settings
from app.schemas.call_intake import (
    CandidateCall,
    IntakeAction,
    IntakeOutcome,
    IntakeState,
    MatchType,
)
from app.services.call_event_publisher import (
    CallEventPublisher,
    CallEventPublishError,
    create_call_event_publisher,
)
from app.services.call_record_store import (
    CallRecordStore,
    DuplicateCallRecordError,
    build_call_record_document,
    create_call_record_store,
)
from app.services.duplicate_call_matcher import DuplicateCallMatcher, build_default_matcher
from app.services.sales_rep_resolver import SalesRepResolver
from app.services.user_store import UserStore, create_user_store

logger = logging.getLogger(__name__)


class CallIntakeService:
    def __init__(
        self,
        settings: Settings,
        store: CallRecordStore | None = None,
        user_store: UserStore | None = None,
        resolver: SalesRepResolver | None = None,
        matcher: DuplicateCallMatcher | None = None,
        event_publisher: CallEventPublisher | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or create_call_record_store(
            store_name=settings.call_records_store,
            mongodb_uri=settings.mongodb_uri,
            mongodb_db_name=settings.mongodb_db_name,
            mongodb_collection_name=settings.mongodb_call_records_collection,
            mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
            mongodb_socket_timeout_ms=settings.mongodb_socket_timeout_ms,
        )
        self.user_store = user_store or create_user_store(settings)
        self.resolver = resolver or SalesRepResolver(self.user_store)
        self.matcher = matcher or build_default_matcher(self.store, settings)
        self.event_publisher = event_publisher or create_call_event_publisher(settings)

    def intake(self, candidate: CandidateCall, integration_owner_id: str) -> IntakeOutcome:
        started_at = time.monotonic()
        try:
            return self._intake(candidate, integration_owner_id)
        finally:
            elapsed_seconds = time.monotonic() - started_at
            if elapsed_seconds > self.settings.webhook_processing_budget_seconds:
                logger.warning(
                    "Call intake exceeded processing budget organization_id=%s provider=%s "
                    "elapsed_seconds=%.3f budget_seconds=%.3f",
                    candidate.organization_id,
                    candidate.source.value,
                    elapsed_seconds,
                    self.settings.webhook_processing_budget_seconds,
                )

    def _intake(self, candidate: CandidateCall, integration_owner_id: str) -> IntakeOutcome:
        self._log_state(IntakeState.received, candidate)

        self._log_state(IntakeState.resolving, candidate)
        resolution = self.resolver.resolve_sales_rep(
            organization_id=candidate.organization_id,
            email=candidate.sales_rep_email,
            fallback_user_id=integration_owner_id,
        )
        resolved_user = resolution.user or {}
        resolved_candidate = candidate.model_copy(
            update={
                "sales_rep_id": str(resolved_user.get("_id", "")),
                "sales_rep_name": resolved_user.get("full_name"),
                "host_name": candidate.host_name or candidate.sales_rep_name,
            },
        )
        if not resolved_candidate.sales_rep_id:
            raise ValueError("Resolved sales rep has no id.")

        self._log_state(
            IntakeState.matching,
            resolved_candidate,
            resolved_by=resolution.resolved_by.value,
        )
        duplicate_check = self.matcher.check_for_duplicate(resolved_candidate)
        if duplicate_check.is_duplicate:
            outcome = IntakeOutcome(
                action=IntakeAction.skipped,
                call_id=duplicate_check.existing_call_id,
                detail=duplicate_check.message,
                match_type=duplicate_check.match_type,
                resolved_by=resolution.resolved_by,
                sales_rep_id=resolved_candidate.sales_rep_id,
            )
            self._log_state(
                IntakeState.skipped,
                resolved_candidate,
                resolved_by=resolution.resolved_by.value,
                match_type=duplicate_check.match_type.value,
                call_id=outcome.call_id,
            )
            return outcome

        document = build_call_record_document(
            resolved_candidate,
            sales_rep_email=resolved_user.get("email"),
        )
        try:
            call_id = self.store.insert_one(document)
        except DuplicateCallRecordError as exc:
            outcome = IntakeOutcome(
                action=IntakeAction.skipped,
                call_id=exc.existing_record_id,
                detail=f"Duplicate detected on insert: {exc}",
                match_type=MatchType.external_id,
                resolved_by=resolution.resolved_by,
                sales_rep_id=resolved_candidate.sales_rep_id,
            )
            self._log_state(
                IntakeState.skipped,
                resolved_candidate,
                resolved_by=resolution.resolved_by.value,
                match_type="insert_conflict",
                call_id=outcome.call_id,
            )
            return outcome

        self._log_state(
            IntakeState.created,
            resolved_candidate,
            resolved_by=resolution.resolved_by.value,
            match_type=duplicate_check.match_type.value,
            call_id=call_id,
        )
        self._publish_call_created(call_id, resolved_candidate)
        return IntakeOutcome(
            action=IntakeAction.created,
            call_id=call_id,
            detail="Call record created",
            match_type=MatchType.none,
            resolved_by=resolution.resolved_by,
            sales_rep_id=resolved_candidate.sales_rep_id,
        )

    def _publish_call_created(self, call_id: str, candidate: CandidateCall) -> None:
        try:
            self.event_publisher.publish_call_created(call_id, candidate.source.value)
        except CallEventPublishError:
            # Record stays pending.
            logger.exception(
                "Call event publish failed call_id=%s organization_id=%s provider=%s",
                call_id,
                candidate.organization_id,
                candidate.source.value,
            )

    @staticmethod
    def _log_state(
        state: IntakeState,
        candidate: CandidateCall,
        *,
        resolved_by: str | None = None,
        match_type: str | None = None,
        call_id: str | None = None,
    ) -> None:
        logger.info(
            "Call intake state=%s organization_id=%s provider=%s external_ids=%s "
            "sales_rep_id=%s resolved_by=%s match_type=%s call_id=%s",
            state.value,
            candidate.organization_id,
            candidate.source.value,
            ",".join(f"{provider}:{external_id}" for provider, external_id in candidate.external_ids.items())
            or "-",
            candidate.sales_rep_id or "-",
            resolved_by or "-",
            match_type or "-",
            call_id or "-",
        )
