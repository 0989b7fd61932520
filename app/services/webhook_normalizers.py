from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

from app.schemas.call_intake import CallProvider, CandidateCall

logger = logging.getLogger(__name__)


class WebhookPayloadError(Exception):
    pass


class WebhookPayloadNormalizer:
    """Turns a provider webhook body into candidate calls.

    Bodies may be a single event object or an array of them. Items that carry no
    call data are skipped. Well-formed events that do not describe a finished
    recording are ignored, so a body made only of those yields no candidates
    instead of an error.
    """

    def __init__(self, now: Callable[[], datetime] | None = None) -> None:
        self._now = now or (lambda: datetime.now(UTC))

    def normalize(
        self,
        provider: CallProvider,
        payload: Any,
        *,
        organization_id: str,
    ) -> list[CandidateCall]:
        items = payload if isinstance(payload, list) else [payload]
        handlers: dict[CallProvider, Callable[[Mapping[str, Any], str], CandidateCall | None]] = {
            CallProvider.fireflies: self._normalize_fireflies,
            CallProvider.zoom: self._normalize_zoom,
            CallProvider.fathom: self._normalize_fathom,
            CallProvider.claap: self._normalize_claap,
            CallProvider.firefiles: self._normalize_firefiles,
        }
        handler = handlers[provider]

        candidates: list[CandidateCall] = []
        ignored_count = 0
        for item in items:
            if not isinstance(item, Mapping):
                continue
            ignored_reason = _ignored_event_reason(provider, item)
            if ignored_reason:
                ignored_count += 1
                logger.info(
                    "Webhook event ignored provider=%s organization_id=%s reason=%s",
                    provider.value,
                    organization_id,
                    ignored_reason,
                )
                continue
            candidate = handler(item, organization_id)
            if candidate is not None:
                candidates.append(candidate)

        if not candidates and not ignored_count:
            raise WebhookPayloadError(f"No {provider.value} call data found in webhook payload.")
        return candidates

    def _normalize_fireflies(self, item: Mapping[str, Any], organization_id: str) -> CandidateCall | None:
        transcript = _first_mapping(item, ("data.transcript", "transcript"))
        if transcript is None:
            return None

        transcript_id = _extract_first_string(transcript, ("id", "transcript_id"))
        if not transcript_id:
            return None

        emails, names = _collect_participants(transcript.get("participants"))
        attendee_emails, attendee_names = _collect_participants(transcript.get("meeting_attendees"))
        emails.extend(attendee_emails)
        names.extend(attendee_names)

        start_time = _to_datetime(transcript.get("date")) or self._now()
        duration_minutes = _to_float(transcript.get("duration"))
        host_email = _extract_first_string(transcript, ("host_email", "organizer_email", "user.email"))
        return CandidateCall(
            organization_id=organization_id,
            source=CallProvider.fireflies,
            scheduled_start_time=start_time,
            scheduled_end_time=_end_time(start_time, duration_minutes),
            duration_minutes=duration_minutes,
            external_ids={CallProvider.fireflies.value: transcript_id},
            title=_extract_first_string(transcript, ("title",)),
            participant_emails=emails,
            participant_names=names,
            sales_rep_email=host_email,
            transcript=_sentences_to_text(transcript.get("sentences")),
            recording_url=_extract_first_string(transcript, ("transcript_url",)),
            metadata={
                "host_email": _extract_first_string(transcript, ("host_email",)),
                "organizer_email": _extract_first_string(transcript, ("organizer_email",)),
                "meeting_link": _extract_first_string(transcript, ("meeting_link",)),
                "calendar_id": _extract_first_string(transcript, ("calendar_id",)),
            },
        )

    def _normalize_zoom(self, item: Mapping[str, Any], organization_id: str) -> CandidateCall | None:
        meeting = _first_mapping(item, ("payload.object", "object"))
        if meeting is None:
            return None

        # Recurring meetings share the numeric id; each occurrence has its own uuid.
        meeting_id = _extract_first_string(meeting, ("uuid", "id"))
        start_time = _to_datetime(meeting.get("start_time")) or self._now()
        duration_minutes = _to_float(meeting.get("duration"))
        _, names = _collect_participants(meeting.get("participant_user_names"))
        recording_files = meeting.get("recording_files")
        first_recording = (
            recording_files[0]
            if isinstance(recording_files, list) and recording_files and isinstance(recording_files[0], Mapping)
            else {}
        )
        if not meeting_id and not meeting.get("topic"):
            return None

        return CandidateCall(
            organization_id=organization_id,
            source=CallProvider.zoom,
            scheduled_start_time=start_time,
            scheduled_end_time=_end_time(start_time, duration_minutes),
            duration_minutes=duration_minutes,
            external_ids={CallProvider.zoom.value: meeting_id} if meeting_id else {},
            title=_extract_first_string(meeting, ("topic",)),
            participant_names=names,
            sales_rep_email=_extract_first_string(meeting, ("host_email",)),
            recording_url=_extract_first_string(first_recording, ("download_url",)),
            share_url=_extract_first_string(meeting, ("share_url",)),
            metadata={
                "meeting_id": _extract_first_string(meeting, ("id",)),
                "host_email": _extract_first_string(meeting, ("host_email",)),
                "event_type": _extract_first_string(item, ("event",)),
            },
        )

    def _normalize_fathom(self, item: Mapping[str, Any], organization_id: str) -> CandidateCall | None:
        fathom_call_id = _extract_first_string(item, ("id", "recording_id"))
        if not fathom_call_id:
            return None

        start_time = _to_datetime(item.get("meeting_scheduled_start_time")) or self._now()
        emails, names = _parse_fathom_invitees(item.get("meeting_invitees"))
        extra_emails, extra_names = _collect_participants(
            [
                {
                    "email": item.get("meeting_invitees_email"),
                    "name": item.get("meeting_invitees_name"),
                },
            ],
        )
        emails.extend(extra_emails)
        names.extend(extra_names)

        return CandidateCall(
            organization_id=organization_id,
            source=CallProvider.fathom,
            scheduled_start_time=start_time,
            scheduled_end_time=_to_datetime(item.get("meeting_scheduled_end_time")),
            duration_minutes=_to_float(item.get("recording_duration_in_minutes")),
            external_ids={CallProvider.fathom.value: fathom_call_id},
            title=_extract_first_string(item, ("meeting_title", "title")),
            participant_emails=emails,
            participant_names=names,
            # Fathom misspells the field in its webhook body.
            sales_rep_email=_extract_first_string(item, ("fathom_user_emaill", "fathom_user_email")),
            host_name=_extract_first_string(item, ("fathom_user_name",)),
            transcript=_extract_first_string(item, ("transcript_plaintext",)),
            recording_url=_extract_first_string(item, ("recording_url",)),
            share_url=_extract_first_string(item, ("recording_share_url",)),
            metadata={
                "fathom_user_team": _extract_first_string(item, ("fathom_user_team",)),
                "meeting_join_url": _extract_first_string(item, ("meeting_join_url",)),
                "external_domains": _extract_first_string(item, ("meeting_external_domains",)),
                "has_external_invitees": _to_bool(item.get("meeting_has_external_invitees")),
            },
        )

    def _normalize_claap(self, item: Mapping[str, Any], organization_id: str) -> CandidateCall | None:
        if _extract_first_string(item, ("event.type",)) != "recording_added":
            return None
        recording = _first_mapping(item, ("event.recording",))
        if recording is None:
            return None
        recording_id = _extract_first_string(recording, ("id",))
        if not recording_id:
            return None

        raw_participants = recording.get("participants")
        emails, names = _collect_participants(raw_participants)
        host_email = None
        host_name = None
        if isinstance(raw_participants, list):
            for participant in raw_participants:
                if not isinstance(participant, Mapping):
                    continue
                role = (_extract_first_string(participant, ("role",)) or "").lower()
                if role in {"host", "organizer", "recorder"}:
                    host_email = _extract_first_string(participant, ("email",))
                    host_name = _extract_first_string(participant, ("name", "displayName"))
                    if host_email:
                        break

        start_time = _to_datetime(recording.get("createdAt")) or self._now()
        duration_seconds = _to_float(recording.get("durationSeconds"))
        duration_minutes = duration_seconds / 60 if duration_seconds is not None else None
        return CandidateCall(
            organization_id=organization_id,
            source=CallProvider.claap,
            scheduled_start_time=start_time,
            scheduled_end_time=_end_time(start_time, duration_minutes),
            duration_minutes=duration_minutes,
            external_ids={CallProvider.claap.value: recording_id},
            title=_extract_first_string(recording, ("title",)),
            participant_emails=emails,
            participant_names=names,
            sales_rep_email=host_email,
            host_name=host_name,
            transcript=_extract_first_string(recording, ("transcripts.text",)),
            recording_url=_extract_first_string(recording, ("videoUrl",)),
            share_url=_extract_first_string(recording, ("videoUrl",)),
            metadata={
                "claap_event_id": _extract_first_string(item, ("eventId",)),
                "transcript_url": _extract_first_string(recording, ("transcripts.json.url",)),
                "transcript_expires_at": _extract_first_string(recording, ("transcripts.json.expiresAt",)),
            },
        )

    def _normalize_firefiles(self, item: Mapping[str, Any], organization_id: str) -> CandidateCall | None:
        if _extract_first_string(item, ("event",)) != "transcription.completed":
            return None
        data = _first_mapping(item, ("data",))
        if data is None:
            return None
        recording_id = _extract_first_string(data, ("recording_id", "id"))
        if not recording_id:
            return None

        emails, names = _collect_participants(data.get("participants"))
        start_time = _to_datetime(data.get("recorded_at")) or self._now()
        duration_seconds = _to_float(data.get("duration"))
        duration_minutes = duration_seconds / 60 if duration_seconds is not None else None
        return CandidateCall(
            organization_id=organization_id,
            source=CallProvider.firefiles,
            scheduled_start_time=start_time,
            scheduled_end_time=_end_time(start_time, duration_minutes),
            duration_minutes=duration_minutes,
            external_ids={CallProvider.firefiles.value: recording_id},
            title=_extract_first_string(data, ("title",)),
            participant_emails=emails,
            participant_names=names,
            sales_rep_email=_extract_first_string(data, ("host_email", "owner_email")),
            transcript=_extract_first_string(data, ("transcript",)),
            metadata={"language": _extract_first_string(data, ("language",))},
        )


def _ignored_event_reason(provider: CallProvider, item: Mapping[str, Any]) -> str | None:
    if provider == CallProvider.fireflies:
        if _first_mapping(item, ("data.transcript", "transcript")) is None and _extract_first_string(
            item,
            ("meetingId", "meeting_id", "meeting.id"),
        ):
            return "notification without transcript"
        return None

    if provider == CallProvider.claap:
        event_type = _extract_first_string(item, ("event.type",))
        if event_type and event_type != "recording_added":
            return f"event type {event_type}"
        return None

    if provider == CallProvider.firefiles:
        event_type = _extract_first_string(item, ("event",))
        if event_type and event_type != "transcription.completed":
            return f"event type {event_type}"
    return None


def _extract_path(payload: Mapping[str, Any], path: str) -> Any:
    value: Any = payload
    for segment in path.split("."):
        if not isinstance(value, Mapping):
            return None
        if segment not in value:
            return None
        value = value[segment]
    return value


def _extract_first_string(payload: Mapping[str, Any], paths: tuple[str, ...]) -> str | None:
    for path in paths:
        text = _to_text(_extract_path(payload, path))
        if text:
            return text
    return None


def _first_mapping(payload: Mapping[str, Any], paths: tuple[str, ...]) -> Mapping[str, Any] | None:
    for path in paths:
        value = _extract_path(payload, path)
        if isinstance(value, Mapping):
            return value
    return None


def _to_text(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        cleaned = value.strip()
        return cleaned or None
    if isinstance(value, int | float):
        return str(value)
    return None


def _to_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _to_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "1", "yes"}:
            return True
        if lowered in {"false", "0", "no"}:
            return False
    return None


def _to_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if not text.isdigit():
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
        if len(text) in (8, 14):
            # Compact calendar dates such as 20260302 or 20260302150000.
            try:
                parsed = datetime.strptime(text, "%Y%m%d" if len(text) == 8 else "%Y%m%d%H%M%S")
            except ValueError:
                return None
            return parsed.replace(tzinfo=UTC)

    numeric_value = _to_float(value)
    if numeric_value is None:
        return None
    # Fireflies sends epoch milliseconds.
    seconds = numeric_value / 1000 if numeric_value > 10_000_000_000 else numeric_value
    try:
        return datetime.fromtimestamp(seconds, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return None


def _end_time(start_time: datetime, duration_minutes: float | None) -> datetime | None:
    if duration_minutes is None:
        return None
    try:
        return start_time + timedelta(minutes=duration_minutes)
    except (OverflowError, ValueError):
        return None


def _collect_participants(raw_participants: Any) -> tuple[list[str], list[str]]:
    emails: list[str] = []
    names: list[str] = []
    if not isinstance(raw_participants, list):
        return emails, names

    for participant in raw_participants:
        if isinstance(participant, str):
            # Fireflies lists participants as comma separated emails.
            for part in participant.split(","):
                value = part.strip()
                if not value:
                    continue
                if "@" in value:
                    emails.append(value)
                else:
                    names.append(value)
            continue
        if not isinstance(participant, Mapping):
            continue
        email = _extract_first_string(participant, ("email",))
        name = _extract_first_string(participant, ("displayName", "name", "display_name"))
        if email:
            emails.append(email)
        if name and name != email:
            names.append(name)
    return emails, names


def _parse_fathom_invitees(raw_invitees: Any) -> tuple[list[str], list[str]]:
    if isinstance(raw_invitees, list):
        return _collect_participants(raw_invitees)
    if not isinstance(raw_invitees, str) or not raw_invitees.strip():
        return [], []

    invitee: dict[str, str] = {}
    for line in raw_invitees.splitlines():
        key, separator, value = line.partition(":")
        if not separator:
            continue
        if key.strip() and value.strip():
            invitee[key.strip()] = value.strip()
    return _collect_participants([invitee])


def _sentences_to_text(raw_sentences: Any) -> str | None:
    if not isinstance(raw_sentences, list):
        return None
    lines: list[str] = []
    for sentence in raw_sentences:
        if not isinstance(sentence, Mapping):
            continue
        text = _extract_first_string(sentence, ("text",))
        if not text:
            continue
        speaker = _extract_first_string(sentence, ("speaker_name",))
        lines.append(f"{speaker}: {text}" if speaker else text)
    return "\n".join(lines) or None
