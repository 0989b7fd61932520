import json
import threading
from abc import ABC, abstractmethod
from collections.abc import Mapping
from functools import lru_cache
from typing import Any
from urllib import error, request

from app.core.config import Settings


class CallEventPublishError(Exception):
    pass


class CallEventPublisher(ABC):
    def __init__(self, call_process_event_name: str = "call/process") -> None:
        self.call_process_event_name = call_process_event_name

    @abstractmethod
    def publish(self, event_name: str, data: Mapping[str, Any]) -> None:
        raise NotImplementedError

    def publish_call_created(self, call_record_id: str, source: str) -> None:
        self.publish(
            self.call_process_event_name,
            {"callRecordId": call_record_id, "source": source},
        )


class InMemoryCallEventPublisher(CallEventPublisher):
    def __init__(self, call_process_event_name: str = "call/process") -> None:
        super().__init__(call_process_event_name)
        self._lock = threading.Lock()
        self._events: list[dict[str, Any]] = []

    def publish(self, event_name: str, data: Mapping[str, Any]) -> None:
        with self._lock:
            self._events.append({"name": event_name, "data": dict(data)})

    @property
    def events(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._events)


class HttpCallEventPublisher(CallEventPublisher):
    """Sends events to an event-bus ingest endpoint (``POST {url}/{key}``)."""

    def __init__(
        self,
        url: str,
        event_key: str,
        timeout_seconds: float = 2.0,
        call_process_event_name: str = "call/process",
    ) -> None:
        super().__init__(call_process_event_name)
        self.url = url.rstrip("/")
        self.event_key = event_key
        self.timeout_seconds = timeout_seconds

    def publish(self, event_name: str, data: Mapping[str, Any]) -> None:
        raw_payload = json.dumps({"name": event_name, "data": dict(data)}).encode("utf-8")
        target_url = f"{self.url}/{self.event_key}" if self.event_key else self.url
        req = request.Request(
            target_url,
            data=raw_payload,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            method="POST",
        )

        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response.read()
        except error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            raise CallEventPublishError(
                f"Event bus HTTP {exc.code}: {body or 'empty response body'}"
            ) from exc
        except error.URLError as exc:
            raise CallEventPublishError(f"Event bus connection error: {exc.reason}") from exc
        except TimeoutError as exc:
            raise CallEventPublishError("Event bus request timed out.") from exc


def create_call_event_publisher(settings: Settings) -> CallEventPublisher:
    return _create_call_event_publisher_cached(
        publisher_name=settings.call_events_publisher,
        url=settings.call_events_url,
        event_key=settings.call_events_key,
        timeout_seconds=settings.call_events_timeout_seconds,
        call_process_event_name=settings.call_process_event_name,
    )


@lru_cache
def _create_call_event_publisher_cached(
    *,
    publisher_name: str,
    url: str,
    event_key: str,
    timeout_seconds: float,
    call_process_event_name: str,
) -> CallEventPublisher:
    if publisher_name == "http":
        return HttpCallEventPublisher(
            url=url,
            event_key=event_key,
            timeout_seconds=timeout_seconds,
            call_process_event_name=call_process_event_name,
        )
    return InMemoryCallEventPublisher(call_process_event_name)


def clear_call_event_publisher_cache() -> None:
    _create_call_event_publisher_cached.cache_clear()
