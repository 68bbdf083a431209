"""Shared fixtures for booking service tests.

Provides an in-process stand-in for the Google Calendar adapter so the
pipeline, gateway and HTTP layer can be exercised without network access.
"""

import asyncio
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytest

from booking_service.auth_cache import AuthClientCache
from booking_service.gateway import CalendarGateway
from booking_service.pipeline import RequestPipeline
from booking_service.rate_limit import InMemoryCounterStore, RateLimiter
from booking_service.schemas import BookingRequest, CalendarEvent, EventStatus, parse_calendar_time


class FakeCalendarService:
    """Mimics GoogleCalendarService's blocking calls against an in-memory calendar"""

    def __init__(self):
        self.events: List[Dict[str, Any]] = []
        self.list_delay = 0.0
        self.insert_delay = 0.0
        self.list_error: Optional[Exception] = None
        self.insert_error: Optional[Exception] = None
        self.list_calls = []
        self.insert_calls = []

    def add_event(self, event_id: str, start: str, end: str, summary: str = "Busy", status: str = "confirmed"):
        self.events.append({
            "id": event_id,
            "summary": summary,
            "start": {"dateTime": start},
            "end": {"dateTime": end},
            "status": status,
        })

    def list_events(self, client, start_time: datetime, end_time: datetime):
        self.list_calls.append((client, start_time, end_time))
        if self.list_delay:
            time.sleep(self.list_delay)
        if self.list_error:
            raise self.list_error
        overlapping = []
        for event in self.events:
            if event["status"] == "cancelled":
                continue
            event_start = parse_calendar_time(event["start"]["dateTime"])
            event_end = parse_calendar_time(event["end"]["dateTime"])
            if event_start < end_time and event_end > start_time:
                overlapping.append(event)
        return overlapping

    def insert_event(self, client, request: BookingRequest) -> CalendarEvent:
        self.insert_calls.append((client, request))
        if self.insert_delay:
            time.sleep(self.insert_delay)
        if self.insert_error:
            raise self.insert_error
        event_id = f"evt-{len(self.insert_calls)}"
        self.add_event(event_id, request.start_time.isoformat(), request.end_time.isoformat(), request.summary)
        return CalendarEvent(
            id=event_id,
            start=request.start_time,
            end=request.end_time,
            attendees=list(request.attendees),
            status=EventStatus.CONFIRMED,
            summary=request.summary,
        )


class FakeClientFactory:
    """Async client factory that counts how often it is called"""

    def __init__(self, name: str, delay: float = 0.0, error: Optional[Exception] = None):
        self.name = name
        self.delay = delay
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return f"{self.name}-client-{self.calls}"


@pytest.fixture
def fake_service() -> FakeCalendarService:
    return FakeCalendarService()


@pytest.fixture
def initializer() -> FakeClientFactory:
    return FakeClientFactory("cached")


@pytest.fixture
def fallback_factory() -> FakeClientFactory:
    return FakeClientFactory("fallback")


@pytest.fixture
def auth_cache(initializer, fallback_factory) -> AuthClientCache:
    return AuthClientCache(initializer, fallback_factory, init_timeout_ms=200, ttl_seconds=None)


@pytest.fixture
def gateway(fake_service, auth_cache) -> CalendarGateway:
    return CalendarGateway(
        fake_service, auth_cache,
        get_client_timeout_ms=500,
        availability_timeout_ms=200,
        create_timeout_ms=200,
    )


@pytest.fixture
def pipeline(gateway) -> RequestPipeline:
    return RequestPipeline(gateway)


@pytest.fixture
def rate_limiter() -> RateLimiter:
    return RateLimiter(InMemoryCounterStore(), max_requests=50, window_ms=60000,
                       store_timeout_ms=100, fail_open=True)


@pytest.fixture
def booking_payload() -> Dict[str, Any]:
    return {
        "startTime": "2025-01-01T10:00:00Z",
        "endTime": "2025-01-01T11:00:00Z",
        "attendees": ["a@x.com"],
        "metadata": {"source": "tests"},
    }
