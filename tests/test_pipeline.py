"""Tests for booking_service/pipeline.py and booking_service/gateway.py"""

import asyncio
import json
from unittest.mock import MagicMock

import pytest
from googleapiclient.errors import HttpError

from booking_service.errors import (
    AuthTimeoutError,
    AvailabilityTimeoutError,
    ConflictError,
    CreationTimeoutError,
    PipelineError,
    ProviderUnavailableError,
    ValidationError,
)
from booking_service.pipeline import RequestPipeline, Stage
from booking_service.schemas import parse_calendar_time

from tests.conftest import FakeClientFactory


def _http_error(status: int, reason: str = "backendError") -> HttpError:
    resp = MagicMock()
    resp.status = status
    resp.reason = reason
    return HttpError(resp, json.dumps({"error": {"message": reason}}).encode())


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_free_slot_creates_event(self, pipeline, fake_service, booking_payload):
        result = await pipeline.run(json.dumps(booking_payload).encode())

        assert result.ok
        assert result.state == Stage.RESPONDED
        assert result.event.start == parse_calendar_time("2025-01-01T10:00:00Z")
        assert result.event.end == parse_calendar_time("2025-01-01T11:00:00Z")
        assert result.event.attendees == ["a@x.com"]
        assert len(fake_service.insert_calls) == 1

    @pytest.mark.asyncio
    async def test_records_stage_timings_in_order(self, pipeline, booking_payload):
        result = await pipeline.run(booking_payload)

        stages = [stage for stage, _ in result.timings]
        assert stages == ["parsed", "client_obtained", "availability_checked", "event_created", "responded"]
        elapsed = [ms for _, ms in result.timings]
        assert elapsed == sorted(elapsed)

    @pytest.mark.asyncio
    async def test_uses_same_client_for_both_provider_calls(self, pipeline, fake_service, booking_payload):
        await pipeline.run(booking_payload)

        assert fake_service.list_calls[0][0] == "cached-client-1"
        assert fake_service.insert_calls[0][0] == "cached-client-1"

    @pytest.mark.asyncio
    async def test_adjacent_event_is_not_a_conflict(self, pipeline, fake_service, booking_payload):
        fake_service.add_event("before", "2025-01-01T09:00:00Z", "2025-01-01T10:00:00Z")

        result = await pipeline.run(booking_payload)

        assert result.ok


class TestValidation:
    @pytest.mark.asyncio
    async def test_end_before_start_fails_before_any_network_call(self, pipeline, fake_service,
                                                                  initializer, booking_payload):
        booking_payload["endTime"] = "2025-01-01T09:00:00Z"

        result = await pipeline.run(booking_payload)

        assert isinstance(result.error, ValidationError)
        assert result.failed_stage == "parse"
        assert result.state == Stage.FAILED
        assert initializer.calls == 0
        assert fake_service.list_calls == []

    @pytest.mark.asyncio
    async def test_equal_start_and_end_is_rejected(self, pipeline, booking_payload):
        booking_payload["endTime"] = booking_payload["startTime"]

        result = await pipeline.run(booking_payload)

        assert isinstance(result.error, ValidationError)
        assert "before endTime" in result.error.message

    @pytest.mark.asyncio
    async def test_missing_field_names_the_field(self, pipeline, booking_payload):
        del booking_payload["startTime"]

        result = await pipeline.run(booking_payload)

        assert isinstance(result.error, ValidationError)
        assert result.error.details[0]["field"] == "startTime"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [b"", b"   ", b"{not json", b"[1, 2]"])
    async def test_malformed_bodies(self, pipeline, body):
        result = await pipeline.run(body)

        assert isinstance(result.error, ValidationError)
        assert result.error.status_code == 400

    @pytest.mark.asyncio
    async def test_unparseable_timestamp(self, pipeline, booking_payload):
        booking_payload["startTime"] = "next tuesday"

        result = await pipeline.run(booking_payload)

        assert isinstance(result.error, ValidationError)


class TestConflicts:
    @pytest.mark.asyncio
    async def test_conflict_short_circuits_creation(self, pipeline, fake_service, booking_payload):
        fake_service.add_event("standup", "2025-01-01T10:30:00Z", "2025-01-01T10:45:00Z", "Standup")

        result = await pipeline.run(booking_payload)

        assert isinstance(result.error, ConflictError)
        assert result.error.status_code == 409
        assert [e["id"] for e in result.error.conflicting_events] == ["standup"]
        assert result.failed_stage == "availability"
        assert fake_service.insert_calls == []

    @pytest.mark.asyncio
    async def test_cancelled_events_do_not_conflict(self, pipeline, fake_service, booking_payload):
        fake_service.add_event("gone", "2025-01-01T10:00:00Z", "2025-01-01T11:00:00Z", status="cancelled")

        result = await pipeline.run(booking_payload)

        assert result.ok


class TestStageFailures:
    @pytest.mark.asyncio
    async def test_slow_availability_is_tagged(self, pipeline, fake_service, booking_payload):
        fake_service.list_delay = 0.5

        result = await pipeline.run(booking_payload)

        assert isinstance(result.error, AvailabilityTimeoutError)
        assert result.failed_stage == "availability"
        assert result.error.status_code == 503
        assert fake_service.insert_calls == []

    @pytest.mark.asyncio
    async def test_slow_creation_reports_unknown_outcome(self, pipeline, fake_service, booking_payload):
        fake_service.insert_delay = 0.5

        result = await pipeline.run(booking_payload)

        assert isinstance(result.error, CreationTimeoutError)
        assert result.failed_stage == "create"
        assert result.error.to_dict()["outcomeUnknown"] is True

    @pytest.mark.asyncio
    async def test_slow_client_is_auth_timeout(self, fake_service, booking_payload):
        from booking_service.auth_cache import AuthClientCache
        from booking_service.gateway import CalendarGateway

        slow = FakeClientFactory("cached", delay=0.2)
        slow_fallback = FakeClientFactory("fallback", delay=0.2)
        cache = AuthClientCache(slow, slow_fallback, init_timeout_ms=50, ttl_seconds=None)
        gateway = CalendarGateway(fake_service, cache, get_client_timeout_ms=100)

        result = await RequestPipeline(gateway).run(booking_payload)

        assert isinstance(result.error, AuthTimeoutError)
        assert result.failed_stage == "client"
        assert fake_service.list_calls == []
        await asyncio.sleep(0.25)

    @pytest.mark.asyncio
    async def test_provider_http_error_is_unavailable(self, pipeline, fake_service, booking_payload):
        fake_service.list_error = _http_error(503)

        result = await pipeline.run(booking_payload)

        assert isinstance(result.error, ProviderUnavailableError)
        assert result.error.provider_status == 503
        assert result.failed_stage == "availability"

    @pytest.mark.asyncio
    async def test_network_error_during_creation(self, pipeline, fake_service, booking_payload):
        fake_service.insert_error = ConnectionResetError("peer reset")

        result = await pipeline.run(booking_payload)

        assert isinstance(result.error, ProviderUnavailableError)
        assert result.failed_stage == "create"

    @pytest.mark.asyncio
    async def test_failures_are_not_retried(self, pipeline, fake_service, booking_payload):
        fake_service.insert_error = _http_error(500)

        await pipeline.run(booking_payload)

        assert len(fake_service.insert_calls) == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_is_tagged_with_stage(self, booking_payload):
        gateway = MagicMock()

        async def broken_client():
            raise KeyError("boom")

        gateway.get_client = broken_client

        result = await RequestPipeline(gateway).run(booking_payload)

        assert isinstance(result.error, PipelineError)
        assert result.failed_stage == "client"


class TestAvailabilityOnly:
    @pytest.mark.asyncio
    async def test_reports_conflicts_without_creating(self, pipeline, fake_service):
        fake_service.add_event("busy", "2025-01-01T10:00:00Z", "2025-01-01T10:30:00Z")

        result = await pipeline.availability({"startTime": "2025-01-01T10:00:00Z",
                                              "endTime": "2025-01-01T11:00:00Z"})

        assert result.ok
        assert result.availability.is_available is False
        assert result.availability.conflicting_events[0]["id"] == "busy"
        assert fake_service.insert_calls == []

    @pytest.mark.asyncio
    async def test_missing_window_is_validation_error(self, pipeline):
        result = await pipeline.availability({"startTime": None, "endTime": None})

        assert isinstance(result.error, ValidationError)
