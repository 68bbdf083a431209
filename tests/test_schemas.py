"""Tests for booking request parsing in booking_service/schemas.py"""

from datetime import timedelta

import pydantic
import pytest

from booking_service.schemas import BookingRequest, parse_calendar_time


class TestParseCalendarTime:
    def test_utc_suffix(self):
        parsed = parse_calendar_time("2025-01-01T10:00:00Z")

        assert parsed.utcoffset() == timedelta(0)
        assert parsed.hour == 10

    def test_naive_value_uses_given_zone(self):
        parsed = parse_calendar_time("2025-07-01T10:00:00", "Europe/Berlin")

        assert parsed.utcoffset() == timedelta(hours=2)

    @pytest.mark.parametrize("value", ["", "tomorrow", None, 42])
    def test_rejects_unparseable(self, value):
        with pytest.raises(ValueError):
            parse_calendar_time(value)


class TestBookingRequest:
    def test_defaults(self):
        request = BookingRequest.model_validate({"startTime": "2025-01-01T10:00:00Z",
                                                 "endTime": "2025-01-01T11:00:00Z"})

        assert request.attendees == []
        assert request.metadata == {}
        assert request.summary == "Booking"

    def test_attendees_keep_order_without_duplicates(self):
        request = BookingRequest.model_validate({
            "startTime": "2025-01-01T10:00:00Z",
            "endTime": "2025-01-01T11:00:00Z",
            "attendees": ["b@x.com", "a@x.com", "b@x.com"],
        })

        assert request.attendees == ["b@x.com", "a@x.com"]

    def test_time_zone_applies_to_naive_timestamps(self):
        request = BookingRequest.model_validate({
            "timeZone": "America/New_York",
            "startTime": "2025-01-01T10:00:00",
            "endTime": "2025-01-01T11:00:00",
        })

        assert request.start_time.utcoffset() == timedelta(hours=-5)

    def test_unknown_time_zone(self):
        with pytest.raises(pydantic.ValidationError):
            BookingRequest.model_validate({"timeZone": "Mars/Olympus",
                                           "startTime": "2025-01-01T10:00:00Z",
                                           "endTime": "2025-01-01T11:00:00Z"})

    def test_metadata_values_must_be_strings(self):
        with pytest.raises(pydantic.ValidationError):
            BookingRequest.model_validate({"startTime": "2025-01-01T10:00:00Z",
                                           "endTime": "2025-01-01T11:00:00Z",
                                           "metadata": {"retries": 3}})
