from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum
import dateutil.parser
import pytz

from booking_service.config import Config


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


def parse_calendar_time(value: Any, timezone: Optional[str] = None) -> datetime:
    """Parse an ISO-8601 calendar timestamp, localizing naive values"""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = dateutil.parser.isoparse(value.strip())
        except (ValueError, OverflowError):
            raise ValueError(f"'{value}' is not a valid calendar timestamp")
    else:
        raise ValueError("timestamp must be a non-empty ISO-8601 string")

    if parsed.tzinfo is None:
        try:
            tz = pytz.timezone(timezone or Config.DEFAULT_TIMEZONE)
        except pytz.UnknownTimeZoneError:
            raise ValueError(f"unknown time zone '{timezone}'")
        parsed = tz.localize(parsed)
    return parsed


class BookingRequest(CamelModel):
    # time_zone is declared first so the timestamp validators can see it
    time_zone: Optional[str] = Field(default=None, alias="timeZone")
    start_time: datetime = Field(alias="startTime")
    end_time: datetime = Field(alias="endTime")
    attendees: List[str] = Field(default_factory=list)
    metadata: Dict[str, str] = Field(default_factory=dict)
    summary: str = "Booking"
    description: Optional[str] = None
    location: Optional[str] = None

    @field_validator("time_zone")
    @classmethod
    def known_time_zone(cls, value):
        if value is not None and value not in pytz.all_timezones_set:
            raise ValueError(f"unknown time zone '{value}'")
        return value

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def parse_timestamp(cls, value, info):
        return parse_calendar_time(value, info.data.get("time_zone"))

    @field_validator("attendees")
    @classmethod
    def dedupe_attendees(cls, value):
        seen = set()
        ordered = []
        for attendee in value:
            attendee = attendee.strip()
            if not attendee:
                raise ValueError("attendee identifiers must be non-empty")
            if attendee not in seen:
                seen.add(attendee)
                ordered.append(attendee)
        return ordered

    @model_validator(mode="after")
    def start_before_end(self):
        if self.start_time >= self.end_time:
            raise ValueError("startTime must be before endTime")
        return self


class TimeWindow(CamelModel):
    start_time: datetime = Field(alias="startTime")
    end_time: datetime = Field(alias="endTime")

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def parse_timestamp(cls, value):
        return parse_calendar_time(value)

    @model_validator(mode="after")
    def start_before_end(self):
        if self.start_time >= self.end_time:
            raise ValueError("startTime must be before endTime")
        return self


class EventStatus(str, Enum):
    CONFIRMED = "confirmed"
    PENDING = "pending"
    CANCELLED = "cancelled"


class CalendarEvent(CamelModel):
    """Event as created by the provider. Never mutated after creation."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    start: datetime
    end: datetime
    attendees: List[str] = Field(default_factory=list)
    status: EventStatus = EventStatus.CONFIRMED
    summary: Optional[str] = None
    html_link: Optional[str] = Field(default=None, alias="htmlLink")


class AvailabilityResult(CamelModel):
    is_available: bool = Field(alias="isAvailable")
    conflicting_events: List[Dict[str, Any]] = Field(default_factory=list, alias="conflictingEvents")


class StageTiming(CamelModel):
    stage: str
    elapsed_ms: float = Field(alias="elapsedMs")


class BookingResponse(CamelModel):
    id: str
    start: datetime
    end: datetime
    attendees: List[str]
    status: EventStatus
    html_link: Optional[str] = Field(default=None, alias="htmlLink")
    timings: List[StageTiming] = Field(default_factory=list)


class HealthResponse(BaseModel):
    ok: bool
    service: str
    version: str
    timestamp: str
