import asyncio
from typing import Optional

from googleapiclient.errors import HttpError

from booking_service.auth_cache import AuthClientCache
from booking_service.calendar_service import GoogleCalendarService, event_reference
from booking_service.config import Config
from booking_service.errors import (
    AuthTimeoutError,
    AvailabilityTimeoutError,
    BookingError,
    CreationTimeoutError,
    ProviderUnavailableError,
)
from booking_service.logging_config import logger
from booking_service.schemas import AvailabilityResult, BookingRequest, CalendarEvent, TimeWindow
from booking_service.timeout_guard import guard


def _provider_error(e: Exception, stage: str) -> ProviderUnavailableError:
    if isinstance(e, HttpError):
        status = getattr(e.resp, "status", None)
        reason = e.reason if hasattr(e, "reason") else "Unknown error"
        logger.error(f"Google Calendar API error during {stage}: {status} {reason}")
        return ProviderUnavailableError(
            f"Calendar provider error during {stage}: {reason}", stage=stage,
            provider_status=int(status) if status is not None else None,
        )
    logger.error(f"Calendar provider failure during {stage}: {type(e).__name__}: {e}")
    return ProviderUnavailableError(f"Calendar provider unreachable during {stage}: {e}", stage=stage)


class CalendarGateway:
    """Provider operations used by the pipeline, each under its own time budget"""

    def __init__(self, calendar_service: GoogleCalendarService, auth_cache: AuthClientCache,
                 get_client_timeout_ms: int = Config.GET_CLIENT_TIMEOUT_MS,
                 availability_timeout_ms: int = Config.AVAILABILITY_TIMEOUT_MS,
                 create_timeout_ms: int = Config.CREATE_EVENT_TIMEOUT_MS):
        self.calendar_service = calendar_service
        self.auth_cache = auth_cache
        self.get_client_timeout_ms = get_client_timeout_ms
        self.availability_timeout_ms = availability_timeout_ms
        self.create_timeout_ms = create_timeout_ms

    async def get_client(self):
        try:
            return await guard(
                self.auth_cache.get(), self.get_client_timeout_ms,
                f"Calendar client not obtained within {self.get_client_timeout_ms}ms",
            )
        except TimeoutError as e:
            logger.warning(str(e))
            raise AuthTimeoutError(str(e)) from e
        except BookingError:
            raise
        except Exception as e:
            raise _provider_error(e, "client") from e

    async def check_availability(self, window: TimeWindow, client=None) -> AvailabilityResult:
        if client is None:
            client = await self.get_client()
        try:
            events = await guard(
                asyncio.to_thread(self.calendar_service.list_events, client, window.start_time, window.end_time),
                self.availability_timeout_ms,
                f"Availability check exceeded {self.availability_timeout_ms}ms",
            )
        except TimeoutError as e:
            logger.warning(str(e))
            raise AvailabilityTimeoutError(str(e)) from e
        except Exception as e:
            raise _provider_error(e, "availability") from e

        conflicts = [event_reference(event) for event in events]
        if conflicts:
            for conflict in conflicts:
                logger.info(f"Conflict with: {conflict['summary']} at {conflict['start']}")
        return AvailabilityResult(is_available=not conflicts, conflicting_events=conflicts)

    async def create_event(self, request: BookingRequest, client=None) -> CalendarEvent:
        if client is None:
            client = await self.get_client()
        try:
            return await guard(
                asyncio.to_thread(self.calendar_service.insert_event, client, request),
                self.create_timeout_ms,
                f"Event creation exceeded {self.create_timeout_ms}ms; the event may still be created",
            )
        except TimeoutError as e:
            logger.warning(str(e))
            raise CreationTimeoutError(str(e)) from e
        except Exception as e:
            raise _provider_error(e, "create") from e


def build_gateway(calendar_service: Optional[GoogleCalendarService] = None) -> CalendarGateway:
    calendar_service = calendar_service or GoogleCalendarService()
    auth_cache = AuthClientCache(
        calendar_service.build_authenticated_client,
        calendar_service.build_fallback_client,
    )
    return CalendarGateway(calendar_service, auth_cache)
