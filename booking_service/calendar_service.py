from google.oauth2 import service_account
from google.auth.transport.requests import Request
from googleapiclient.discovery import build
from datetime import datetime
from booking_service.config import Config
from booking_service.logging_config import logger
from booking_service.schemas import BookingRequest, CalendarEvent, EventStatus, parse_calendar_time
import os
from typing import Any, Dict, List, Optional

SCOPES = ['https://www.googleapis.com/auth/calendar']

_STATUS_MAP = {
    'confirmed': EventStatus.CONFIRMED,
    'tentative': EventStatus.PENDING,
    'cancelled': EventStatus.CANCELLED,
}


class GoogleCalendarService:
    """
    Blocking Google Calendar v3 calls used by the gateway.

    Every method here performs network I/O on the calling thread; callers are
    expected to offload them with ``asyncio.to_thread``.
    """

    def __init__(self, calendar_id: Optional[str] = None, service_account_file: Optional[str] = None):
        self.calendar_id = calendar_id or Config.GOOGLE_CALENDAR_ID
        self.service_account_file = service_account_file or Config.SERVICE_ACCOUNT_FILE

    def _load_credentials(self):
        if not os.path.exists(self.service_account_file):
            raise FileNotFoundError(f"Service account file not found: {self.service_account_file}")
        return service_account.Credentials.from_service_account_file(
            self.service_account_file, scopes=SCOPES)

    def build_authenticated_client(self):
        """Load credentials, perform the token handshake up front and build the service."""
        credentials = self._load_credentials()
        credentials.refresh(Request())
        client = build('calendar', 'v3', credentials=credentials, cache_discovery=False)
        logger.info("Authenticated calendar client built")
        return client

    def build_fallback_client(self):
        """Build a service that authenticates lazily on its first request."""
        credentials = self._load_credentials()
        return build('calendar', 'v3', credentials=credentials, cache_discovery=False)

    def list_events(self, client, start_time: datetime, end_time: datetime) -> List[Dict[str, Any]]:
        """Return active (non-cancelled) events overlapping [start_time, end_time)."""
        events_result = client.events().list(
            calendarId=self.calendar_id,
            timeMin=start_time.isoformat(),
            timeMax=end_time.isoformat(),
            singleEvents=True,
            orderBy='startTime',
            fields='items(id,summary,start,end,status,htmlLink)'
        ).execute()

        events = events_result.get('items', [])
        return [
            event for event in events
            if event.get('status', '').lower() != 'cancelled'
        ]

    def insert_event(self, client, request: BookingRequest) -> CalendarEvent:
        time_zone = request.time_zone or Config.DEFAULT_TIMEZONE
        event_data = {
            'summary': request.summary,
            'start': {
                'dateTime': request.start_time.isoformat(),
                'timeZone': time_zone
            },
            'end': {
                'dateTime': request.end_time.isoformat(),
                'timeZone': time_zone
            },
            'status': 'confirmed'
        }

        if request.description:
            event_data['description'] = request.description
        if request.location:
            event_data['location'] = request.location
        if request.attendees:
            event_data['attendees'] = [{'email': attendee} for attendee in request.attendees]
        if request.metadata:
            event_data['extendedProperties'] = {'private': dict(request.metadata)}

        created_event = client.events().insert(
            calendarId=self.calendar_id,
            body=event_data,
            sendUpdates='all' if request.attendees else 'none'
        ).execute()

        logger.info(f"Event created successfully: {created_event.get('id')}")
        return to_calendar_event(created_event, request)


def event_reference(event: Dict[str, Any]) -> Dict[str, Any]:
    """Reduce a provider event resource to the reference returned for conflicts"""
    return {
        'id': event.get('id'),
        'summary': event.get('summary', 'Untitled'),
        'start': _event_time(event.get('start')),
        'end': _event_time(event.get('end')),
    }


def to_calendar_event(resource: Dict[str, Any], request: Optional[BookingRequest] = None) -> CalendarEvent:
    start = _event_time(resource.get('start'))
    end = _event_time(resource.get('end'))
    attendees = [a.get('email', '') for a in resource.get('attendees', []) if a.get('email')]

    # The insert response may omit times; fall back to what was requested
    if request is not None:
        start_time = parse_calendar_time(start) if start else request.start_time
        end_time = parse_calendar_time(end) if end else request.end_time
    elif start and end:
        start_time, end_time = parse_calendar_time(start), parse_calendar_time(end)
    else:
        raise ValueError(f"Calendar event {resource.get('id')} has no start/end time")

    return CalendarEvent(
        id=resource['id'],
        start=start_time,
        end=end_time,
        attendees=attendees or (list(request.attendees) if request else []),
        status=_STATUS_MAP.get(resource.get('status', 'confirmed'), EventStatus.CONFIRMED),
        summary=resource.get('summary'),
        html_link=resource.get('htmlLink'),
    )


def _event_time(value: Optional[Dict[str, Any]]) -> Optional[str]:
    if not value:
        return None
    return value.get('dateTime', value.get('date'))
