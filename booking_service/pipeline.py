import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple, Union

import pydantic

from booking_service.errors import BookingError, ConflictError, PipelineError, ValidationError
from booking_service.gateway import CalendarGateway
from booking_service.logging_config import logger
from booking_service.schemas import AvailabilityResult, BookingRequest, CalendarEvent, TimeWindow


class Stage(str, Enum):
    RECEIVED = "received"
    PARSED = "parsed"
    CLIENT_OBTAINED = "client_obtained"
    AVAILABILITY_CHECKED = "availability_checked"
    EVENT_CREATED = "event_created"
    RESPONDED = "responded"
    FAILED = "failed"


# Stage that is running while the pipeline sits in a given state
_ACTIVE_STAGE = {
    Stage.RECEIVED: "parse",
    Stage.PARSED: "client",
    Stage.CLIENT_OBTAINED: "availability",
    Stage.AVAILABILITY_CHECKED: "create",
    Stage.EVENT_CREATED: "respond",
}


class StageTimer:
    """Wall-clock elapsed time since the first stage began, one entry per transition"""

    def __init__(self, clock: Callable[[], float] = time.perf_counter):
        self._clock = clock
        self._started = clock()
        self.records: List[Tuple[str, float]] = []

    def mark(self, stage: Stage):
        elapsed_ms = round((self._clock() - self._started) * 1000, 2)
        self.records.append((stage.value, elapsed_ms))


@dataclass
class PipelineResult:
    state: Stage
    event: Optional[CalendarEvent] = None
    availability: Optional[AvailabilityResult] = None
    error: Optional[BookingError] = None
    timings: List[Tuple[str, float]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def failed_stage(self) -> Optional[str]:
        return self.error.stage if self.error else None


def _validation_error(e: pydantic.ValidationError) -> ValidationError:
    details = []
    for err in e.errors(include_url=False):
        location = ".".join(str(part) for part in err.get("loc", ()))
        message = err.get("msg", "invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        details.append({"field": location or None, "message": message})

    first = details[0] if details else {"field": None, "message": "invalid request"}
    summary = f"{first['field']}: {first['message']}" if first["field"] else first["message"]
    return ValidationError(summary, details=details)


class RequestPipeline:
    """
    Drives one booking request through its stages:

        received -> parsed -> client_obtained -> availability_checked
                 -> event_created -> responded

    Any stage may end in ``failed``. Failures are returned in the result,
    tagged with the stage that raised them, and are never retried here.
    """

    def __init__(self, gateway: CalendarGateway, clock: Callable[[], float] = time.perf_counter):
        self.gateway = gateway
        self._clock = clock

    @staticmethod
    def parse(raw_payload: Union[bytes, str, dict, BookingRequest]) -> BookingRequest:
        if isinstance(raw_payload, BookingRequest):
            return raw_payload
        try:
            if isinstance(raw_payload, (bytes, bytearray, str)):
                if not raw_payload.strip():
                    raise ValidationError("Request body is empty")
                return BookingRequest.model_validate_json(raw_payload)
            if isinstance(raw_payload, dict):
                return BookingRequest.model_validate(raw_payload)
        except pydantic.ValidationError as e:
            raise _validation_error(e) from None
        raise ValidationError("Request body must be a JSON object")

    async def run(self, raw_payload: Any) -> PipelineResult:
        timer = StageTimer(self._clock)
        state = Stage.RECEIVED
        result = PipelineResult(state=state, timings=timer.records)

        try:
            request = self.parse(raw_payload)
            state = self._advance(timer, Stage.PARSED)

            client = await self.gateway.get_client()
            state = self._advance(timer, Stage.CLIENT_OBTAINED)

            window = TimeWindow(start_time=request.start_time, end_time=request.end_time)
            availability = await self.gateway.check_availability(window, client)
            result.availability = availability
            state = self._advance(timer, Stage.AVAILABILITY_CHECKED)
            if not availability.is_available:
                raise ConflictError(
                    f"Requested slot overlaps {len(availability.conflicting_events)} existing event(s)",
                    conflicting_events=availability.conflicting_events,
                )

            result.event = await self.gateway.create_event(request, client)
            state = self._advance(timer, Stage.EVENT_CREATED)
        except Exception as e:
            result.error = self._tag(e, state)
            result.state = self._advance(timer, Stage.FAILED)
            self._log_outcome(result)
            return result

        result.state = self._advance(timer, Stage.RESPONDED)
        self._log_outcome(result)
        return result

    async def availability(self, raw_window: Any) -> PipelineResult:
        """Run only the client and availability stages for a time window"""
        timer = StageTimer(self._clock)
        state = Stage.RECEIVED
        result = PipelineResult(state=state, timings=timer.records)

        try:
            try:
                window = raw_window if isinstance(raw_window, TimeWindow) else TimeWindow.model_validate(raw_window)
            except pydantic.ValidationError as e:
                raise _validation_error(e) from None
            state = self._advance(timer, Stage.PARSED)

            client = await self.gateway.get_client()
            state = self._advance(timer, Stage.CLIENT_OBTAINED)

            result.availability = await self.gateway.check_availability(window, client)
            state = self._advance(timer, Stage.AVAILABILITY_CHECKED)
        except Exception as e:
            result.error = self._tag(e, state)
            result.state = self._advance(timer, Stage.FAILED)
            self._log_outcome(result)
            return result

        result.state = self._advance(timer, Stage.RESPONDED)
        self._log_outcome(result)
        return result

    @staticmethod
    def _advance(timer: StageTimer, stage: Stage) -> Stage:
        timer.mark(stage)
        return stage

    @staticmethod
    def _tag(e: Exception, state: Stage) -> BookingError:
        stage = _ACTIVE_STAGE.get(state, state.value)
        if isinstance(e, BookingError):
            if e.stage is None:
                e.stage = stage
            return e
        logger.exception(f"Unexpected failure in stage '{stage}'")
        return PipelineError(f"Unexpected failure in stage '{stage}': {e}", stage=stage)

    @staticmethod
    def _log_outcome(result: PipelineResult):
        timings = ", ".join(f"{stage}={elapsed}ms" for stage, elapsed in result.timings)
        if result.ok:
            logger.info(f"Pipeline completed: {timings}")
        else:
            logger.warning(f"Pipeline failed at stage '{result.failed_stage}' "
                           f"({type(result.error).__name__}: {result.error.message}): {timings}")
