from typing import Any, Dict, List, Optional


class BookingError(Exception):
    """Base class for failures surfaced by the booking pipeline and rate limiter"""

    status_code = 500
    error = "Booking Failed"

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": self.error, "message": self.message}
        if self.stage:
            payload["stage"] = self.stage
        return payload


class ValidationError(BookingError):
    status_code = 400
    error = "Validation Error"

    def __init__(self, message: str, stage: str = "parse", details: Optional[List[Dict]] = None):
        super().__init__(message, stage)
        self.details = details or []

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        if self.details:
            payload["details"] = self.details
        return payload


class ConflictError(BookingError):
    """The requested slot overlaps existing events. Not a system failure."""

    status_code = 409
    error = "Conflict"

    def __init__(self, message: str, conflicting_events: List[Dict], stage: str = "availability"):
        super().__init__(message, stage)
        self.conflicting_events = conflicting_events

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["conflictingEvents"] = self.conflicting_events
        return payload


class StageTimeoutError(BookingError):
    status_code = 503
    error = "Stage Timeout"
    outcome_unknown = False

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["outcomeUnknown"] = self.outcome_unknown
        return payload


class BodyReadTimeoutError(StageTimeoutError):
    status_code = 408
    error = "Request Timeout"

    def __init__(self, message: str, stage: str = "parse"):
        super().__init__(message, stage)


class AuthTimeoutError(StageTimeoutError):
    error = "Auth Timeout"

    def __init__(self, message: str, stage: str = "client"):
        super().__init__(message, stage)


class AvailabilityTimeoutError(StageTimeoutError):
    error = "Availability Timeout"

    def __init__(self, message: str, stage: str = "availability"):
        super().__init__(message, stage)


class CreationTimeoutError(StageTimeoutError):
    """The provider may still create the event after we stop waiting."""

    error = "Creation Timeout"
    outcome_unknown = True

    def __init__(self, message: str, stage: str = "create"):
        super().__init__(message, stage)


class ProviderUnavailableError(BookingError):
    status_code = 503
    error = "Provider Unavailable"

    def __init__(self, message: str, stage: str, provider_status: Optional[int] = None):
        super().__init__(message, stage)
        self.provider_status = provider_status

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        if self.provider_status is not None:
            payload["providerStatus"] = self.provider_status
        return payload


class RateLimitExceeded(BookingError):
    status_code = 429
    error = "Too Many Requests"

    def __init__(self, message: str, retry_after_ms: int, stage: str = "rate_limit"):
        super().__init__(message, stage)
        self.retry_after_ms = retry_after_ms

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["retryAfterMs"] = self.retry_after_ms
        return payload


class PipelineError(BookingError):
    """Unexpected failure inside a pipeline stage"""

    status_code = 500
    error = "Pipeline Error"

    def __init__(self, message: str, stage: str):
        super().__init__(message, stage)
