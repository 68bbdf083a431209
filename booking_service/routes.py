from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from typing import Dict, FrozenSet, Optional

from booking_service.config import Config
from booking_service.errors import BodyReadTimeoutError, RateLimitExceeded
from booking_service.logging_config import logger
from booking_service.schemas import BookingResponse, StageTiming
from booking_service.timeout_guard import guard

router = APIRouter(tags=["booking"])

def client_identity(request: Request, trusted_proxies: FrozenSet[str] = frozenset()) -> str:
    """
    Identity used for rate limiting: the client address.

    Caller-supplied headers are ignored unless the socket peer is a trusted
    proxy. Then the nearest untrusted X-Forwarded-For hop is used, so a client
    cannot rotate its identity by prepending addresses of its own.
    """
    peer = request.client.host if request.client and request.client.host else None

    if peer in trusted_proxies:
        forwarded = request.headers.get("x-forwarded-for", "")
        hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
        for hop in reversed(hops):
            if hop not in trusted_proxies:
                return "ip:" + hop

    return "ip:" + (peer or "unknown")


async def enforce_rate_limit(request: Request):
    """Route dependency; runs before the body is read and never touches it"""
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        return

    trusted = getattr(request.app.state, "trusted_proxies", frozenset())
    identity = client_identity(request, trusted)
    decision = await limiter.admit(identity)
    request.state.rate_limit_headers = decision.headers()
    if not decision.allowed:
        raise RateLimitExceeded(
            f"Too many requests. Retry after {decision.retry_after_ms}ms.",
            retry_after_ms=decision.retry_after_ms,
        )


def rate_limit_headers(request: Request) -> Dict[str, str]:
    return getattr(request.state, "rate_limit_headers", {})


def _timings(result) -> list:
    return [StageTiming(stage=stage, elapsed_ms=elapsed) for stage, elapsed in result.timings]


@router.post("/events", status_code=201, dependencies=[Depends(enforce_rate_limit)])
async def book_event(request: Request):
    """Book an event on the calendar after checking the slot is free"""
    try:
        body = await guard(
            request.body(), Config.BODY_READ_TIMEOUT_MS,
            f"Request body not received within {Config.BODY_READ_TIMEOUT_MS}ms",
        )
    except TimeoutError as e:
        logger.error(str(e))
        raise BodyReadTimeoutError(str(e)) from e

    result = await request.app.state.pipeline.run(body)
    if not result.ok:
        raise result.error

    event = result.event
    response = BookingResponse(
        id=event.id,
        start=event.start,
        end=event.end,
        attendees=event.attendees,
        status=event.status,
        html_link=event.html_link,
        timings=_timings(result),
    )
    return JSONResponse(
        status_code=201,
        content=response.model_dump(mode="json", by_alias=True),
        headers=rate_limit_headers(request),
    )


@router.get("/availability", dependencies=[Depends(enforce_rate_limit)])
async def check_availability(request: Request, startTime: Optional[str] = None, endTime: Optional[str] = None):
    """Report whether a time window is free"""
    result = await request.app.state.pipeline.availability({"startTime": startTime, "endTime": endTime})
    if not result.ok:
        raise result.error

    return JSONResponse(
        content=result.availability.model_dump(mode="json", by_alias=True),
        headers=rate_limit_headers(request),
    )
