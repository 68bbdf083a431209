import asyncio
import inspect
import threading
import time
from enum import Enum
from typing import Any, Callable, Optional

from booking_service.config import Config
from booking_service.errors import ProviderUnavailableError
from booking_service.logging_config import logger
from booking_service.timeout_guard import guard


class AuthState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    CACHED = "cached"


async def _invoke(factory: Callable[[], Any]) -> Any:
    """Await async factories, push blocking ones onto a worker thread."""
    if inspect.iscoroutinefunction(factory) or inspect.iscoroutinefunction(getattr(factory, "__call__", None)):
        return await factory()
    return await asyncio.to_thread(factory)


class AuthClientCache:
    """
    Process-wide authenticated calendar client.

    State machine::

        uninitialized -> initializing -> cached
                              |
                              +-> uninitialized   (initializer failed)

    ``get()`` returns the cached client without I/O once it exists. Otherwise it
    starts (or joins) a single in-flight initialization and waits at most
    ``init_timeout_ms`` for it. If that wait times out or the initializer
    fails, the caller gets a fresh client from ``fallback_factory`` that is
    never cached, so a slow auth provider degrades requests instead of
    wedging them. An initialization that finishes after its callers gave up
    still populates the cache.
    A caller on a different event loop (another thread) never awaits an
    initialization owned by another loop; it is served a fallback client.
    """

    def __init__(self, initializer: Callable[[], Any], fallback_factory: Callable[[], Any],
                 init_timeout_ms: int = Config.AUTH_INIT_TIMEOUT_MS,
                 ttl_seconds: Optional[float] = Config.AUTH_CLIENT_TTL_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self._initializer = initializer
        self._fallback_factory = fallback_factory
        self.init_timeout_ms = init_timeout_ms
        self.ttl_seconds = ttl_seconds
        self._clock = clock

        # Guards the state transitions when the host runs several threads
        self._lock = threading.Lock()
        self._state = AuthState.UNINITIALIZED
        self._client = None
        self._cached_at = 0.0
        self._init_task: Optional[asyncio.Future] = None

        self.initialization_attempts = 0
        self.fallbacks_served = 0

    @property
    def state(self) -> AuthState:
        self._expire_if_stale()
        return self._state

    async def get(self):
        client = self._cached_client()
        if client is not None:
            return client

        task = self._start_or_join()
        if task is None:
            logger.info("Auth client initialization in progress on another event loop; "
                        "serving uncached fallback client")
            return await self._fallback()

        try:
            return await guard(
                task, self.init_timeout_ms,
                f"Auth client initialization exceeded {self.init_timeout_ms}ms",
                cancel_on_timeout=False,
            )
        except TimeoutError as e:
            logger.warning(f"{e}; serving uncached fallback client")
        except Exception as e:
            logger.warning(f"Auth client initialization failed ({type(e).__name__}: {e}); "
                           f"serving uncached fallback client")

        return await self._fallback()

    def invalidate(self):
        """Drop the cached client so the next call authenticates again."""
        with self._lock:
            if self._state == AuthState.CACHED:
                self._state = AuthState.UNINITIALIZED
            self._client = None
        logger.info("Auth client cache invalidated")

    def _cached_client(self):
        self._expire_if_stale()
        with self._lock:
            if self._state == AuthState.CACHED:
                return self._client
        return None

    def _expire_if_stale(self):
        if self.ttl_seconds is None:
            return
        with self._lock:
            expired = (
                self._state == AuthState.CACHED
                and self._clock() - self._cached_at >= self.ttl_seconds
            )
        if expired:
            logger.info(f"Cached auth client older than {self.ttl_seconds}s, expiring")
            self.invalidate()

    def _start_or_join(self) -> Optional[asyncio.Future]:
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._state == AuthState.INITIALIZING and self._init_task is not None:
                # A task bound to another thread's loop cannot be awaited from this one
                if self._init_task.get_loop() is not loop:
                    return None
                return self._init_task
            self._state = AuthState.INITIALIZING
            self.initialization_attempts += 1
            self._init_task = asyncio.ensure_future(self._initialize())
            return self._init_task

    async def _initialize(self):
        logger.info("Initializing authenticated calendar client")
        try:
            client = await _invoke(self._initializer)
        except BaseException:
            with self._lock:
                self._state = AuthState.UNINITIALIZED
                self._init_task = None
            raise

        with self._lock:
            self._client = client
            self._cached_at = self._clock()
            self._state = AuthState.CACHED
            self._init_task = None
        logger.info("Authenticated calendar client cached")
        return client

    async def _fallback(self):
        self.fallbacks_served += 1
        try:
            return await _invoke(self._fallback_factory)
        except Exception as e:
            logger.error(f"Fallback calendar client could not be built: {e}")
            raise ProviderUnavailableError(f"Calendar client unavailable: {e}", stage="client") from e
