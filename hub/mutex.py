"""Single-flight guard for plugin operations.

At most one operation per plugin name may be in flight. A second caller
for the same name waits on an asyncio.Condition until the first releases
the key, or gives up after a timeout. Operations on different plugins
never wait on each other.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from .errors import OperationInProgressError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = structlog.get_logger(__name__)


@dataclass
class FlightInfo:
    """Information about an in-flight operation."""

    key: str
    holder: str
    acquired_at: float = field(default_factory=time.monotonic)

    @property
    def hold_duration(self) -> float:
        """Return how long the key has been held in seconds."""
        return time.monotonic() - self.acquired_at


class SingleFlightGuard:
    """Serialises operations that share a key.

    Example:
        >>> guard = SingleFlightGuard()
        >>> async with guard.hold("vatACARS", holder="install"):
        ...     ...
    """

    def __init__(self, default_timeout: float = 600.0) -> None:
        """Initialize the guard.

        Args:
            default_timeout: Seconds a caller waits for a busy key.
        """
        self._held: dict[str, FlightInfo] = {}
        self._condition = asyncio.Condition()
        self._default_timeout = default_timeout
        self._log = logger.bind(component="single_flight")

    @property
    def default_timeout(self) -> float:
        """Return the default wait timeout in seconds."""
        return self._default_timeout

    def is_held(self, key: str) -> bool:
        """Check whether an operation on ``key`` is in flight."""
        return key in self._held

    def holder(self, key: str) -> str | None:
        """Return who holds ``key``, if anyone."""
        info = self._held.get(key)
        return info.holder if info else None

    def get_state(self) -> dict[str, FlightInfo]:
        """Return a snapshot of held keys."""
        return dict(self._held)

    async def acquire(self, key: str, holder: str = "", timeout: float | None = None) -> None:
        """Acquire ``key``, waiting while another operation holds it.

        Args:
            key: Key to acquire (the plugin name).
            holder: Description of the acquiring operation.
            timeout: Maximum wait in seconds. Uses the default if None.

        Raises:
            OperationInProgressError: If the key is still held when the
                timeout expires.
        """
        timeout = self._default_timeout if timeout is None else timeout
        started = time.monotonic()
        deadline = started + timeout
        log = self._log.bind(key=key, holder=holder)

        async with self._condition:
            while key in self._held:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    current = self._held[key].holder
                    log.warning("single_flight_timeout", held_by=current, waited=timeout)
                    raise OperationInProgressError(key, current, time.monotonic() - started)

                log.debug("single_flight_waiting", held_by=self._held[key].holder)
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._condition.wait(), timeout=remaining)

            self._held[key] = FlightInfo(key=key, holder=holder)
            log.debug("single_flight_acquired", waited=round(time.monotonic() - started, 3))

    async def release(self, key: str, holder: str | None = None) -> None:
        """Release ``key`` and wake waiters.

        Args:
            key: Key to release.
            holder: If given, only release when this holder owns the key.
        """
        async with self._condition:
            info = self._held.get(key)
            if info is None:
                return
            if holder is not None and info.holder != holder:
                self._log.warning("single_flight_release_not_owner", key=key, holder=holder, owner=info.holder)
                return

            del self._held[key]
            self._log.debug("single_flight_released", key=key, duration=round(info.hold_duration, 3))
            self._condition.notify_all()

    @contextlib.asynccontextmanager
    async def hold(self, key: str, holder: str = "", timeout: float | None = None) -> AsyncIterator[None]:
        """Hold ``key`` for the duration of a block."""
        await self.acquire(key, holder, timeout)
        try:
            yield
        finally:
            await self.release(key, holder)
