"""
Session store: current identity plus the "still determining" latch.

Behavior:
    - `start()` subscribes to auth events and schedules one initial session
      fetch together with a safety timer. Whichever finishes first releases
      the loading latch; a late initial fetch is still applied.
    - Every auth event bumps an epoch. The initial fetch only applies its
      identity when no event arrived while it was in flight.
    - Sign-out (local or pushed) clears the identity synchronously and
      releases the latch. The outbound call runs in the background and its
      failure is only logged.

The store does not know about profiles. The owning context observes it.
"""
from __future__ import annotations

import asyncio
from typing import Optional, Protocol

import structlog

from .domain import Identity
from .ports import (
    INITIAL_SESSION,
    SIGNED_OUT,
    AuthServicePort,
    AuthSubscription,
)
from .tasks import BackgroundTasks

logger = structlog.get_logger("onluyen.auth_state.session")

INITIAL_FETCH = "initial_fetch"
AUTH_EVENT = "auth_event"
SAFETY_TIMEOUT = "safety_timeout"


class LoadingLatch:
    """One-shot completion signal; remembers which source released it."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.released_by: Optional[str] = None

    @property
    def released(self) -> bool:
        return self._event.is_set()

    def release(self, source: str) -> bool:
        """Release the latch; returns False when it had already fired."""
        if self._event.is_set():
            return False
        self.released_by = source
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()


class SessionObserver(Protocol):
    def session_event(self, event: str, previous: Optional[Identity], current: Optional[Identity]) -> None: ...

    async def identity_observed(self, identity: Identity, event: str) -> None: ...

    def loading_finished(self, source: str) -> None: ...


class SessionStore:
    def __init__(
        self,
        auth: AuthServicePort,
        observer: SessionObserver,
        *,
        tasks: BackgroundTasks,
        safety_timeout: float = 5.0,
    ) -> None:
        self._auth = auth
        self._observer = observer
        self._tasks = tasks
        self._safety_timeout = safety_timeout
        self._identity: Optional[Identity] = None
        self._epoch = 0
        self._subscription: Optional[AuthSubscription] = None
        self._timer: Optional[asyncio.Task] = None
        self.latch = LoadingLatch()

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def loading(self) -> bool:
        return not self.latch.released

    @property
    def epoch(self) -> int:
        return self._epoch

    async def start(self) -> None:
        if self._subscription is not None:
            return
        self._subscription = self._auth.on_auth_state_change(self._on_auth_event)
        start_epoch = self._epoch
        self._tasks.spawn(self._initial_fetch(start_epoch), name="auth-initial-fetch")
        self._timer = self._tasks.spawn(self._safety_timer(), name="auth-safety-timer")

    def replace_identity(self, identity: Identity) -> None:
        """Swap in a newer copy of the current identity (same id)."""
        if self._identity is not None and self._identity.id == identity.id:
            self._identity = identity

    def release(self, source: str) -> None:
        if not self.latch.release(source):
            return
        if self._timer is not None and source != SAFETY_TIMEOUT:
            self._timer.cancel()
        self._observer.loading_finished(source)

    async def _initial_fetch(self, start_epoch: int) -> None:
        try:
            identity = await self._auth.get_session()
        except Exception as exc:
            logger.warning("auth_session_fetch_failed", error=exc.__class__.__name__)
            self.release(INITIAL_FETCH)
            return
        if self._epoch != start_epoch:
            # an auth event already reported something newer; its pass releases the latch
            return
        previous = self._identity
        self._identity = identity
        self._observer.session_event(INITIAL_SESSION, previous, identity)
        try:
            if identity is not None:
                await self._observer.identity_observed(identity, INITIAL_SESSION)
        finally:
            self.release(INITIAL_FETCH)

    async def _safety_timer(self) -> None:
        await asyncio.sleep(self._safety_timeout)
        if not self.latch.released:
            logger.warning("auth_loading_timed_out", timeout=self._safety_timeout)
            self.release(SAFETY_TIMEOUT)

    def _on_auth_event(self, event: str, identity: Optional[Identity]) -> None:
        self._epoch += 1
        if event == SIGNED_OUT or identity is None:
            self._clear(event)
            return
        previous = self._identity
        self._identity = identity
        self._observer.session_event(event, previous, identity)
        self._tasks.spawn(self._observe(identity, event), name=f"auth-event-{event.lower()}")

    async def _observe(self, identity: Identity, event: str) -> None:
        try:
            await self._observer.identity_observed(identity, event)
        finally:
            self.release(AUTH_EVENT)

    def _clear(self, event: str) -> None:
        previous = self._identity
        self._identity = None
        self._observer.session_event(event, previous, None)
        self.release(AUTH_EVENT)

    def sign_out(self) -> None:
        """Clear locally now; confirm with the auth service in the background."""
        self._epoch += 1
        self._clear(SIGNED_OUT)
        self._tasks.spawn(self._remote_sign_out(), name="auth-sign-out")

    async def _remote_sign_out(self) -> None:
        try:
            await self._auth.sign_out()
        except Exception as exc:
            logger.warning("sign_out_failed", error=exc.__class__.__name__)

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        if self._timer is not None:
            self._timer.cancel()


__all__ = ["SessionStore", "SessionObserver", "LoadingLatch", "INITIAL_FETCH", "AUTH_EVENT", "SAFETY_TIMEOUT"]
