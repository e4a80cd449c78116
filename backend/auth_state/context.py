"""
Auth context: the single owner of identity, profile and verdict state.

Why:
    Screens need one place to read "who is signed in and what may they do".
    The context wires the session store, role-intent bridge, profile resolver
    and status refresher together and publishes snapshots to listeners.

Pipeline per observed identity (initial session or sign-in):
    reconcile role intent -> resolve profile (create if missing) -> verdict.
Reconciliation always completes before the profile read of the same pass.

Usage:
    ctx = AuthContext(auth_service, profile_store)
    await ctx.start()
    await ctx.wait_until_ready()
    ctx.snapshot().verdict
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import structlog

from .domain import Identity, Profile
from .fragments import RedirectFragment, parse_redirect_fragment
from .gate import LOADING, Verdict, decide_verdict, navigation_target
from .ports import (
    INITIAL_SESSION,
    PASSWORD_RECOVERY,
    SIGNED_IN,
    SIGNED_OUT,
    TOKEN_REFRESHED,
    AuthServicePort,
    ProfileStorePort,
)
from .profiles import DENIED, FOUND, UNAVAILABLE, ProfileResolver, ResolveResult
from .role_intent import RoleIntentBridge, RoleIntentStore
from .session import SessionStore
from .status import StatusRefresher
from .tasks import BackgroundTasks

logger = structlog.get_logger("onluyen.auth_state.context")

RECONCILE_EVENTS = frozenset({INITIAL_SESSION, SIGNED_IN})


@dataclass(frozen=True)
class AuthSnapshot:
    """Read-only view handed to the presentation layer."""

    identity: Optional[Identity]
    profile: Optional[Profile]
    verdict: Verdict
    loading: bool
    recovery_in_progress: bool
    last_result: Optional[ResolveResult] = None

    @property
    def profile_denied(self) -> bool:
        return self.last_result is not None and self.last_result.outcome == DENIED

    @property
    def profile_unavailable(self) -> bool:
        return self.last_result is not None and self.last_result.outcome == UNAVAILABLE


Listener = Callable[[AuthSnapshot], None]


class AuthContext:
    def __init__(
        self,
        auth: AuthServicePort,
        store: ProfileStorePort,
        *,
        intents: Optional[RoleIntentStore] = None,
        safety_timeout: float = 5.0,
    ) -> None:
        self._tasks = BackgroundTasks()
        self._session = SessionStore(auth, self, tasks=self._tasks, safety_timeout=safety_timeout)
        self._bridge = RoleIntentBridge(intents or RoleIntentStore(), store, auth)
        self._status = StatusRefresher(
            ProfileResolver(store),
            current_identity_id=self._current_identity_id,
            apply=self._apply_result,
            tasks=self._tasks,
        )
        self._profile: Optional[Profile] = None
        self._recovery = False
        self._listeners: List[Listener] = []
        self._published: Optional[AuthSnapshot] = None
        self._started = False
        self._admin_warned_for: Optional[str] = None

    # ----------------------------- Lifecycle --------------------------------

    async def start(self) -> None:
        """Subscribe to auth events and schedule the initial pass (non-blocking)."""
        if self._started:
            return
        self._started = True
        await self._session.start()

    async def wait_until_ready(self) -> None:
        await self._session.latch.wait()

    async def drain(self) -> None:
        await self._tasks.drain()

    async def close(self) -> None:
        self._session.close()
        await self._tasks.cancel_all()
        self._listeners.clear()

    async def __aenter__(self) -> "AuthContext":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------- Reads ----------------------------------

    @property
    def identity(self) -> Optional[Identity]:
        return self._session.identity

    @property
    def profile(self) -> Optional[Profile]:
        return self._profile

    @property
    def loading(self) -> bool:
        return self._session.loading

    @property
    def recovery_in_progress(self) -> bool:
        return self._recovery

    @property
    def last_result(self) -> Optional[ResolveResult]:
        return self._status.last_result

    @property
    def pending_intent(self) -> Optional[str]:
        return self._bridge.pending_intent

    @property
    def verdict(self) -> Verdict:
        identity = self._session.identity
        if self._session.loading:
            return LOADING
        profile = self._profile
        return decide_verdict(
            has_identity=identity is not None,
            initial_done=True,
            profile_role=profile.role if profile else None,
            profile_status=profile.status if profile else None,
            metadata_role=(identity.metadata or {}).get("role") if identity else None,
        )

    def snapshot(self) -> AuthSnapshot:
        return AuthSnapshot(
            identity=self._session.identity,
            profile=self._profile,
            verdict=self.verdict,
            loading=self._session.loading,
            recovery_in_progress=self._recovery,
            last_result=self._status.last_result,
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register `listener`; it is called only when the snapshot changes."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def navigation_target(self, current_view: str) -> Optional[str]:
        return navigation_target(self.verdict, current_view, recovery_in_progress=self._recovery)

    def diagnostics(self) -> Dict[str, Any]:
        """Raw state for a support screen. Contains no tokens."""
        identity = self._session.identity
        result = self._status.last_result
        return {
            "identity_id": identity.id if identity else None,
            "email": identity.email if identity else None,
            "metadata_role": (identity.metadata or {}).get("role") if identity else None,
            "profile": self._profile.to_row() if self._profile else None,
            "last_outcome": result.outcome if result else None,
            "last_code": result.code if result else None,
            "last_detail": result.detail if result else None,
            "verdict": str(self.verdict),
            "loading": self._session.loading,
            "loading_released_by": self._session.latch.released_by,
            "recovery_in_progress": self._recovery,
        }

    # ------------------------------ Actions ---------------------------------

    async def refresh(self) -> Optional[ResolveResult]:
        """Re-resolve the profile for the current identity ("check again")."""
        identity = self._session.identity
        if identity is None:
            return None
        return await self._status.refresh(identity)

    def sign_out(self) -> None:
        """Clear local state now. Never raises; remote failures are logged."""
        self._session.sign_out()

    def record_intent(self, role: str) -> None:
        self._bridge.record_intent(role)

    def clear_intent(self) -> None:
        self._bridge.clear_intent()

    def note_redirect_fragment(self, fragment: Optional[str]) -> RedirectFragment:
        parsed = parse_redirect_fragment(fragment)
        if parsed.is_recovery and not self._recovery:
            self._recovery = True
            self._notify()
        return parsed

    def finish_password_recovery(self) -> None:
        if self._recovery:
            self._recovery = False
            self._notify()

    # -------------------------- Session observer ----------------------------

    def session_event(self, event: str, previous: Optional[Identity], current: Optional[Identity]) -> None:
        if event == PASSWORD_RECOVERY:
            self._recovery = True
        if current is None:
            self._profile = None
            self._status.reset()
            if event == SIGNED_OUT:
                self._recovery = False
                self._bridge.clear_intent()
        elif previous is not None and previous.id != current.id:
            self._profile = None
            self._status.reset()
        self._notify()

    async def identity_observed(self, identity: Identity, event: str) -> None:
        if event == TOKEN_REFRESHED and self._profile is not None and self._profile.id == identity.id:
            return
        if event in RECONCILE_EVENTS:
            outcome = await self._bridge.reconcile(identity)
            if outcome.identity is not None:
                self._session.replace_identity(outcome.identity)
                self._notify()
            if outcome.attempted:
                self._status.invalidate()
        current = self._session.identity
        if current is None or current.id != identity.id:
            return
        await self._status.refresh(current)

    def loading_finished(self, source: str) -> None:
        self._notify()

    # ------------------------------ Internals -------------------------------

    def _current_identity_id(self) -> Optional[str]:
        identity = self._session.identity
        return identity.id if identity else None

    def _apply_result(self, result: ResolveResult) -> None:
        if result.outcome == FOUND:
            self._profile = result.profile
        elif result.outcome != UNAVAILABLE:
            self._profile = None
        # unavailable keeps whatever profile was held before
        identity = self._session.identity
        if (
            self._profile is None
            and identity is not None
            and (identity.metadata or {}).get("role") == "admin"
            and self._admin_warned_for != identity.id
        ):
            self._admin_warned_for = identity.id
            logger.warning("admin_profile_missing", user_id=identity.id, outcome=result.outcome)
        self._notify()

    def _notify(self) -> None:
        snap = self.snapshot()
        if snap == self._published:
            return
        self._published = snap
        for listener in list(self._listeners):
            try:
                listener(snap)
            except Exception:
                logger.exception("auth_listener_failed")


__all__ = ["AuthContext", "AuthSnapshot"]
