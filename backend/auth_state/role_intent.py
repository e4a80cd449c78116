"""
Role-intent bridge: carry a chosen role across a redirect-based sign-in.

Why:
    The OAuth provider does not let the caller set custom identity fields
    atomically, so the role picked on the login screen is written to a local
    marker before the redirect and reconciled into the backend once the
    identity reappears.

Lifecycle:
    record -> (redirect) -> reconcile reads it once -> marker cleared whatever
    the outcome. Markers expire after a TTL so an abandoned redirect cannot
    claim a role much later.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import structlog

from .domain import ADMIN_ROLE, APPROVAL_ROLE, Identity, normalize_role
from .ports import AuthServicePort, ProfileStoreError, ProfileStorePort, RoleClaimUnavailable

logger = structlog.get_logger("onluyen.auth_state.role_intent")

# Roles that may be requested before sign-in. Admin is provisioned by operators only.
CLAIMABLE_ROLES = frozenset({"student", "teacher"})

INTENT_KEY = "pending_role"

# Intents that need a backend write. Student is the default role and is never
# written over an existing role.
RECONCILED_ROLES = frozenset({APPROVAL_ROLE})


class RoleIntentStore:
    """Process-local marker store with expiry (monotonic clock)."""

    def __init__(self, ttl_seconds: int = 900, clock: Callable[[], float] = time.monotonic):
        self.ttl = int(ttl_seconds)
        self._clock = clock
        self._data: Dict[str, Tuple[str, float]] = {}

    def record(self, role: str) -> None:
        self._data[INTENT_KEY] = (role, self._clock() + self.ttl)

    def peek(self) -> Optional[str]:
        item = self._data.get(INTENT_KEY)
        if not item:
            return None
        role, expires_at = item
        if self._clock() > expires_at:
            self._data.pop(INTENT_KEY, None)
            return None
        return role

    def clear(self) -> None:
        self._data.pop(INTENT_KEY, None)


@dataclass(frozen=True)
class ReconcileOutcome:
    """What a reconcile pass did.

    attempted: a backend write (claim or metadata fallback) was tried.
    claimed: the privileged claim routine succeeded.
    identity: updated identity when the metadata fallback succeeded.
    """

    intent: Optional[str] = None
    attempted: bool = False
    claimed: bool = False
    identity: Optional[Identity] = None


NO_INTENT = ReconcileOutcome()


class RoleIntentBridge:
    def __init__(self, intents: RoleIntentStore, store: ProfileStorePort, auth: AuthServicePort) -> None:
        self._intents = intents
        self._store = store
        self._auth = auth
        self._lock = asyncio.Lock()

    def record_intent(self, role: str) -> None:
        """Write the marker right before starting a redirect sign-in."""
        normalized = normalize_role(role)
        if normalized not in CLAIMABLE_ROLES:
            raise ValueError(f"role cannot be requested at sign-in: {role!r}")
        self._intents.record(normalized)

    def clear_intent(self) -> None:
        self._intents.clear()

    @property
    def pending_intent(self) -> Optional[str]:
        return self._intents.peek()

    async def _current_role(self, identity_id: str) -> Optional[str]:
        try:
            profile = await self._store.fetch_profile(identity_id)
        except ProfileStoreError:
            return None
        except Exception as exc:
            logger.warning("role_lookup_failed", user_id=identity_id, error=exc.__class__.__name__)
            return None
        return profile.role

    async def reconcile(self, identity: Identity) -> ReconcileOutcome:
        """Apply a recorded intent for `identity`; always clears the marker.

        Must finish before the first profile read of the same pass. Concurrent
        callers serialize on a lock, so only the first sees the marker.
        """
        async with self._lock:
            intent = self._intents.peek()
            if intent is None:
                return NO_INTENT
            try:
                if intent not in RECONCILED_ROLES:
                    return ReconcileOutcome(intent=intent)
                current = await self._current_role(identity.id)
                if current in (intent, ADMIN_ROLE):
                    return ReconcileOutcome(intent=intent)
                try:
                    await self._store.claim_role(intent)
                except (RoleClaimUnavailable, ProfileStoreError) as exc:
                    logger.warning("role_claim_failed", user_id=identity.id, role=intent, code=getattr(exc, "code", None))
                else:
                    logger.info("role_claim_succeeded", user_id=identity.id, role=intent)
                    return ReconcileOutcome(intent=intent, attempted=True, claimed=True)
                try:
                    updated = await self._auth.update_user_metadata({"role": intent})
                except Exception as exc:
                    logger.warning("role_metadata_fallback_failed", user_id=identity.id, error=exc.__class__.__name__)
                    return ReconcileOutcome(intent=intent, attempted=True)
                if updated is None or updated.id != identity.id:
                    updated = identity.with_metadata({"role": intent})
                return ReconcileOutcome(intent=intent, attempted=True, identity=updated)
            finally:
                self._intents.clear()


__all__ = ["RoleIntentStore", "RoleIntentBridge", "ReconcileOutcome", "CLAIMABLE_ROLES", "NO_INTENT"]
