"""
Profile resolver: identity -> durable application profile.

Why:
    The profile row can lag behind the identity (signup trigger not run yet),
    be missing entirely, or be hidden by a misconfigured access policy. The
    resolver absorbs the recoverable case (missing -> create once) and reports
    the others as tagged results instead of raising.

Behavior:
    - found: the row as stored.
    - not_found: the row is absent and lazy creation failed too.
    - denied: the access policy rejected the read; never reinterpreted as
      not_found because the fix is an operator change, not a new record.
    - unavailable: transient backend problem; callers may retry via refresh.

The resolver never retries in a loop and never lets an exception escape.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from .domain import Identity, Profile, draft_profile_for
from .ports import (
    ProfileAccessDenied,
    ProfileConflict,
    ProfileNotFound,
    ProfileStoreError,
    ProfileStorePort,
)

logger = structlog.get_logger("onluyen.auth_state.profiles")

FOUND = "found"
NOT_FOUND = "not_found"
DENIED = "denied"
UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class ResolveResult:
    """Tagged resolver outcome, bound to the identity id it was requested for."""

    outcome: str
    identity_id: str
    profile: Optional[Profile] = None
    code: Optional[str] = None
    detail: Optional[str] = None
    created: bool = False

    @property
    def found(self) -> bool:
        return self.outcome == FOUND

    @property
    def denied(self) -> bool:
        return self.outcome == DENIED

    @classmethod
    def from_error(cls, identity_id: str, exc: ProfileStoreError) -> "ResolveResult":
        if isinstance(exc, ProfileNotFound):
            outcome = NOT_FOUND
        elif isinstance(exc, ProfileAccessDenied):
            outcome = DENIED
        else:
            outcome = UNAVAILABLE
        return cls(outcome=outcome, identity_id=identity_id, code=exc.code, detail=exc.detail)


class ProfileResolver:
    def __init__(self, store: ProfileStorePort) -> None:
        self._store = store

    async def _read(self, identity_id: str) -> ResolveResult:
        try:
            profile = await self._store.fetch_profile(identity_id)
        except ProfileStoreError as exc:
            result = ResolveResult.from_error(identity_id, exc)
            if result.denied:
                logger.error("profile_access_denied", user_id=identity_id, code=exc.code)
            elif result.outcome == UNAVAILABLE:
                logger.warning("profile_store_unavailable", user_id=identity_id, code=exc.code)
            return result
        except Exception as exc:  # untranslated adapter failure
            logger.error("profile_store_unavailable", user_id=identity_id, error=exc.__class__.__name__)
            return ResolveResult(outcome=UNAVAILABLE, identity_id=identity_id, code="unexpected_error", detail=str(exc))
        return ResolveResult(outcome=FOUND, identity_id=identity_id, profile=profile)

    async def resolve(self, identity: Identity) -> ResolveResult:
        """Fetch the profile for `identity`, creating a default row once if absent.

        Creation uses the best available metadata: role from the signup
        metadata (default student), status pending iff the role is teacher.
        A concurrent creator winning the insert is fine: the row is re-read.
        """
        first = await self._read(identity.id)
        if first.outcome != NOT_FOUND:
            return first

        draft = draft_profile_for(identity)
        logger.info("profile_missing_creating_default", user_id=identity.id, role=draft.role, status=draft.status)
        try:
            await self._store.insert_profile(draft)
        except ProfileConflict:
            pass
        except ProfileStoreError as exc:
            logger.warning("profile_create_failed", user_id=identity.id, code=exc.code)
            return ResolveResult(outcome=NOT_FOUND, identity_id=identity.id, code=exc.code, detail=exc.detail)
        except Exception as exc:
            logger.warning("profile_create_failed", user_id=identity.id, error=exc.__class__.__name__)
            return ResolveResult(outcome=NOT_FOUND, identity_id=identity.id, code="unexpected_error", detail=str(exc))

        second = await self._read(identity.id)
        if second.found:
            return ResolveResult(outcome=FOUND, identity_id=identity.id, profile=second.profile, created=True)
        return second


__all__ = ["ProfileResolver", "ResolveResult", "FOUND", "NOT_FOUND", "DENIED", "UNAVAILABLE"]
