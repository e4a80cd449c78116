"""Manual "check again" loop for gated users, with stale-result protection."""
from __future__ import annotations

import asyncio
from typing import Callable, Optional, Tuple

import structlog

from .domain import Identity
from .profiles import ProfileResolver, ResolveResult
from .tasks import BackgroundTasks

logger = structlog.get_logger("onluyen.auth_state.status")


class StatusRefresher:
    """Re-run the resolver for the current identity and apply the result.

    Overlapping calls for the same identity share one in-flight resolution.
    A result is applied only when its identity id still matches the current
    identity; otherwise it is discarded. Independent resolutions (after
    `invalidate()`) apply in completion order, so the last to finish wins.
    """

    def __init__(
        self,
        resolver: ProfileResolver,
        *,
        current_identity_id: Callable[[], Optional[str]],
        apply: Callable[[ResolveResult], None],
        tasks: BackgroundTasks,
    ) -> None:
        self._resolver = resolver
        self._current_identity_id = current_identity_id
        self._apply = apply
        self._tasks = tasks
        self._inflight: Optional[Tuple[str, asyncio.Task]] = None
        self.last_result: Optional[ResolveResult] = None

    async def refresh(self, identity: Identity) -> ResolveResult:
        inflight = self._inflight
        if inflight is not None and inflight[0] == identity.id and not inflight[1].done():
            task = inflight[1]
        else:
            task = self._tasks.spawn(self._run(identity), name="profile-refresh")
            self._inflight = (identity.id, task)
        # the caller going away must not cancel the shared resolution
        return await asyncio.shield(task)

    def invalidate(self) -> None:
        """Make the next refresh start a new resolution."""
        self._inflight = None

    def reset(self) -> None:
        self._inflight = None
        self.last_result = None

    async def _run(self, identity: Identity) -> ResolveResult:
        result = await self._resolver.resolve(identity)
        if self._current_identity_id() != result.identity_id:
            logger.info("profile_result_discarded", requested_for=result.identity_id, outcome=result.outcome)
            return result
        self.last_result = result
        self._apply(result)
        return result


__all__ = ["StatusRefresher"]
