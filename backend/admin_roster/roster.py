"""
Live roster synchronizer for the administrative surface.

Why:
    Admins approve pending teachers and block accounts while other admins and
    signups change the same rows. The local list follows the server-side
    change stream and admin actions apply optimistically.

Behavior:
    - Events are applied in delivery order and idempotently by id: insert
      prepends (or replaces an existing entry), update replaces a known entry
      and ignores unknown ids, delete removes by id.
    - Events that arrive while the full list is being (re)loaded are buffered
      and replayed on top of the fresh list.
    - A rejected admin action triggers a full reload instead of an undo.
    - Admin profiles are never actionable from here.

Usage:
    roster = RosterSynchronizer(profile_store)
    await roster.start()
    await roster.approve(teacher_id)
    await roster.close()
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Set

import structlog

from auth_state.context import AuthContext, AuthSnapshot
from auth_state.domain import Profile, normalize_role
from auth_state.ports import ChangeSubscription, ProfileChange, ProfileStoreError, ProfileStorePort
from auth_state.tasks import BackgroundTasks

logger = structlog.get_logger("onluyen.admin_roster")

ROLE_FILTERS = frozenset({"all", "student", "teacher", "admin"})
ASSIGNABLE_ROLES = frozenset({"student", "teacher"})


class RosterActionRejected(Exception):
    """Backend refused an admin action; the roster was reloaded."""

    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


@dataclass(frozen=True)
class RosterStats:
    total: int = 0
    teachers: int = 0
    students: int = 0
    admins: int = 0
    pending: int = 0
    blocked: int = 0

    @property
    def active_teachers(self) -> int:
        return self.teachers - self.pending


class RosterSynchronizer:
    def __init__(self, store: ProfileStorePort) -> None:
        self._store = store
        self._entries: List[Profile] = []
        self._subscription: Optional[ChangeSubscription] = None
        self._buffer: Optional[List[ProfileChange]] = None
        self._reload_generation = 0
        self._reloads_in_flight = 0
        self._pending: Set[str] = set()
        self._listeners: List[Callable[[], None]] = []
        self.load_error: Optional[ProfileStoreError] = None

    # ------------------------------ Reads -----------------------------------

    @property
    def profiles(self) -> Sequence[Profile]:
        return tuple(self._entries)

    @property
    def active(self) -> bool:
        return self._subscription is not None

    @property
    def loading(self) -> bool:
        return self._buffer is not None

    def get(self, profile_id: str) -> Optional[Profile]:
        for p in self._entries:
            if p.id == profile_id:
                return p
        return None

    def is_pending(self, profile_id: str) -> bool:
        """True while an optimistic change for `profile_id` awaits the backend."""
        return profile_id in self._pending

    def stats(self) -> RosterStats:
        entries = self._entries
        return RosterStats(
            total=len(entries),
            teachers=sum(1 for p in entries if p.role == "teacher"),
            students=sum(1 for p in entries if p.role == "student"),
            admins=sum(1 for p in entries if p.role == "admin"),
            pending=sum(1 for p in entries if p.status == "pending"),
            blocked=sum(1 for p in entries if p.status == "blocked"),
        )

    def filter(self, role: str = "all", query: str = "") -> List[Profile]:
        if role not in ROLE_FILTERS:
            raise ValueError(f"unknown role filter: {role!r}")
        needle = (query or "").strip().lower()
        out = []
        for p in self._entries:
            if role != "all" and p.role != role:
                continue
            if needle and needle not in (p.email or "").lower() and needle not in (p.full_name or "").lower():
                continue
            out.append(p)
        return out

    def subscribe(self, listener: Callable[[], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # ---------------------------- Lifecycle ---------------------------------

    async def start(self) -> None:
        """Subscribe first, then load; nothing delivered in between is lost."""
        if self._subscription is not None:
            return
        self._buffer = []
        try:
            self._subscription = await self._store.subscribe_changes(self._on_change)
        except Exception:
            self._buffer = None
            raise
        await self.reload()

    async def reload(self) -> None:
        """Replace the local list with a fresh read.

        Overlapping reloads keep the change buffer open until the last one
        finishes; only the most recently started reload installs its rows.
        """
        if self._buffer is None:
            self._buffer = []
        self._reload_generation += 1
        generation = self._reload_generation
        self._reloads_in_flight += 1
        try:
            rows = await self._store.list_profiles()
        except ProfileStoreError as exc:
            if generation == self._reload_generation:
                self.load_error = exc
            logger.warning("roster_load_failed", code=exc.code)
        else:
            if generation == self._reload_generation:
                self.load_error = None
                self._entries = list(rows)
        finally:
            self._reloads_in_flight -= 1
            if self._reloads_in_flight == 0:
                buffered, self._buffer = self._buffer or [], None
                for change in buffered:
                    self._apply(change)
            self._notify()

    async def close(self) -> None:
        subscription, self._subscription = self._subscription, None
        self._buffer = None
        if subscription is not None:
            await subscription.close()

    # ------------------------- Change stream --------------------------------

    def _on_change(self, change: ProfileChange) -> None:
        if self._buffer is not None:
            self._buffer.append(change)
            return
        self._apply(change)
        self._notify()

    def _index(self, profile_id: str) -> int:
        for i, p in enumerate(self._entries):
            if p.id == profile_id:
                return i
        return -1

    def _apply(self, change: ProfileChange) -> None:
        idx = self._index(change.profile_id)
        if change.kind == "delete":
            if idx >= 0:
                del self._entries[idx]
            self._pending.discard(change.profile_id)
            return
        if change.profile is None:
            logger.debug("roster_event_ignored", kind=change.kind, profile_id=change.profile_id, reason="no_row")
            return
        if change.kind == "insert":
            if idx >= 0:
                self._entries[idx] = change.profile
            else:
                self._entries.insert(0, change.profile)
        elif change.kind == "update":
            if idx < 0:
                logger.debug("roster_event_ignored", kind="update", profile_id=change.profile_id, reason="unknown_id")
                return
            self._entries[idx] = change.profile
        self._pending.discard(change.profile_id)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener()

    # ---------------------------- Admin actions -----------------------------

    async def _mutate(self, profile_id: str, **fields: str) -> Profile:
        idx = self._index(profile_id)
        if idx < 0:
            raise LookupError(profile_id)
        target = self._entries[idx]
        if target.role == "admin":
            raise PermissionError("admin profiles cannot be changed from the roster")

        updated = target.with_changes(**fields)
        self._entries[idx] = updated
        self._pending.add(profile_id)
        self._notify()
        try:
            await self._store.update_profile(profile_id, fields)
        except ProfileStoreError as exc:
            logger.warning("roster_action_rejected", profile_id=profile_id, fields=sorted(fields), code=exc.code)
            self._pending.discard(profile_id)
            await self.reload()
            raise RosterActionRejected(exc.code) from exc
        self._pending.discard(profile_id)
        return updated

    async def approve(self, profile_id: str) -> Profile:
        return await self._mutate(profile_id, status="active")

    async def block(self, profile_id: str) -> Profile:
        return await self._mutate(profile_id, status="blocked")

    async def unblock(self, profile_id: str) -> Profile:
        return await self._mutate(profile_id, status="active")

    async def change_role(self, profile_id: str, role: str) -> Profile:
        normalized = normalize_role(role)
        if normalized not in ASSIGNABLE_ROLES:
            raise ValueError(f"role cannot be assigned from the roster: {role!r}")
        return await self._mutate(profile_id, role=normalized)


class AdminRosterBinding:
    """Run the synchronizer exactly while the context holds an admin verdict."""

    def __init__(self, context: AuthContext, roster: RosterSynchronizer) -> None:
        self._context = context
        self.roster = roster
        self._tasks = BackgroundTasks()
        self._lock = asyncio.Lock()
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._closed = False

    async def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self._context.subscribe(self._on_snapshot)
        await self._sync()

    def _on_snapshot(self, snapshot: AuthSnapshot) -> None:
        if snapshot.verdict.is_admin != self.roster.active:
            self._tasks.spawn(self._sync(), name="admin-roster-sync")

    async def _sync(self) -> None:
        async with self._lock:
            wanted = self._context.verdict.is_admin and not self._closed
            if wanted and not self.roster.active:
                await self.roster.start()
            elif not wanted and self.roster.active:
                await self.roster.close()

    async def drain(self) -> None:
        await self._tasks.drain()

    async def close(self) -> None:
        self._closed = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self._tasks.drain()
        await self._sync()


__all__ = [
    "RosterSynchronizer",
    "RosterStats",
    "RosterActionRejected",
    "AdminRosterBinding",
    "ROLE_FILTERS",
]
