"""
Auth context: end-to-end flows over in-memory fakes.

Covers signup approval, admin approval, social sign-in role claims, the
sign-out race, stale results, password recovery and listener behavior.
"""
from __future__ import annotations

import asyncio

import pytest
from structlog.testing import capture_logs

from auth_state.context import AuthContext
from auth_state.domain import Profile
from auth_state.gate import UNAUTHENTICATED, UPDATE_PASSWORD_VIEW, Verdict, VerdictKind
from auth_state.ports import (
    PASSWORD_RECOVERY,
    SIGNED_IN,
    SIGNED_OUT,
    TOKEN_REFRESHED,
    ProfileAccessDenied,
    ProfileStoreUnavailable,
    RoleClaimUnavailable,
)
from utils.fakes import FakeAuthService, FakeProfileStore, make_identity


def _context(session=None, rows=(), safety_timeout=5.0):
    auth = FakeAuthService(session=session)
    store = FakeProfileStore(auth=auth, rows=rows)
    return AuthContext(auth, store, safety_timeout=safety_timeout), auth, store


async def _ready(ctx: AuthContext) -> None:
    await ctx.start()
    await ctx.wait_until_ready()
    await ctx.drain()


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.anyio
async def test_fresh_teacher_signup_awaits_approval():
    ctx, auth, store = _context(session=make_identity("u1", role="teacher"))

    await _ready(ctx)

    assert store.rows["u1"].status == "pending"
    assert ctx.verdict.kind is VerdictKind.AWAITING_APPROVAL
    assert ctx.snapshot().last_result.created


@pytest.mark.anyio
async def test_admin_approval_then_refresh_authorizes_teacher():
    ctx, auth, store = _context(
        session=make_identity("u1", role="teacher"),
        rows=[Profile(id="u1", role="teacher", status="pending")],
    )
    await _ready(ctx)
    assert ctx.verdict.kind is VerdictKind.AWAITING_APPROVAL

    store.put(store.rows["u1"].with_changes(status="active"))
    result = await ctx.refresh()

    assert result.found
    assert ctx.verdict == Verdict(VerdictKind.AUTHORIZED, "teacher")


@pytest.mark.anyio
async def test_social_sign_in_with_teacher_intent_claims_role():
    ident = make_identity("u1")
    ctx, auth, store = _context(rows=[Profile(id="u1", role="student", status="active")])
    await _ready(ctx)
    assert ctx.verdict == UNAUTHENTICATED

    ctx.record_intent("teacher")
    auth.session = ident
    auth.emit(SIGNED_IN, ident)
    await ctx.drain()

    assert store.claim_calls == ["teacher"]
    assert (ctx.profile.role, ctx.profile.status) == ("teacher", "pending")
    assert ctx.verdict.kind is VerdictKind.AWAITING_APPROVAL
    assert ctx.pending_intent is None


@pytest.mark.anyio
async def test_intent_reconciled_once_across_duplicate_events():
    ident = make_identity("u1")
    ctx, auth, store = _context(session=ident, rows=[Profile(id="u1", role="student", status="active")])
    ctx.record_intent("teacher")

    await ctx.start()
    auth.emit(SIGNED_IN, ident)
    auth.emit(SIGNED_IN, ident)
    await ctx.wait_until_ready()
    await ctx.drain()

    assert store.claim_calls == ["teacher"]
    assert ctx.profile.role == "teacher"


@pytest.mark.anyio
async def test_claim_unavailable_falls_back_to_metadata_for_new_user():
    ident = make_identity("u1")
    ctx, auth, store = _context(session=ident)
    store.claim_error = RoleClaimUnavailable("PGRST202")
    ctx.record_intent("teacher")

    await _ready(ctx)

    assert ctx.identity.metadata["role"] == "teacher"
    assert store.rows["u1"].role == "teacher" and store.rows["u1"].status == "pending"
    assert ctx.verdict.kind is VerdictKind.AWAITING_APPROVAL


@pytest.mark.anyio
async def test_sign_out_during_outstanding_fetch_ends_unauthenticated():
    ctx, auth, store = _context(
        session=make_identity("u1"), rows=[Profile(id="u1", role="student", status="active")]
    )
    store.fetch_gate = asyncio.Event()

    with capture_logs() as logs:
        await ctx.start()
        await _settle()
        assert store.fetch_calls == ["u1"]

        ctx.sign_out()
        assert ctx.verdict == UNAUTHENTICATED

        store.fetch_gate.set()
        await ctx.drain()

    assert ctx.verdict == UNAUTHENTICATED
    assert ctx.profile is None and ctx.identity is None
    assert "profile_result_discarded" in [e["event"] for e in logs]


@pytest.mark.anyio
async def test_result_for_previous_identity_does_not_leak_into_next_user():
    a = make_identity("a")
    b = make_identity("b", role="teacher")
    ctx, auth, store = _context(
        session=a,
        rows=[Profile(id="a", role="admin", status="active"), Profile(id="b", role="teacher", status="pending")],
    )
    await _ready(ctx)
    assert ctx.verdict.is_admin

    store.fetch_gate = asyncio.Event()
    stale = asyncio.ensure_future(ctx.refresh())
    await _settle()
    auth.session = b
    auth.emit(SIGNED_IN, b)
    await _settle()
    store.fetch_gate.set()
    await stale
    await ctx.drain()

    assert ctx.profile.id == "b"
    assert ctx.verdict.kind is VerdictKind.AWAITING_APPROVAL


@pytest.mark.anyio
async def test_pushed_sign_out_clears_state_and_intent():
    ident = make_identity("u1")
    ctx, auth, store = _context(session=ident, rows=[Profile(id="u1", role="student", status="active")])
    await _ready(ctx)
    ctx.record_intent("teacher")

    auth.emit(SIGNED_OUT, None)

    assert ctx.verdict == UNAUTHENTICATED
    assert ctx.pending_intent is None


@pytest.mark.anyio
async def test_token_refresh_does_not_refetch_held_profile():
    ident = make_identity("u1")
    ctx, auth, store = _context(session=ident, rows=[Profile(id="u1", role="student", status="active")])
    await _ready(ctx)
    seen = []
    ctx.subscribe(seen.append)
    calls = len(store.fetch_calls)

    auth.emit(TOKEN_REFRESHED, ident)
    await ctx.drain()

    assert len(store.fetch_calls) == calls
    assert seen == []


@pytest.mark.anyio
async def test_listener_sees_each_real_change_once():
    ctx, auth, store = _context(
        session=make_identity("u1"), rows=[Profile(id="u1", role="student", status="active")]
    )
    seen = []
    unsubscribe = ctx.subscribe(seen.append)

    await _ready(ctx)
    count = len(seen)
    await ctx.refresh()
    assert len(seen) == count

    ctx.sign_out()
    assert seen[-1].verdict == UNAUTHENTICATED
    unsubscribe()
    ctx.note_redirect_fragment("#type=recovery")
    assert seen[-1].verdict == UNAUTHENTICATED and not seen[-1].recovery_in_progress
    await ctx.drain()


@pytest.mark.anyio
async def test_denied_profile_is_distinguishable_and_diagnosable():
    ctx, auth, store = _context(session=make_identity("u1"))
    store.fetch_errors = [ProfileAccessDenied("42P17", "infinite recursion detected in policy")]

    await _ready(ctx)
    snap = ctx.snapshot()
    diag = ctx.diagnostics()

    assert snap.profile_denied
    assert snap.verdict.kind is VerdictKind.AUTHORIZED
    assert store.insert_calls == []
    assert diag["last_outcome"] == "denied" and diag["last_code"] == "42P17"
    assert diag["loading_released_by"] == "initial_fetch"


@pytest.mark.anyio
async def test_unavailable_refresh_keeps_previous_profile():
    ctx, auth, store = _context(
        session=make_identity("u1"), rows=[Profile(id="u1", role="teacher", status="active")]
    )
    await _ready(ctx)
    store.fetch_errors = [ProfileStoreUnavailable("transport_error")]

    result = await ctx.refresh()

    assert result.outcome == "unavailable"
    assert ctx.profile.role == "teacher"
    assert ctx.snapshot().profile_unavailable


@pytest.mark.anyio
async def test_admin_without_profile_is_admin_and_logged():
    ctx, auth, store = _context(session=make_identity("root", role="admin"))
    store.insert_error = ProfileAccessDenied("42501")

    with capture_logs() as logs:
        await _ready(ctx)

    assert ctx.verdict.is_admin
    assert "admin_profile_missing" in [e["event"] for e in logs]


@pytest.mark.anyio
async def test_safety_timeout_unblocks_then_late_session_applies():
    ctx, auth, store = _context(
        session=make_identity("u1"), rows=[Profile(id="u1", role="student", status="active")], safety_timeout=0.01
    )
    auth.session_gate = asyncio.Event()

    await ctx.start()
    await ctx.wait_until_ready()
    assert ctx.verdict == UNAUTHENTICATED

    auth.session_gate.set()
    await ctx.drain()
    assert ctx.verdict == Verdict(VerdictKind.AUTHORIZED, "student")


@pytest.mark.anyio
async def test_password_recovery_event_and_fragment():
    ident = make_identity("u1")
    ctx, auth, store = _context(session=ident, rows=[Profile(id="u1", role="student", status="active")])
    await _ready(ctx)

    auth.emit(PASSWORD_RECOVERY, ident)
    await ctx.drain()
    assert ctx.recovery_in_progress
    assert ctx.navigation_target("login") == UPDATE_PASSWORD_VIEW

    ctx.finish_password_recovery()
    assert ctx.navigation_target("login") == "home"

    parsed = ctx.note_redirect_fragment("#access_token=x&type=recovery")
    assert parsed.is_recovery and ctx.recovery_in_progress
    ctx.sign_out()
    assert not ctx.recovery_in_progress
    await ctx.drain()


@pytest.mark.anyio
async def test_close_leaves_no_listeners():
    ctx, auth, store = _context(session=make_identity("u1"))
    await _ready(ctx)

    await ctx.close()

    assert auth.handlers == []


@pytest.mark.anyio
async def test_listener_sees_outcome_change_while_profile_stays_missing():
    ctx, auth, store = _context(session=make_identity("u1"))
    store.fetch_errors = [
        ProfileStoreUnavailable("transport_error"),
        ProfileAccessDenied("42P17", "infinite recursion detected in policy"),
    ]
    seen = []
    ctx.subscribe(seen.append)

    await _ready(ctx)
    assert ctx.profile is None
    assert seen[-1].profile_unavailable

    await ctx.refresh()

    assert ctx.profile is None
    assert seen[-1].profile_denied and not seen[-1].profile_unavailable
    assert seen[-1].last_result.code == "42P17"
