"""
Authorization gate: one verdict from session, profile and fallback metadata.

Why:
    Screens must not each re-derive "may this user see teacher tools". The gate
    is a pure function of five inputs so it can be tested exhaustively and the
    presentation layer only ever reads the verdict.

Precedence:
    1. Initial determination not finished -> Loading.
    2. No identity -> Unauthenticated.
    3. Effective role = profile role, else metadata role, else student.
       Effective status = profile status, else the role default (teacher ->
       pending, fail-closed; everybody else -> active, fail-open).
    4. blocked -> Blocked.
    5. teacher + pending -> AwaitingApproval. `pending` on any other role is
       treated as active.
    6. Otherwise Authorized(role).
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .domain import APPROVAL_ROLE, DEFAULT_ROLE, default_status_for, normalize_role, normalize_status


class VerdictKind(str, Enum):
    LOADING = "loading"
    UNAUTHENTICATED = "unauthenticated"
    AWAITING_APPROVAL = "awaiting_approval"
    BLOCKED = "blocked"
    AUTHORIZED = "authorized"


@dataclass(frozen=True)
class Verdict:
    kind: VerdictKind
    role: Optional[str] = None

    @property
    def is_authorized(self) -> bool:
        return self.kind is VerdictKind.AUTHORIZED

    @property
    def is_admin(self) -> bool:
        return self.is_authorized and self.role == "admin"

    @property
    def has_identity(self) -> bool:
        return self.kind not in (VerdictKind.LOADING, VerdictKind.UNAUTHENTICATED)

    def __str__(self) -> str:
        if self.kind is VerdictKind.AUTHORIZED:
            return f"authorized({self.role})"
        return self.kind.value


LOADING = Verdict(VerdictKind.LOADING)
UNAUTHENTICATED = Verdict(VerdictKind.UNAUTHENTICATED)


def decide_verdict(
    *,
    has_identity: bool,
    initial_done: bool,
    profile_role: Optional[str],
    profile_status: Optional[str],
    metadata_role: Optional[str],
) -> Verdict:
    """Return the verdict for the given inputs (pure, no hidden state)."""
    if not initial_done:
        return LOADING
    if not has_identity:
        return UNAUTHENTICATED

    role = normalize_role(profile_role) or normalize_role(metadata_role) or DEFAULT_ROLE
    status = normalize_status(profile_status) or default_status_for(role)

    if status == "blocked":
        return Verdict(VerdictKind.BLOCKED, role)
    if role == APPROVAL_ROLE and status == "pending":
        return Verdict(VerdictKind.AWAITING_APPROVAL, role)
    return Verdict(VerdictKind.AUTHORIZED, role)


# ----------------------------- Navigation -----------------------------------

LOGIN_VIEW = "login"
ADMIN_LOGIN_VIEW = "admin-login"
UPDATE_PASSWORD_VIEW = "update-password"
HOME_VIEW = "home"
ADMIN_DASHBOARD_VIEW = "admin-dashboard"

PRE_AUTH_VIEWS = frozenset({LOGIN_VIEW, ADMIN_LOGIN_VIEW})
PUBLIC_VIEWS = PRE_AUTH_VIEWS | {UPDATE_PASSWORD_VIEW}


def landing_view_for(verdict: Verdict) -> str:
    return ADMIN_DASHBOARD_VIEW if verdict.role == "admin" else HOME_VIEW


def navigation_target(verdict: Verdict, current_view: str, *, recovery_in_progress: bool = False) -> Optional[str]:
    """Return the view to redirect to, or None when `current_view` is fine.

    Behavior:
        - Loading never redirects.
        - During password recovery a signed-in user is sent to the update
          password view and no landing redirect happens.
        - A signed-in user on a pre-authentication view goes to the landing
          view for the role (admin dashboard or home).
        - A signed-out user outside the public views goes to login.
    """
    if verdict.kind is VerdictKind.LOADING:
        return None
    if verdict.has_identity:
        if recovery_in_progress:
            return None if current_view == UPDATE_PASSWORD_VIEW else UPDATE_PASSWORD_VIEW
        if current_view in PRE_AUTH_VIEWS:
            return landing_view_for(verdict)
        return None
    if current_view not in PUBLIC_VIEWS:
        return LOGIN_VIEW
    return None


__all__ = [
    "VerdictKind",
    "Verdict",
    "LOADING",
    "UNAUTHENTICATED",
    "decide_verdict",
    "navigation_target",
    "landing_view_for",
    "LOGIN_VIEW",
    "ADMIN_LOGIN_VIEW",
    "UPDATE_PASSWORD_VIEW",
    "HOME_VIEW",
    "ADMIN_DASHBOARD_VIEW",
    "PUBLIC_VIEWS",
    "PRE_AUTH_VIEWS",
]
