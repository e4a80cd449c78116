"""
Ports for the identity engine: backend protocols, change events and errors.

Intent:
    Keep the engine framework-agnostic. The Supabase adapters implement these
    protocols in production; tests supply small in-memory fakes.

Design:
    - Protocols: AuthServicePort, ProfileStorePort, Subscription protocols
    - Event type: ProfileChange (normalized row-level change notification)
    - Error taxonomy: not-found vs. access-denied vs. unavailable, kept apart
      because the remediation differs (missing record vs. operator policy bug
      vs. retry later).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Literal, Mapping, Optional, Protocol, Sequence

from .domain import Identity, Profile


# ----------------------------- Auth events ----------------------------------

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
TOKEN_REFRESHED = "TOKEN_REFRESHED"
USER_UPDATED = "USER_UPDATED"
PASSWORD_RECOVERY = "PASSWORD_RECOVERY"
INITIAL_SESSION = "INITIAL_SESSION"

AuthStateHandler = Callable[[str, Optional[Identity]], None]


# ----------------------------- Change events --------------------------------

ChangeKind = Literal["insert", "update", "delete"]


@dataclass(frozen=True)
class ProfileChange:
    """Row-level change on the profile collection.

    Parameters:
        kind: insert | update | delete
        profile_id: id of the affected row (always present)
        profile: new row for insert/update, None for delete
    """

    kind: ChangeKind
    profile_id: str
    profile: Optional[Profile] = None


ChangeHandler = Callable[[ProfileChange], None]


# ----------------------------- Protocols ------------------------------------


class AuthSubscription(Protocol):
    def unsubscribe(self) -> None: ...


class ChangeSubscription(Protocol):
    async def close(self) -> None: ...


class AuthServicePort(Protocol):
    """External auth service (hosted)."""

    async def get_session(self) -> Optional[Identity]: ...

    def on_auth_state_change(self, handler: AuthStateHandler) -> AuthSubscription: ...

    async def sign_out(self) -> None: ...

    async def sign_in_with_password(self, *, email: str, password: str) -> Optional[Identity]: ...

    async def sign_up(self, *, email: str, password: str, metadata: Mapping[str, Any]) -> tuple[Optional[Identity], bool]: ...

    async def sign_in_with_oauth(
        self,
        *,
        provider: str,
        redirect_to: str,
        metadata: Mapping[str, Any],
        query_params: Optional[Mapping[str, str]] = None,
    ) -> str: ...

    async def sign_in_with_otp(self, *, phone: str, metadata: Mapping[str, Any]) -> None: ...

    async def verify_otp(self, *, phone: str, token: str) -> Optional[Identity]: ...

    async def update_user_metadata(self, fields: Mapping[str, Any]) -> Optional[Identity]: ...

    async def reset_password_for(self, *, email: str, redirect_to: str) -> None: ...


class ProfileStorePort(Protocol):
    """Profile record store with row-level access policies."""

    async def fetch_profile(self, profile_id: str) -> Profile: ...

    async def insert_profile(self, profile: Profile) -> None: ...

    async def update_profile(self, profile_id: str, fields: Mapping[str, Any]) -> None: ...

    async def claim_role(self, role: str) -> None: ...

    async def list_profiles(self) -> Sequence[Profile]: ...

    async def subscribe_changes(self, handler: ChangeHandler) -> ChangeSubscription: ...


# ------------------------------ Errors --------------------------------------


class ProfileStoreError(Exception):
    """Base class for profile store failures."""

    def __init__(self, code: str, detail: Optional[str] = None):
        super().__init__(code)
        self.code = code
        self.detail = detail


class ProfileNotFound(ProfileStoreError):
    """Row absent. Recoverable by lazy creation."""


class ProfileAccessDenied(ProfileStoreError):
    """Access policy rejected the request (operator configuration problem)."""


class ProfileConflict(ProfileStoreError):
    """Insert collided with an existing row for the same id."""


class ProfileStoreUnavailable(ProfileStoreError):
    """Network/timeout or unclassified backend failure; caller may retry."""


class RoleClaimUnavailable(Exception):
    """The privileged role-claim routine is missing or failed."""

    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


class AuthServiceError(Exception):
    def __init__(self, code: str, message: Optional[str] = None):
        super().__init__(message or code)
        self.code = code
        self.message = message or code


__all__ = [
    # Events
    "SIGNED_IN",
    "SIGNED_OUT",
    "TOKEN_REFRESHED",
    "USER_UPDATED",
    "PASSWORD_RECOVERY",
    "INITIAL_SESSION",
    "AuthStateHandler",
    "ProfileChange",
    "ChangeHandler",
    # Protocols
    "AuthSubscription",
    "ChangeSubscription",
    "AuthServicePort",
    "ProfileStorePort",
    # Errors
    "ProfileStoreError",
    "ProfileNotFound",
    "ProfileAccessDenied",
    "ProfileConflict",
    "ProfileStoreUnavailable",
    "RoleClaimUnavailable",
    "AuthServiceError",
]
