"""
Sign-in flows used by the login screens.

Flows:
    - email/password sign-in and sign-up (role and display name in metadata)
    - OAuth redirect: role intent is recorded before the provider call
    - phone one-time code: send and verify, local numbers normalized
    - password reset request

After a password or one-time-code sign-in the profile status is checked; a
blocked account is signed out again and `AccountBlockedError` is raised.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

import structlog

from .context import AuthContext
from .domain import APPROVAL_ROLE, DEFAULT_ROLE, Identity, normalize_role
from .ports import AuthServiceError, AuthServicePort, ProfileStoreError, ProfileStorePort
from .role_intent import CLAIMABLE_ROLES

logger = structlog.get_logger("onluyen.auth_state.sign_in")

OAUTH_QUERY_PARAMS = {"access_type": "offline", "prompt": "consent"}

_PHONE_NOISE = re.compile(r"[\s\-().]")


class SignInError(Exception):
    def __init__(self, code: str, message: Optional[str] = None):
        super().__init__(message or code)
        self.code = code
        self.message = message or code


class AccountBlockedError(SignInError):
    def __init__(self) -> None:
        super().__init__("account_blocked", "This account has been blocked.")


@dataclass(frozen=True)
class SignUpResult:
    identity: Optional[Identity]
    session_started: bool
    needs_approval: bool


def normalize_phone(raw: str, country_code: str = "+84") -> str:
    """`0912 345 678` -> `+84912345678`; numbers with a leading `+` are kept."""
    phone = _PHONE_NOISE.sub("", raw or "")
    if not phone:
        raise ValueError("phone number is required")
    if phone.startswith("+"):
        return phone
    if phone.startswith("0"):
        return country_code + phone[1:]
    return country_code + phone


def _claimable(role: str) -> str:
    normalized = normalize_role(role)
    if normalized not in CLAIMABLE_ROLES:
        raise ValueError(f"role cannot be requested at sign-in: {role!r}")
    return normalized


class SignInService:
    def __init__(
        self,
        auth: AuthServicePort,
        store: ProfileStorePort,
        context: AuthContext,
        *,
        redirect_to: str,
        country_code: str = "+84",
    ) -> None:
        self._auth = auth
        self._store = store
        self._context = context
        self._redirect_to = redirect_to
        self._country_code = country_code

    async def _reject_if_blocked(self, identity: Identity) -> None:
        try:
            profile = await self._store.fetch_profile(identity.id)
        except ProfileStoreError:
            # missing or unreadable profiles are handled by the resolver
            return
        if profile.status == "blocked":
            self._context.sign_out()
            raise AccountBlockedError()

    async def sign_in_with_password(self, email: str, password: str) -> Identity:
        try:
            identity = await self._auth.sign_in_with_password(email=email, password=password)
        except AuthServiceError as exc:
            raise SignInError(exc.code, exc.message) from exc
        if identity is None:
            raise SignInError("no_session", "Sign-in did not start a session.")
        await self._reject_if_blocked(identity)
        return identity

    async def sign_up(self, email: str, password: str, role: str = DEFAULT_ROLE) -> SignUpResult:
        role = _claimable(role)
        local_part = (email or "").split("@", 1)[0]
        try:
            identity, session_started = await self._auth.sign_up(
                email=email,
                password=password,
                metadata={"role": role, "full_name": local_part},
            )
        except AuthServiceError as exc:
            raise SignInError(exc.code, exc.message) from exc
        return SignUpResult(identity=identity, session_started=session_started, needs_approval=role == APPROVAL_ROLE)

    async def start_oauth(self, provider: str = "google", role: str = DEFAULT_ROLE) -> str:
        """Record the role intent, then ask the provider for the redirect URL."""
        role = _claimable(role)
        if role == APPROVAL_ROLE:
            self._context.record_intent(role)
        else:
            self._context.clear_intent()
        try:
            return await self._auth.sign_in_with_oauth(
                provider=provider,
                redirect_to=self._redirect_to,
                metadata={"role": role},
                query_params=OAUTH_QUERY_PARAMS,
            )
        except Exception as exc:
            self._context.clear_intent()
            code = getattr(exc, "code", "oauth_failed")
            raise SignInError(code, str(exc)) from exc

    async def send_phone_code(self, phone: str, role: str = DEFAULT_ROLE) -> str:
        normalized = normalize_phone(phone, self._country_code)
        role = _claimable(role)
        try:
            await self._auth.sign_in_with_otp(phone=normalized, metadata={"role": role})
        except AuthServiceError as exc:
            raise SignInError(exc.code, exc.message) from exc
        return normalized

    async def verify_phone_code(self, phone: str, code: str) -> Identity:
        normalized = normalize_phone(phone, self._country_code)
        try:
            identity = await self._auth.verify_otp(phone=normalized, token=code)
        except AuthServiceError as exc:
            raise SignInError(exc.code, exc.message) from exc
        if identity is None:
            raise SignInError("no_session", "Verification did not start a session.")
        await self._reject_if_blocked(identity)
        return identity

    async def request_password_reset(self, email: str) -> None:
        if not (email or "").strip():
            raise ValueError("email is required to reset the password")
        try:
            await self._auth.reset_password_for(email=email.strip(), redirect_to=self._redirect_to)
        except AuthServiceError as exc:
            raise SignInError(exc.code, exc.message) from exc


__all__ = [
    "SignInService",
    "SignInError",
    "AccountBlockedError",
    "SignUpResult",
    "normalize_phone",
    "OAUTH_QUERY_PARAMS",
]
