"""
Parse the URL fragment the auth provider appends on redirect return.

The provider reports failures as `#error=...&error_code=...&error_description=...`
and password recovery links as `#access_token=...&type=recovery`. Error display
lives outside the engine; the engine only needs the recovery flag.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qs

GENERIC_AUTH_ERROR = "An authentication error occurred."
OTP_EXPIRED_MESSAGE = (
    "The confirmation link has expired or is invalid. "
    "Please sign in again or request a new email."
)


@dataclass(frozen=True)
class RedirectFragment:
    error_code: Optional[str] = None
    error_description: Optional[str] = None
    message: Optional[str] = None
    is_recovery: bool = False

    @property
    def has_error(self) -> bool:
        return self.error_description is not None or self.error_code is not None


def parse_redirect_fragment(fragment: Optional[str]) -> RedirectFragment:
    if not fragment:
        return RedirectFragment()
    raw = fragment[1:] if fragment.startswith("#") else fragment
    params = parse_qs(raw, keep_blank_values=False)

    def _first(key: str) -> Optional[str]:
        vals = params.get(key)
        return vals[0] if vals else None

    error_code = _first("error_code")
    description = _first("error_description")
    is_recovery = _first("type") == "recovery"

    message = None
    if error_code == "otp_expired":
        message = OTP_EXPIRED_MESSAGE
    elif description:
        message = description.replace("+", " ")
    elif error_code or _first("error"):
        message = GENERIC_AUTH_ERROR
        error_code = error_code or _first("error")

    return RedirectFragment(
        error_code=error_code,
        error_description=description,
        message=message,
        is_recovery=is_recovery,
    )


__all__ = ["RedirectFragment", "parse_redirect_fragment", "OTP_EXPIRED_MESSAGE", "GENERIC_AUTH_ERROR"]
