"""
Redirect fragment parsing: provider error codes and recovery links.
"""
from __future__ import annotations

from auth_state.fragments import GENERIC_AUTH_ERROR, OTP_EXPIRED_MESSAGE, parse_redirect_fragment


def test_empty_fragment_has_nothing():
    parsed = parse_redirect_fragment("")
    assert not parsed.has_error and not parsed.is_recovery and parsed.message is None
    assert parse_redirect_fragment(None).message is None


def test_expired_link_gets_friendly_message():
    parsed = parse_redirect_fragment(
        "#error=access_denied&error_code=otp_expired&error_description=Email+link+is+invalid+or+has+expired"
    )
    assert parsed.has_error
    assert parsed.error_code == "otp_expired"
    assert parsed.message == OTP_EXPIRED_MESSAGE


def test_other_errors_show_the_description():
    parsed = parse_redirect_fragment("error=server_error&error_code=unexpected&error_description=Database+error")
    assert parsed.message == "Database error"


def test_error_without_description_is_generic():
    parsed = parse_redirect_fragment("#error=access_denied")
    assert parsed.error_code == "access_denied"
    assert parsed.message == GENERIC_AUTH_ERROR


def test_recovery_link_is_detected():
    parsed = parse_redirect_fragment("#access_token=abc&refresh_token=def&type=recovery")
    assert parsed.is_recovery
    assert not parsed.has_error
