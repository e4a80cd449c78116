"""
Security config guard tests.

Validates that production/staging environments fail fast when the Supabase
keys are placeholders, redirects are not https, or the safety timeout is out
of range, while development stays permissive.
"""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from auth_state.config import Settings, ensure_secure_config_on_startup


def _prod(**overrides) -> Settings:
    values = dict(
        ENVIRONMENT="production",
        SUPABASE_URL="https://abc.supabase.co",
        SUPABASE_ANON_KEY="eyJhbGciOi.real.key",
        OAUTH_REDIRECT_URL="https://onluyen.example.vn",
    )
    values.update(overrides)
    return Settings(**values)


def test_valid_production_config_passes():
    ensure_secure_config_on_startup(_prod())


@pytest.mark.parametrize("key", ["", "YOUR_SUPABASE_ANON_KEY_HERE", "DUMMY_DO_NOT_USE"])
def test_placeholder_anon_key_aborts_in_prod(key: str):
    with pytest.raises(SystemExit):
        ensure_secure_config_on_startup(_prod(SUPABASE_ANON_KEY=key))


def test_placeholder_url_aborts_in_staging():
    with pytest.raises(SystemExit):
        ensure_secure_config_on_startup(_prod(ENVIRONMENT="staging", SUPABASE_URL="YOUR_SUPABASE_URL_HERE"))


@pytest.mark.parametrize("field", ["SUPABASE_URL", "OAUTH_REDIRECT_URL"])
def test_plain_http_aborts_in_prod(field: str):
    with pytest.raises(SystemExit):
        ensure_secure_config_on_startup(_prod(**{field: "http://insecure.example.vn"}))


@pytest.mark.parametrize("timeout", [0, -1, 31])
def test_safety_timeout_must_be_in_range(timeout: float):
    with pytest.raises(SystemExit):
        ensure_secure_config_on_startup(_prod(AUTH_SAFETY_TIMEOUT_SECONDS=timeout))


def test_development_allows_placeholders():
    cfg = Settings(ENVIRONMENT="development", SUPABASE_ANON_KEY="YOUR_SUPABASE_ANON_KEY_HERE")
    ensure_secure_config_on_startup(cfg)


def test_settings_read_from_environment(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("AUTH_SAFETY_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("ROLE_INTENT_TTL_SECONDS", "60")
    monkeypatch.setenv("ROLE_CLAIM_FUNCTIONS", '{"teacher": "claim_teacher_role_v2"}')

    cfg = Settings()

    assert cfg.AUTH_SAFETY_TIMEOUT_SECONDS == 2.5
    assert cfg.ROLE_INTENT_TTL_SECONDS == 60
    assert cfg.ROLE_CLAIM_FUNCTIONS == {"teacher": "claim_teacher_role_v2"}


def test_claim_functions_reject_unknown_roles():
    with pytest.raises(ValidationError):
        Settings(ROLE_CLAIM_FUNCTIONS={"owner": "claim_owner"})


def test_log_level_is_normalized():
    assert Settings(LOG_LEVEL=" debug ").LOG_LEVEL == "DEBUG"
