"""
Configuration and startup security checks for the identity engine.

Why: The engine talks to a hosted auth/database backend with a public anon key.
A deployment that still carries the placeholder keys, or redirects OAuth users
over plain http, must not start in production.

Permissions: The caller needs no special privileges. Settings are read from
environment variables; the guard raises `SystemExit` on fatal misconfiguration.
"""
from __future__ import annotations

from typing import Dict

from pydantic import field_validator
from pydantic_settings import BaseSettings

from .domain import ALLOWED_ROLES

PLACEHOLDER_VALUES = frozenset({
    "YOUR_SUPABASE_URL_HERE",
    "YOUR_SUPABASE_ANON_KEY_HERE",
    "DUMMY_DO_NOT_USE",
})

MAX_SAFETY_TIMEOUT_SECONDS = 30.0


class Settings(BaseSettings):
    """Engine settings with validation."""

    # Environment
    ENVIRONMENT: str = "development"

    # Supabase (public anon key; the service role key is never needed client-side)
    SUPABASE_URL: str = ""
    SUPABASE_ANON_KEY: str = ""

    # Profile store
    PROFILES_TABLE: str = "profiles"
    PROFILES_SCHEMA: str = "public"
    ROLE_CLAIM_FUNCTIONS: Dict[str, str] = {"teacher": "claim_teacher_role"}

    # Session store / role intent
    AUTH_SAFETY_TIMEOUT_SECONDS: float = 5.0
    ROLE_INTENT_TTL_SECONDS: int = 900

    # Sign-in flows
    OAUTH_REDIRECT_URL: str = "http://localhost:3000"
    PHONE_COUNTRY_CODE: str = "+84"

    # Monitoring
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    class Config:
        case_sensitive = True

    @field_validator("LOG_LEVEL")
    @classmethod
    def _normalize_level(cls, v: str) -> str:
        return (v or "INFO").strip().upper()

    @field_validator("ROLE_CLAIM_FUNCTIONS")
    @classmethod
    def _claim_roles_must_exist(cls, v: Dict[str, str]) -> Dict[str, str]:
        unknown = sorted(set(v) - ALLOWED_ROLES)
        if unknown:
            raise ValueError(f"unknown roles in ROLE_CLAIM_FUNCTIONS: {unknown}")
        return v


def _is_prod_like(env: str) -> bool:
    env_l = (env or "").lower()
    return env_l in {"prod", "production", "stage", "staging"}


def ensure_secure_config_on_startup(cfg: Settings) -> None:
    """Fail fast on insecure production configuration.

    Checks (production/staging only):
    - Supabase URL and anon key must be set and not a known placeholder.
    - Supabase URL and OAuth redirect target must use https.
    - The safety timeout must be positive and at most 30 seconds, otherwise
      the loading screen either never shows or hangs far too long.
    """
    if not _is_prod_like(cfg.ENVIRONMENT):
        return  # dev/test remain permissive

    url = (cfg.SUPABASE_URL or "").strip()
    key = (cfg.SUPABASE_ANON_KEY or "").strip()
    if not url or url in PLACEHOLDER_VALUES:
        raise SystemExit("Refusing to start: SUPABASE_URL is unset or a placeholder in production.")
    if not key or key in PLACEHOLDER_VALUES:
        raise SystemExit("Refusing to start: SUPABASE_ANON_KEY is unset or a placeholder in production.")

    def _must_be_https(value: str, var_name: str) -> None:
        if not value.strip().lower().startswith("https://"):
            raise SystemExit(f"Refusing to start: {var_name} must use https in production.")

    _must_be_https(url, "SUPABASE_URL")
    _must_be_https(cfg.OAUTH_REDIRECT_URL or "", "OAUTH_REDIRECT_URL")

    timeout = cfg.AUTH_SAFETY_TIMEOUT_SECONDS
    if not (0 < timeout <= MAX_SAFETY_TIMEOUT_SECONDS):
        raise SystemExit(
            f"Refusing to start: AUTH_SAFETY_TIMEOUT_SECONDS must be within (0, {MAX_SAFETY_TIMEOUT_SECONDS:g}]."
        )


settings = Settings()

__all__ = ["Settings", "settings", "ensure_secure_config_on_startup"]
