"""
Wire the engine for a running app: .env, logging, startup guard, adapters.

Usage:
    ctx = await create_auth_context()
    await ctx.start()
"""
from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from .config import Settings, ensure_secure_config_on_startup
from .context import AuthContext
from .logging_config import configure_logging
from .role_intent import RoleIntentStore
from .sign_in import SignInService
from .supabase_backend import SupabaseProfileStore, create_supabase_backend


def _should_load_dotenv() -> bool:
    """Decide if we should load a local .env file.

    - Never load under pytest to avoid contaminating test env.
    - Allow explicit opt-out via ONLUYEN_ENABLE_DOTENV (default true outside pytest).
    """
    if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        return False
    flag = (os.getenv("ONLUYEN_ENABLE_DOTENV", "true") or "").strip().lower()
    return flag in ("1", "true", "yes")


@dataclass
class AccessStack:
    settings: Settings
    context: AuthContext
    sign_in: SignInService
    store: SupabaseProfileStore


async def create_access_stack(settings: Optional[Settings] = None) -> AccessStack:
    if settings is None:
        if _should_load_dotenv():
            load_dotenv()
        settings = Settings()
    configure_logging(settings.LOG_LEVEL, json=settings.LOG_JSON)
    ensure_secure_config_on_startup(settings)

    auth, store = await create_supabase_backend(settings)
    context = AuthContext(
        auth,
        store,
        intents=RoleIntentStore(ttl_seconds=settings.ROLE_INTENT_TTL_SECONDS),
        safety_timeout=settings.AUTH_SAFETY_TIMEOUT_SECONDS,
    )
    sign_in = SignInService(
        auth,
        store,
        context,
        redirect_to=settings.OAUTH_REDIRECT_URL,
        country_code=settings.PHONE_COUNTRY_CODE,
    )
    return AccessStack(settings=settings, context=context, sign_in=sign_in, store=store)


async def create_auth_context(settings: Optional[Settings] = None) -> AuthContext:
    """Return an unstarted AuthContext backed by Supabase."""
    stack = await create_access_stack(settings)
    return stack.context


__all__ = ["AccessStack", "create_access_stack", "create_auth_context"]
