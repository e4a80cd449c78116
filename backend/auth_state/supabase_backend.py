"""
Supabase adapters for the auth service and profile store ports.

The adapters are duck-typed over a supabase `AsyncClient` (auth, PostgREST
table builder, RPC and realtime channel) so tests can pass a small fake.
Response shapes differ between client versions (objects vs. dicts), so the
helpers below read attributes and keys alike.

Error translation (PostgREST):
    - PGRST116 or an empty read            -> ProfileNotFound
    - 42501, 42P17, PGRST3xx (JWT)          -> ProfileAccessDenied
    - 23505                                 -> ProfileConflict
    - httpx transport errors, anything else -> ProfileStoreUnavailable
An update that touches zero rows was filtered by a row-level policy and is
reported as access-denied.

Security:
    The client must be created with the public anon key. Role escalation goes
    through server-side routines only (see ROLE_CLAIM_FUNCTIONS).
"""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

import httpx
import structlog
from postgrest.exceptions import APIError
from supabase import AsyncClient, acreate_client

from .config import Settings
from .domain import Identity, Profile, parse_timestamp
from .ports import (
    AuthServiceError,
    AuthStateHandler,
    AuthSubscription,
    ChangeHandler,
    ProfileAccessDenied,
    ProfileChange,
    ProfileConflict,
    ProfileNotFound,
    ProfileStoreError,
    ProfileStoreUnavailable,
    RoleClaimUnavailable,
)

logger = structlog.get_logger("onluyen.auth_state.supabase")

DENIED_CODES = frozenset({"42501", "42P17"})
NOT_FOUND_CODES = frozenset({"PGRST116"})
CONFLICT_CODES = frozenset({"23505"})

_CHANGE_KINDS = {"INSERT": "insert", "UPDATE": "update", "DELETE": "delete"}


def _get(obj: Any, *keys: str) -> Any:
    """First non-None value among `keys`, read as attribute or mapping key."""
    if obj is None:
        return None
    for k in keys:
        if isinstance(obj, Mapping):
            val = obj.get(k)
        else:
            val = getattr(obj, k, None)
        if val is not None:
            return val
    return None


def identity_from_user(user: Any) -> Optional[Identity]:
    user_id = _get(user, "id")
    if not user_id:
        return None
    metadata = _get(user, "user_metadata", "raw_user_meta_data") or {}
    return Identity(
        id=str(user_id),
        email=_get(user, "email") or None,
        phone=_get(user, "phone") or None,
        metadata=dict(metadata),
        created_at=parse_timestamp(_get(user, "created_at")),
    )


def identity_from_session(session: Any) -> Optional[Identity]:
    return identity_from_user(_get(session, "user"))


def translate_api_error(exc: APIError) -> ProfileStoreError:
    code = str(getattr(exc, "code", None) or "")
    detail = getattr(exc, "message", None) or str(exc)
    if code in NOT_FOUND_CODES:
        return ProfileNotFound(code, detail)
    if code in DENIED_CODES or code.startswith("PGRST3"):
        return ProfileAccessDenied(code, detail)
    if code in CONFLICT_CODES:
        return ProfileConflict(code, detail)
    return ProfileStoreUnavailable(code or "api_error", detail)


def _auth_error(exc: Exception) -> AuthServiceError:
    code = getattr(exc, "code", None) or exc.__class__.__name__
    message = getattr(exc, "message", None) or str(exc)
    return AuthServiceError(str(code), message)


def change_from_payload(payload: Any) -> Optional[ProfileChange]:
    """Normalize a realtime postgres-changes payload.

    Accepts `{"data": {"type", "record", "old_record"}}` as well as the older
    flat `{"eventType", "new", "old"}` shape.
    """
    data = _get(payload, "data") or payload
    raw_type = _get(data, "type", "eventType")
    kind = _CHANGE_KINDS.get(str(getattr(raw_type, "value", raw_type) or "").upper())
    if kind is None:
        return None
    new = _get(data, "record", "new") or {}
    old = _get(data, "old_record", "old") or {}
    if kind == "delete":
        profile_id = old.get("id") or new.get("id")
        return ProfileChange("delete", str(profile_id), None) if profile_id else None
    if not new.get("id"):
        return None
    profile = Profile.from_row(new)
    return ProfileChange(kind, profile.id, profile)


class SupabaseAuthService:
    def __init__(self, client: AsyncClient):
        self._client = client

    @property
    def _auth(self) -> Any:
        return self._client.auth

    async def get_session(self) -> Optional[Identity]:
        session = await self._auth.get_session()
        return identity_from_session(session)

    def on_auth_state_change(self, handler: AuthStateHandler) -> AuthSubscription:
        def _callback(event: Any, session: Any) -> None:
            name = str(getattr(event, "value", event))
            handler(name, identity_from_session(session))

        return self._auth.on_auth_state_change(_callback)

    async def sign_out(self) -> None:
        await self._auth.sign_out()

    async def sign_in_with_password(self, *, email: str, password: str) -> Optional[Identity]:
        try:
            res = await self._auth.sign_in_with_password({"email": email, "password": password})
        except Exception as exc:
            raise _auth_error(exc) from exc
        return identity_from_user(_get(res, "user"))

    async def sign_up(self, *, email: str, password: str, metadata: Mapping[str, Any]) -> Tuple[Optional[Identity], bool]:
        try:
            res = await self._auth.sign_up(
                {"email": email, "password": password, "options": {"data": dict(metadata)}}
            )
        except Exception as exc:
            raise _auth_error(exc) from exc
        return identity_from_user(_get(res, "user")), _get(res, "session") is not None

    async def sign_in_with_oauth(
        self,
        *,
        provider: str,
        redirect_to: str,
        metadata: Mapping[str, Any],
        query_params: Optional[Mapping[str, str]] = None,
    ) -> str:
        # Providers drop custom identity data; the role travels as an intent marker.
        options: Dict[str, Any] = {"redirect_to": redirect_to}
        if query_params:
            options["query_params"] = dict(query_params)
        try:
            res = await self._auth.sign_in_with_oauth({"provider": provider, "options": options})
        except Exception as exc:
            raise _auth_error(exc) from exc
        return str(_get(res, "url") or "")

    async def sign_in_with_otp(self, *, phone: str, metadata: Mapping[str, Any]) -> None:
        try:
            await self._auth.sign_in_with_otp({"phone": phone, "options": {"data": dict(metadata)}})
        except Exception as exc:
            raise _auth_error(exc) from exc

    async def verify_otp(self, *, phone: str, token: str) -> Optional[Identity]:
        try:
            res = await self._auth.verify_otp({"phone": phone, "token": token, "type": "sms"})
        except Exception as exc:
            raise _auth_error(exc) from exc
        return identity_from_user(_get(res, "user"))

    async def update_user_metadata(self, fields: Mapping[str, Any]) -> Optional[Identity]:
        try:
            res = await self._auth.update_user({"data": dict(fields)})
        except Exception as exc:
            raise _auth_error(exc) from exc
        return identity_from_user(_get(res, "user"))

    async def reset_password_for(self, *, email: str, redirect_to: str) -> None:
        try:
            await self._auth.reset_password_for_email(email, {"redirect_to": redirect_to})
        except Exception as exc:
            raise _auth_error(exc) from exc


class _RealtimeSubscription:
    def __init__(self, client: Any, channel: Any):
        self._client = client
        self._channel = channel

    async def close(self) -> None:
        if self._channel is None:
            return
        channel, self._channel = self._channel, None
        await self._client.remove_channel(channel)


class SupabaseProfileStore:
    def __init__(
        self,
        client: AsyncClient,
        *,
        table: str = "profiles",
        schema: str = "public",
        claim_functions: Optional[Mapping[str, str]] = None,
    ):
        self._client = client
        self._table_name = table
        self._schema = schema
        self._claim_functions = dict(claim_functions or {"teacher": "claim_teacher_role"})

    def _table(self) -> Any:
        if self._schema == "public":
            return self._client.table(self._table_name)
        return self._client.schema(self._schema).table(self._table_name)

    async def _execute(self, query: Any) -> Any:
        try:
            return await query.execute()
        except APIError as exc:
            raise translate_api_error(exc) from exc
        except httpx.HTTPError as exc:
            raise ProfileStoreUnavailable("transport_error", exc.__class__.__name__) from exc

    async def fetch_profile(self, profile_id: str) -> Profile:
        res = await self._execute(self._table().select("*").eq("id", profile_id).limit(1))
        rows = _get(res, "data") or []
        if not rows:
            raise ProfileNotFound("PGRST116", "no profile row")
        return Profile.from_row(rows[0])

    async def insert_profile(self, profile: Profile) -> None:
        await self._execute(self._table().insert(profile.to_row()))

    async def update_profile(self, profile_id: str, fields: Mapping[str, Any]) -> None:
        res = await self._execute(self._table().update(dict(fields)).eq("id", profile_id))
        if not (_get(res, "data") or []):
            raise ProfileAccessDenied("no_rows_updated", f"update of {profile_id} affected no rows")

    async def claim_role(self, role: str) -> None:
        fn = self._claim_functions.get(role)
        if not fn:
            raise RoleClaimUnavailable("no_claim_routine")
        try:
            await self._client.rpc(fn, {}).execute()
        except APIError as exc:
            raise RoleClaimUnavailable(str(getattr(exc, "code", None) or "rpc_failed")) from exc
        except httpx.HTTPError as exc:
            raise RoleClaimUnavailable("transport_error") from exc

    async def list_profiles(self) -> Sequence[Profile]:
        res = await self._execute(self._table().select("*").order("created_at", desc=True))
        return [Profile.from_row(row) for row in (_get(res, "data") or [])]

    async def subscribe_changes(self, handler: ChangeHandler) -> _RealtimeSubscription:
        def _callback(payload: Any) -> None:
            change = change_from_payload(payload)
            if change is None:
                logger.debug("roster_event_ignored", reason="unparsed_payload")
                return
            handler(change)

        channel = self._client.channel(f"{self._table_name}-changes")
        channel.on_postgres_changes("*", schema=self._schema, table=self._table_name, callback=_callback)
        await channel.subscribe()
        return _RealtimeSubscription(self._client, channel)


async def create_supabase_backend(settings: Settings) -> Tuple[SupabaseAuthService, SupabaseProfileStore]:
    """Create one AsyncClient and both adapters on top of it."""
    client = await acreate_client(settings.SUPABASE_URL, settings.SUPABASE_ANON_KEY)
    return (
        SupabaseAuthService(client),
        SupabaseProfileStore(
            client,
            table=settings.PROFILES_TABLE,
            schema=settings.PROFILES_SCHEMA,
            claim_functions=settings.ROLE_CLAIM_FUNCTIONS,
        ),
    )


__all__ = [
    "SupabaseAuthService",
    "SupabaseProfileStore",
    "create_supabase_backend",
    "translate_api_error",
    "change_from_payload",
    "identity_from_user",
    "identity_from_session",
]
