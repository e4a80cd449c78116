"""
Identity domain types and small helpers.

Why:
- Centralize allowed roles and statuses so the gate, the resolver and the admin
  roster cannot drift apart.
- Keep the `Identity` (owned by the auth service, read-only here) separate from
  the `Profile` (durable application record, one per identity id).

Invariant:
    `pending` is only meaningful for teachers. Students and admins count as
    active unless explicitly blocked.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Mapping, Optional

# Keep roles minimal and explicit. Immutable to prevent accidental mutation.
ALLOWED_ROLES = frozenset({"student", "teacher", "admin"})
ALLOWED_STATUSES = frozenset({"active", "pending", "blocked"})

DEFAULT_ROLE = "student"
APPROVAL_ROLE = "teacher"
ADMIN_ROLE = "admin"


def normalize_role(value: Any) -> Optional[str]:
    """Return a known role (lowercased) or None for anything else."""
    if not isinstance(value, str):
        return None
    role = value.strip().lower()
    return role if role in ALLOWED_ROLES else None


def normalize_status(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    status = value.strip().lower()
    return status if status in ALLOWED_STATUSES else None


def default_status_for(role: Optional[str]) -> str:
    """Teachers start pending (fail-closed), everybody else active."""
    return "pending" if role == APPROVAL_ROLE else "active"


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        raw = value.strip()
        # fromisoformat accepts a "Z" suffix only from Python 3.11 on
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            return None
    return None


@dataclass(frozen=True)
class Identity:
    """Authenticated principal as reported by the auth service."""

    id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    @property
    def requested_role(self) -> Optional[str]:
        """Role carried in the signup metadata, if it is a known role."""
        return normalize_role((self.metadata or {}).get("role"))

    def with_metadata(self, fields: Mapping[str, Any]) -> "Identity":
        merged = dict(self.metadata or {})
        merged.update(fields)
        return replace(self, metadata=merged)


@dataclass(frozen=True)
class Profile:
    id: str
    role: str = DEFAULT_ROLE
    status: str = "active"
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    email: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Profile":
        """Build a profile from a database row.

        Unknown roles collapse to `student`; a missing or unknown status falls
        back to the role default so a half-written teacher row stays pending.
        """
        role = normalize_role(row.get("role")) or DEFAULT_ROLE
        status = normalize_status(row.get("status")) or default_status_for(role)
        return cls(
            id=str(row["id"]),
            role=role,
            status=status,
            full_name=row.get("full_name"),
            avatar_url=row.get("avatar_url"),
            email=row.get("email"),
            created_at=parse_timestamp(row.get("created_at")),
        )

    def to_row(self) -> dict:
        row = {
            "id": self.id,
            "role": self.role,
            "status": self.status,
            "full_name": self.full_name,
            "avatar_url": self.avatar_url,
            "email": self.email,
        }
        if self.created_at is not None:
            row["created_at"] = self.created_at.isoformat()
        return row

    def with_changes(self, **fields: Any) -> "Profile":
        return replace(self, **fields)


def display_name_for(identity: Identity) -> Optional[str]:
    name = (identity.metadata or {}).get("full_name")
    if isinstance(name, str) and name.strip():
        return name.strip()
    if identity.email and "@" in identity.email:
        return identity.email.split("@", 1)[0]
    return identity.email or identity.phone


def draft_profile_for(identity: Identity) -> Profile:
    """Profile to insert when none exists yet for `identity`."""
    role = identity.requested_role or DEFAULT_ROLE
    avatar = (identity.metadata or {}).get("avatar_url")
    return Profile(
        id=identity.id,
        role=role,
        status=default_status_for(role),
        full_name=display_name_for(identity),
        avatar_url=avatar if isinstance(avatar, str) else None,
        email=identity.email,
    )


__all__ = [
    "ALLOWED_ROLES",
    "ALLOWED_STATUSES",
    "DEFAULT_ROLE",
    "APPROVAL_ROLE",
    "ADMIN_ROLE",
    "Identity",
    "Profile",
    "normalize_role",
    "normalize_status",
    "default_status_for",
    "display_name_for",
    "draft_profile_for",
    "parse_timestamp",
]
