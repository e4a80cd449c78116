"""Identity and authorization reconciliation engine.

Turns a raw auth session into a role- and status-aware verdict and keeps it
consistent with the profile store. Entry point: `AuthContext`.
"""
from .context import AuthContext, AuthSnapshot
from .domain import Identity, Profile
from .gate import Verdict, VerdictKind, decide_verdict, navigation_target
from .profiles import ProfileResolver, ResolveResult
from .role_intent import RoleIntentBridge, RoleIntentStore

__all__ = [
    "AuthContext",
    "AuthSnapshot",
    "Identity",
    "Profile",
    "Verdict",
    "VerdictKind",
    "decide_verdict",
    "navigation_target",
    "ProfileResolver",
    "ResolveResult",
    "RoleIntentBridge",
    "RoleIntentStore",
]
