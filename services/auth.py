"""API key grants and caller plan lookup.

Keys are provisioned through configuration only; each key identifies one
user and the plan tier that user is billed on.
"""
from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Mapping, Optional

from .plans import PlanTier


@dataclass(frozen=True)
class ApiKeyGrant:
    user_id: str
    plan: PlanTier = PlanTier.FREE


def resolve_api_key(
    provided: Optional[str], grants: Mapping[str, ApiKeyGrant]
) -> Optional[ApiKeyGrant]:
    """Return the grant for ``provided`` or None when the key is unknown."""

    if not provided:
        return None
    for key, grant in grants.items():
        if hmac.compare_digest(provided, key):
            return grant
    return None


def plan_for_user(user_id: Optional[str], grants: Mapping[str, ApiKeyGrant]) -> PlanTier:
    if not user_id:
        return PlanTier.ANONYMOUS
    for grant in grants.values():
        if grant.user_id == user_id:
            return grant.plan
    raise LookupError(f"No plan on record for user {user_id}")
