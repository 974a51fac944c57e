"""
auth/roles.py -- The single gate through which a user's role is written.

Rules (desired role vs. stored role):

  stored      desired      result
  ---------   ---------    -------------------------------------------
  unset       any          desired is persisted
  MEMBER      ORGANIZER    ORGANIZER is persisted (elevation)
  MEMBER      MEMBER       no-op
  ORGANIZER   ORGANIZER    no-op
  ORGANIZER   MEMBER       rejected downgrade: stays ORGANIZER, no error

The rule lives in the store's conditional UPDATE (auth/store.py), so two
racing requests cannot interleave a read and a write and land on MEMBER.
This module validates input, maps store failures, and logs outcomes.

Both entry points -- the authenticated role setting and the pre-login
"choose your role" preference -- end in RoleService.set_role(). There is no
other write path for role in this codebase.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from auth.models import Role, normalize_role, parse_role
from auth.store import UserStore
from core.errors import DependencyUnavailable, Unauthorized

logger = logging.getLogger("plannr.auth.roles")


@dataclass(frozen=True)
class RoleChange:
    """Outcome of a role write. effective may differ from what was requested."""

    effective: Role
    changed: bool


class RoleService:
    def __init__(self, store: UserStore) -> None:
        self.store = store

    def set_role(self, user_id: str, desired: object) -> RoleChange:
        """Apply desired to user_id under the monotonic rule.

        Raises InvalidRole before touching the store if desired is not a Role,
        Unauthorized if the identity no longer exists, and
        DependencyUnavailable if the store fails.
        """
        role = parse_role(desired)
        try:
            outcome = self.store.apply_role(user_id, role)
        except SQLAlchemyError as exc:
            logger.exception("Role write failed for user %s", user_id)
            raise DependencyUnavailable("identity_store") from exc
        if outcome is None:
            raise Unauthorized()

        effective, changed = outcome
        if changed:
            logger.info("Role for user %s set to %s", user_id, effective.value)
        elif effective is not role:
            logger.info("Rejected downgrade to %s for user %s (stays %s)", role.value, user_id, effective.value)
        return RoleChange(effective=effective, changed=changed)

    def apply_role_intent(self, user_id: str, raw_intent: str | None) -> RoleChange | None:
        """Apply the role a visitor picked before signing in, if any.

        The preference arrives as an unauthenticated cookie, so an unusable
        value is dropped rather than reported. A usable one goes through
        set_role() like any other request.
        """
        intent = normalize_role(raw_intent)
        if intent is None:
            return None
        return self.set_role(user_id, intent)
