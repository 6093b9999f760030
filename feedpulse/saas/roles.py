"""Role authorization on a linear hierarchy: Viewer < Manager < Admin < Owner."""

from __future__ import annotations

from feedpulse.core.constants import MSG_INSUFFICIENT_PRIVILEGES
from feedpulse.core.exceptions import InsufficientPrivilegesError
from feedpulse.core.logging import get_logger
from feedpulse.core.types import MemberRole

log = get_logger(__name__)

ROLE_LEVELS: dict[MemberRole, int] = {
    MemberRole.VIEWER: 1,
    MemberRole.MANAGER: 2,
    MemberRole.ADMIN: 3,
    MemberRole.OWNER: 4,
}


def role_level(role: MemberRole | str | None) -> int | None:
    """Numeric level of a role, or None for anything outside the hierarchy."""
    if role is None:
        return None
    try:
        return ROLE_LEVELS[MemberRole(role)]
    except (ValueError, KeyError):
        return None


def has_role(actual: MemberRole | str | None, required: MemberRole | str | None) -> bool:
    """True iff ``actual`` is at or above ``required``. Unknown roles are denied."""
    actual_level = role_level(actual)
    required_level = role_level(required)
    if actual_level is None or required_level is None:
        return False
    return actual_level >= required_level


def authorize(actual: MemberRole | str | None, required: MemberRole | str) -> None:
    """Raise InsufficientPrivilegesError unless ``actual`` satisfies ``required``."""
    if has_role(actual, required):
        return

    actual_name = str(getattr(actual, "value", actual))
    required_name = str(getattr(required, "value", required))
    log.info("authorization_denied", role=actual_name, required=required_name)
    raise InsufficientPrivilegesError(
        MSG_INSUFFICIENT_PRIVILEGES,
        {"role": actual_name, "required_role": required_name},
    )
