"""Account / role selection among the role pairs of an assertion."""

import logging

from .errors import AmbiguousRoleError, RoleNotFoundError, RoleResolutionError

logger = logging.getLogger(__name__)


def _matches(role, requested):
    """Case-sensitive match of *requested* against the end of the role ARN."""
    if requested == role.role_arn:
        return True
    path = role.role_path
    return path == requested or path.endswith(f"/{requested}")


def _in_account(role, account):
    return account is None or role.account_id == account


def resolve(roles, requested, account=None):
    """Return the single role pair named *requested*.

    *requested* may be a role name (``Admin``), a role path (``team/Admin``)
    or a full role ARN.  When *account* is given the account id must match
    as well.  Raises :class:`RoleNotFoundError` for no match and
    :class:`AmbiguousRoleError` when several roles match.
    """
    candidates = [r for r in roles if _matches(r, requested) and _in_account(r, account)]

    if not candidates:
        where = f" in account {account}" if account else ""
        available = [r.alias for r in roles]
        raise RoleNotFoundError(
            f"no matching role ({requested}) found{where}; available: {', '.join(available)}",
            requested=requested,
            candidates=available,
        )
    if len(candidates) > 1:
        aliases = [r.alias for r in candidates]
        raise AmbiguousRoleError(
            f"role {requested} matches {len(candidates)} roles ({', '.join(aliases)}); "
            f"set an account to choose one",
            requested=requested,
            candidates=aliases,
        )
    return candidates[0]


async def choose_role(roles, selector=None, account=None):
    """Pick a role when no role name is configured, asking *selector* if needed."""
    candidates = [r for r in roles if _in_account(r, account)]
    if not candidates:
        raise RoleNotFoundError(
            f"no roles granted in account {account}",
            candidates=[r.alias for r in roles],
        )
    if len(candidates) == 1:
        return candidates[0]
    if selector is None:
        raise AmbiguousRoleError(
            "several roles are available and no role is configured",
            candidates=[r.alias for r in candidates],
        )

    index = await selector("Select role", [f"{r.alias}  ({r.role_arn})" for r in candidates])
    if not 0 <= index < len(candidates):
        raise RoleResolutionError(f"invalid role selection: {index}")
    logger.debug("Selected role %s", candidates[index].role_arn)
    return candidates[index]
