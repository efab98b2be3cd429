"""
Role-Based Access Control Module

The engine never authenticates anyone: an external identity provider hands it
an already-authenticated principal, and every operation re-checks the role
and ownership rules here regardless of what a client interface exposes.
"""

from dataclasses import dataclass
from enum import Enum

from .errors import AuthorizationError


class Role(Enum):
    """Principal roles"""
    USER = "USER"
    ADMIN = "ADMIN"


class AccessRule(Enum):
    """Who may perform an action on a resource"""
    OWNER = "owner"                    # The resource owner only
    ADMIN = "admin"                    # ADMIN role only
    OWNER_OR_ADMIN = "owner_or_admin"  # The owner, or any ADMIN


@dataclass(frozen=True)
class Principal:
    """Authenticated caller as supplied by the identity provider"""
    user_id: str
    role: Role = Role.USER
    
    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN
    
    def owns(self, owner_id: str) -> bool:
        return self.user_id == owner_id


def authorize(principal: Principal, rule: AccessRule, owner_id: str, action: str) -> None:
    """
    Enforce an access rule against a principal
    
    Raises:
        AuthorizationError: If the principal does not satisfy the rule
    """
    if rule == AccessRule.ADMIN:
        allowed = principal.is_admin
    elif rule == AccessRule.OWNER:
        allowed = principal.owns(owner_id)
    else:
        allowed = principal.is_admin or principal.owns(owner_id)
    
    if not allowed:
        who = "ADMIN" if rule == AccessRule.ADMIN else "the owner or an ADMIN"
        raise AuthorizationError(f"Only {who} may {action}")


def require_admin(principal: Principal, action: str) -> None:
    """Raise AuthorizationError unless the principal is an ADMIN"""
    if not principal.is_admin:
        raise AuthorizationError(f"Only ADMIN may {action}")
