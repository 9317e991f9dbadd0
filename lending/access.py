"""
access.py - Role registry and per-call authorization context

Callers never act through ambient identity: every write operation receives
an AuthorizationContext naming the caller and the capability checker.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Iterable, Protocol, Set, runtime_checkable
import logging

from .core import AuthorizationError

logger = logging.getLogger(__name__)


# Roles (strings, like unit types)
ROLE_ADMIN = "ADMIN"
ROLE_RISK_MANAGER = "RISK_MANAGER"
ROLE_BORROWER = "BORROWER"
ROLE_LIQUIDATOR = "LIQUIDATOR"
# Privileged lock/unlock/seize on the collateral ledger
ROLE_COLLATERAL_MANAGER = "COLLATERAL_MANAGER"

ALL_ROLES = frozenset({
    ROLE_ADMIN, ROLE_RISK_MANAGER, ROLE_BORROWER, ROLE_LIQUIDATOR, ROLE_COLLATERAL_MANAGER,
})


@runtime_checkable
class CapabilityChecker(Protocol):
    def has_capability(self, caller: str, role: str) -> bool:
        ...


class RoleRegistry:
    """In-memory role assignments. Governance owns who gets what."""

    def __init__(self, grants: Dict[str, Iterable[str]] = None):
        self._roles: Dict[str, Set[str]] = {}
        for caller, roles in (grants or {}).items():
            for role in roles:
                self.grant(caller, role)

    def grant(self, caller: str, role: str) -> None:
        if role not in ALL_ROLES:
            raise ValueError(f"Unknown role {role}")
        self._roles.setdefault(caller, set()).add(role)
        logger.info("Granted %s to %s", role, caller)

    def revoke(self, caller: str, role: str) -> None:
        self._roles.get(caller, set()).discard(role)
        logger.info("Revoked %s from %s", role, caller)

    def roles_of(self, caller: str) -> Set[str]:
        return set(self._roles.get(caller, set()))

    def has_capability(self, caller: str, role: str) -> bool:
        return role in self._roles.get(caller, ())


@dataclass(frozen=True, slots=True)
class AuthorizationContext:
    """
    The identity an operation runs as.

    Attributes:
        caller: Wallet ID of the caller; moves debit and credit this wallet
        checker: Capability source consulted for role checks
    """
    caller: str
    checker: CapabilityChecker

    def has(self, role: str) -> bool:
        return self.checker.has_capability(self.caller, role)

    def require(self, role: str) -> None:
        if not self.has(role):
            raise AuthorizationError(f"{self.caller} lacks the {role} capability")

    def require_any(self, *roles: str) -> None:
        if not any(self.has(role) for role in roles):
            raise AuthorizationError(
                f"{self.caller} lacks any of the capabilities {', '.join(roles)}"
            )
