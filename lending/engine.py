"""
engine.py - Shared plumbing for the protocol engines

Every engine wraps the same Ledger, OracleAdapter and ReentrancyGuard.
Write operations stage their effects in a ChangeSet and finish with a
single _commit(), which is the atomic unit of work.

The PROTOCOL record holds the id counters and the pause switch.
"""

from __future__ import annotations
from typing import Any, Dict, Optional
import logging

from .access import AuthorizationContext
from .core import (
    PROTOCOL_SYMBOL, UNIT_TYPE_PROTOCOL,
    ChangeSet, LedgerView, OriginType, StateError, Transaction, TransactionOrigin,
    UnitNotRegistered, record_unit,
)
from .guard import ReentrancyGuard
from .ledger import Ledger
from .oracle import OracleAdapter

logger = logging.getLogger(__name__)

_COUNTERS = ("next_position_id", "next_liquidation_id", "next_auction_id")


def initial_protocol_state() -> Dict[str, Any]:
    state: Dict[str, Any] = {counter: 1 for counter in _COUNTERS}
    state["paused"] = False
    return state


def protocol_record():
    return record_unit(PROTOCOL_SYMBOL, UNIT_TYPE_PROTOCOL, initial_protocol_state(), "Lending protocol")


def is_paused(view: LedgerView) -> bool:
    if not view.has_unit(PROTOCOL_SYMBOL):
        return False
    return bool(view.get_unit_state(PROTOCOL_SYMBOL).get("paused", False))


def allocate_id(cs: ChangeSet, counter: str) -> int:
    """Take the next value of a PROTOCOL counter inside the current transaction."""
    if not cs.has_unit(PROTOCOL_SYMBOL):
        raise UnitNotRegistered(f"Unit {PROTOCOL_SYMBOL} not registered")
    state = cs.get_unit_state(PROTOCOL_SYMBOL)
    next_id = int(state[counter])
    state[counter] = next_id + 1
    cs.stage(PROTOCOL_SYMBOL, state)
    return next_id


class LedgerEngine:
    """Base class: holds the collaborators and commits ChangeSets."""

    def __init__(self, ledger: Ledger, oracle: OracleAdapter, guard: Optional[ReentrancyGuard] = None):
        self.ledger = ledger
        self.oracle = oracle
        self.guard = guard or ReentrancyGuard()

    @property
    def now(self):
        return self.ledger.current_time

    def _require_not_paused(self, view: LedgerView, operation: str) -> None:
        if is_paused(view):
            raise StateError(f"Protocol is paused: {operation} is disabled")

    def _commit(
        self,
        cs: ChangeSet,
        ctx: AuthorizationContext,
        event: str,
        symbol: Optional[str] = None,
        origin_type: OriginType = OriginType.USER_ACTION,
    ) -> Optional[Transaction]:
        origin = TransactionOrigin(origin_type, ctx.caller, symbol, event)
        return self.ledger.commit(cs.build(origin))
