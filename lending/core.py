"""
Core types and pure functions for the lending ledger.

This module provides the foundational data structures and protocols:
1. Protocols: LedgerView for read-only ledger access
2. Immutable data structures: Move, PendingTransaction, Transaction, Unit
3. Exceptions: LedgerError and the protocol error hierarchy
4. Type aliases: Positions, UnitState
5. ChangeSet: accumulator used by engines to stage one atomic transaction
6. Unit factories: token() and record_unit()

All functions in this module are pure and operate on read-only views.
No function can mutate ledger state directly.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN, ROUND_DOWN, ROUND_UP, getcontext
from enum import Enum
import copy
from typing import (
    Dict, List, Set, Optional, Callable, Any, Protocol,
    Tuple, FrozenSet, runtime_checkable,
)


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Token amounts and USD values are Decimal everywhere. The global context is
# configured once at import time so every engine rounds the same way.
#
# PRECONDITION: No other code should modify the global Decimal context.
# If thread-local contexts are needed, use decimal.localcontext().
#
_LEDGER_DECIMAL_CONTEXT = getcontext()
_LEDGER_DECIMAL_CONTEXT.prec = 50
_LEDGER_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Reserved wallet for issuance and redemption.
# The system wallet is exempt from balance validation and can hold any balance.
SYSTEM_WALLET = "system"

# Protocol-owned wallets. Registered by LendingProtocol on construction.
TREASURY_WALLET = "treasury"
COLLATERAL_VAULT = "collateral_vault"
LIQUIDITY_POOL = "liquidity_pool"
AUCTION_ESCROW = "auction_escrow"

PROTOCOL_WALLETS = (TREASURY_WALLET, COLLATERAL_VAULT, LIQUIDITY_POOL, AUCTION_ESCROW)

# Unit type constants (strings, not enum).
UNIT_TYPE_TOKEN = "TOKEN"
UNIT_TYPE_COLLATERAL_ACCOUNT = "COLLATERAL_ACCOUNT"
UNIT_TYPE_COLLATERAL_TYPE = "COLLATERAL_TYPE"
UNIT_TYPE_MARKET = "MARKET"
UNIT_TYPE_POSITION = "POSITION"
UNIT_TYPE_LIQUIDATION = "LIQUIDATION"
UNIT_TYPE_AUCTION = "AUCTION"
UNIT_TYPE_PROTOCOL = "PROTOCOL"

# Symbol of the singleton unit holding id counters and the pause flag.
PROTOCOL_SYMBOL = "PROTOCOL"

# All ratios are integer basis points.
BPS = 10_000
SECONDS_PER_YEAR = 31_536_000

# Hard caps enforced when a market is configured.
MAX_LIQUIDATION_PENALTY_BP = 2_000
MAX_ORIGINATION_FEE_BP = 1_000

# USD valuations share one global fixed-point scale.
VALUE_DECIMAL_PLACES = 18
VALUE_QUANTUM = Decimal(10) ** -VALUE_DECIMAL_PLACES

# Epsilon for Decimal comparisons.
# Quantities with absolute value below this threshold are treated as zero.
QUANTITY_EPSILON = Decimal("1e-24")

# Default token precision (ERC-20 style).
DEFAULT_TOKEN_DECIMALS = 18

DECIMAL_ROUNDING = {
    'TOKEN': ROUND_DOWN,
    'VALUE': ROUND_DOWN,
    'INTEREST': ROUND_UP,
    'FEES': ROUND_DOWN,
}


# ============================================================================
# TYPE ALIASES
# ============================================================================

# Mapping from wallet ID to quantity held by that wallet for a specific unit.
Positions = Dict[str, Decimal]

# Internal state for a unit (record fields, configuration, counters).
UnitState = Dict[str, Any]


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class LedgerView(Protocol):
    """
    Read-only access to balances and records.

    Pure calculations and staging helpers take a LedgerView: the Ledger
    itself, a ChangeSet layered over it, or a FakeView in tests.
    """

    @property
    def current_time(self) -> datetime: ...

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal: ...

    def get_unit_state(self, unit_symbol: str) -> UnitState: ...

    def get_positions(self, unit_symbol: str) -> Positions: ...

    def list_wallets(self) -> Set[str]: ...

    def get_unit(self, symbol: str) -> Unit: ...

    def has_unit(self, symbol: str) -> bool: ...


# ============================================================================
# ENUMS
# ============================================================================

class ExecuteResult(Enum):
    """
    Outcome of a transaction execution attempt.

    APPLIED: Transaction was successfully validated and applied to the ledger.
    REJECTED: Transaction failed validation due to insufficient funds, balance
              constraints, or transfer rule violations.
    """
    APPLIED = "applied"
    REJECTED = "rejected"


class OriginType(Enum):
    """
    Classification of where a transaction originated.

    Used for audit trails and reconciliation.
    """
    USER_ACTION = "user_action"           # Borrower / depositor initiated
    LIQUIDATION = "liquidation"           # Liquidation engine (direct or auction)
    ADMIN = "admin"                       # Configuration and pause switches
    SYSTEM = "system"                     # Issuance, initial setup


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """A transaction the ledger refused to apply."""
    pass


class InsufficientFunds(LedgerError):
    """A wallet would end below the unit's min_balance."""
    pass


class BalanceConstraintViolation(LedgerError):
    """A wallet would end above the unit's max_balance (records can never hold a balance)."""
    pass


class TransferRuleViolation(LedgerError):
    """A token's transfer rule vetoed one of the moves."""
    pass


class UnitNotRegistered(LedgerError):
    """Unknown unit symbol."""
    pass


class WalletNotRegistered(LedgerError):
    """Unknown wallet id."""
    pass


class ProtocolError(LedgerError):
    """Base exception for rejected lending protocol operations."""
    pass


class ValidationError(ProtocolError, ValueError):
    """Malformed input: zero/negative amounts, unknown asset, amount outside configured bounds."""
    pass


class ConfigurationError(ValidationError):
    """Rejected market, collateral or rate-model configuration."""
    pass


class AuthorizationError(ProtocolError):
    """Caller lacks the required capability or whitelist membership."""
    pass


class StateError(ProtocolError):
    """Operation not allowed in the current record state (inactive, queued, paused, reentrant)."""
    pass


class EconomicError(ProtocolError):
    """LTV, health-factor, liquidity or bid checks failed."""
    pass


class StalePriceError(ProtocolError):
    """Oracle data is older than the configured staleness window."""
    pass


# ============================================================================
# TRANSACTION ORIGIN
# ============================================================================

@dataclass(frozen=True, slots=True)
class TransactionOrigin:
    """
    Immutable record of a transaction's origin for audit purposes.

    Attributes:
        origin_type: Classification of the origin source
        source_id: Identifier of the caller (wallet ID)
        unit_symbol: Symbol of the record that triggered this (if applicable)
        event_type: Specific operation (e.g., "DEPOSIT", "REPAY", "PLACE_BID")
    """
    origin_type: OriginType
    source_id: str
    unit_symbol: Optional[str] = None
    event_type: Optional[str] = None

    def __repr__(self) -> str:
        parts = [f"{self.origin_type.value}:{self.source_id}"]
        if self.unit_symbol:
            parts.append(f"unit={self.unit_symbol}")
        if self.event_type:
            parts.append(f"event={self.event_type}")
        return f"Origin({', '.join(parts)})"


# ============================================================================
# UNIT STATE CHANGE
# ============================================================================

@dataclass(frozen=True, slots=True)
class UnitStateChange:
    """
    Record of a unit state change for transaction logging.

    Stores complete before/after state snapshots.

    Attributes:
        unit: Symbol of the unit whose state changed
        old_state: Complete state before the change (None for newly created records)
        new_state: Complete state after the change
    """
    unit: str
    old_state: Any
    new_state: Any

    def changed_fields(self) -> Dict[str, Tuple[Any, Any]]:
        """
        Compute fields that differ between old and new state.

        Returns:
            Dict mapping field name to (old_value, new_value) tuples.
        """
        old = self.old_state if isinstance(self.old_state, dict) else {}
        new = self.new_state if isinstance(self.new_state, dict) else {}
        changes = {}
        for key in set(old.keys()) | set(new.keys()):
            old_val = old.get(key)
            new_val = new.get(key)
            if old_val != new_val:
                changes[key] = (old_val, new_val)
        return changes


# ============================================================================
# CORE DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Move:
    """
    A single transfer of value between two wallets.

    Attributes:
        quantity: The amount to transfer (must be finite and positive).
        unit_symbol: The symbol of the token being transferred (e.g., "USDC").
        source: The wallet ID from which value is debited.
        dest: The wallet ID to which value is credited.
        contract_id: Identifier of the operation generating this move.
        metadata: Optional additional information about the move.
    """
    quantity: Decimal
    unit_symbol: str
    source: str
    dest: str
    contract_id: str
    metadata: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if not self.source or not self.source.strip():
            raise ValueError("Move source cannot be empty")
        if not self.dest or not self.dest.strip():
            raise ValueError("Move dest cannot be empty")
        if not self.unit_symbol or not self.unit_symbol.strip():
            raise ValueError("Move unit_symbol cannot be empty")
        if not self.contract_id or not self.contract_id.strip():
            raise ValueError("Move contract_id cannot be empty")
        if not isinstance(self.quantity, Decimal):
            raise ValueError(f"Move quantity must be Decimal, got {type(self.quantity)}")
        if self.quantity.is_infinite() or self.quantity.is_nan():
            raise ValueError(f"Move quantity must be finite, got {self.quantity}")
        if self.quantity < QUANTITY_EPSILON:
            raise ValueError(f"Move quantity must be positive, got {self.quantity}")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity} {self.unit_symbol}: {self.source}→{self.dest})"


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """
    What an operation wants to change, not yet applied.

    Carries the moves, the before/after snapshots of every touched record
    and the records to create. The ledger adds exec_id, sequence number and
    execution time when it commits.
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime
    units_to_create: Tuple['Unit', ...] = ()

    def is_empty(self) -> bool:
        """Return True if this pending transaction has no moves, no state deltas, and no units to create."""
        return not self.moves and not self.state_changes and not self.units_to_create

    def __repr__(self) -> str:
        return f"PendingTransaction({len(self.moves)} moves, {len(self.state_changes)} deltas, {self.origin})"


def build_transaction(
    view: LedgerView,
    moves: List[Move],
    state_changes: Optional[List[UnitStateChange]] = None,
    origin: Optional[TransactionOrigin] = None,
    units_to_create: Optional[Tuple['Unit', ...]] = None,
) -> PendingTransaction:
    """
    Wrap moves and record changes into a PendingTransaction stamped with the
    view's current time. State snapshots are deep-copied; the origin
    defaults to SYSTEM.

    Example:
        ledger.commit(build_transaction(ledger, [
            Move(Decimal("100"), "USDC", "alice", LIQUIDITY_POOL, "supply:alice")
        ]))
    """
    if origin is None:
        origin = TransactionOrigin(
            origin_type=OriginType.SYSTEM,
            source_id="system",
        )

    copied_changes: Tuple[UnitStateChange, ...] = ()
    if state_changes:
        copied_changes = tuple(
            UnitStateChange(
                unit=sc.unit,
                old_state=copy.deepcopy(sc.old_state),
                new_state=copy.deepcopy(sc.new_state),
            )
            for sc in state_changes
        )

    return PendingTransaction(
        moves=tuple(moves),
        state_changes=copied_changes,
        origin=origin,
        timestamp=view.current_time,
        units_to_create=units_to_create or (),
    )


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    A committed PendingTransaction as it appears in the audit trail.

    contract_ids is filled from the moves when not given.
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime
    exec_id: str
    ledger_name: str
    execution_time: datetime
    sequence_number: int
    units_to_create: Tuple['Unit', ...] = ()
    contract_ids: FrozenSet[str] = None

    def __post_init__(self):
        if not self.moves and not self.state_changes and not self.units_to_create:
            raise ValueError("Transaction must have moves, state_changes, or units_to_create")
        if self.contract_ids is None:
            object.__setattr__(
                self, 'contract_ids',
                frozenset(m.contract_id for m in self.moves)
            )

    def __repr__(self) -> str:
        lines = [f" #{self.sequence_number} {self.exec_id} at {self.timestamp} {self.origin}"]
        for unit in self.units_to_create:
            lines.append(f"    + {unit.symbol} [{unit.unit_type}]")
        for move in self.moves:
            lines.append(f"    {move.quantity} {move.unit_symbol}: {move.source} → {move.dest} ({move.contract_id})")
        for sc in self.state_changes:
            changed = ", ".join(
                f"{name}: {old!r} → {new!r}" for name, (old, new) in sorted(sc.changed_fields().items())
            )
            lines.append(f"    {sc.unit} {{{changed}}}")
        return "\n".join(lines)


# Type alias for transfer rule functions.
# Transfer rules validate moves and raise TransferRuleViolation if invalid.
TransferRule = Callable[[LedgerView, Move], None]


def _freeze_state(state: Optional[UnitState]) -> Tuple[Tuple[str, Any], ...]:
    """Convert a mutable state dict to a sorted tuple of (key, value) pairs."""
    if not state:
        return ()
    return tuple(sorted(state.items()))


def _thaw_state(frozen_state: Tuple[Tuple[str, Any], ...]) -> UnitState:
    """Convert a frozen state representation back to a mutable dict."""
    return dict(frozen_state)


@dataclass(frozen=True, slots=True)
class Unit:
    """
    Definition of a unit in the ledger: either a transferable token or a
    keyed record (position, market, collateral account, ...).

    Attributes:
        symbol: Short identifier for the unit (e.g., "USDC", "POSITION:7").
        name: Human-readable name for the unit.
        unit_type: Category of the unit (TOKEN, POSITION, MARKET, etc.).
        min_balance: Minimum allowed balance in any wallet.
        max_balance: Maximum allowed balance in any wallet.
        decimal_places: Number of decimal places for rounding (None = no rounding).
        transfer_rule: Optional function to validate moves involving this unit.
        _frozen_state: Internal frozen state representation (tuple of key-value pairs).
    """
    symbol: str
    name: str
    unit_type: str
    min_balance: Decimal = Decimal("0")
    max_balance: Decimal = Decimal("Infinity")
    decimal_places: Optional[int] = None
    transfer_rule: Optional[TransferRule] = None
    _frozen_state: Tuple[Tuple[str, Any], ...] = field(default_factory=tuple)

    @property
    def state(self) -> UnitState:
        """
        Get the unit's state as a mutable dictionary.

        Returns a new dict each time to prevent accidental mutation.
        """
        return _thaw_state(self._frozen_state)

    @property
    def quantum(self) -> Optional[Decimal]:
        """Smallest representable amount, or None when the unit is not rounded."""
        if self.decimal_places is None:
            return None
        return Decimal(10) ** -self.decimal_places

    def round(self, value: Decimal, rounding: Optional[str] = None) -> Decimal:
        """
        Round a value to this unit's decimal precision using quantize.

        Returns the value unchanged if decimal_places is None. The rounding
        mode defaults to the one registered for the unit type.
        """
        if self.decimal_places is None:
            return value
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        rounding_mode = rounding or DECIMAL_ROUNDING.get(self.unit_type, ROUND_HALF_EVEN)
        return value.quantize(self.quantum, rounding=rounding_mode)


def as_decimal(value: Any) -> Decimal:
    """Coerce ints, floats and strings to Decimal via their string form."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_value(value: Decimal) -> Decimal:
    """Quantize a USD value to the global valuation scale (truncating)."""
    return value.quantize(VALUE_QUANTUM, rounding=DECIMAL_ROUNDING['VALUE'])


# ============================================================================
# CHANGE SET
# ============================================================================

class ChangeSet:
    """
    Accumulates the moves and record changes of one protocol operation.

    Every write operation builds exactly one ChangeSet and commits it as a
    single PendingTransaction, so an operation either applies completely or
    not at all. A ChangeSet is itself a LedgerView: reads see the operation's
    own staged records and flows layered over the underlying view.

    Example:
        cs = ChangeSet(ledger)
        state = cs.get_unit_state("MARKET:USDC")
        cs.stage("MARKET:USDC", {**state, "total_borrowed": new_total})
        cs.move(amount, "USDC", LIQUIDITY_POOL, borrower, "borrow:7")
        ledger.commit(cs.build(origin))
    """

    def __init__(self, view: LedgerView):
        self.view = view
        self._moves: List[Move] = []
        self._created: Dict[str, Unit] = {}
        self._old: Dict[str, Optional[UnitState]] = {}
        self._new: Dict[str, UnitState] = {}

    @property
    def current_time(self) -> datetime:
        return self.view.current_time

    @property
    def moves(self) -> Tuple[Move, ...]:
        return tuple(self._moves)

    def has_unit(self, symbol: str) -> bool:
        return symbol in self._created or self.view.has_unit(symbol)

    def get_unit(self, symbol: str) -> Unit:
        if symbol in self._created:
            return self._created[symbol]
        return self.view.get_unit(symbol)

    def get_unit_state(self, symbol: str) -> UnitState:
        """Return the staged state for a record, falling back to the underlying view."""
        if symbol in self._new:
            return copy.deepcopy(self._new[symbol])
        return self.view.get_unit_state(symbol)

    def list_wallets(self) -> Set[str]:
        return self.view.list_wallets()

    def get_positions(self, unit_symbol: str) -> Positions:
        positions = dict(self.view.get_positions(unit_symbol))
        for m in self._moves:
            if m.unit_symbol != unit_symbol:
                continue
            positions[m.source] = positions.get(m.source, Decimal("0")) - m.quantity
            positions[m.dest] = positions.get(m.dest, Decimal("0")) + m.quantity
        return {w: q for w, q in positions.items() if abs(q) >= QUANTITY_EPSILON}

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """Underlying balance plus this transaction's staged flows."""
        return self.view.get_balance(wallet_id, unit_symbol) + self.net_flow(wallet_id, unit_symbol)

    def create(self, unit: Unit) -> None:
        """Register a new record unit as part of this transaction."""
        if self.has_unit(unit.symbol):
            raise StateError(f"Record {unit.symbol} already exists")
        self._created[unit.symbol] = unit
        self._old[unit.symbol] = None
        self._new[unit.symbol] = unit.state

    def stage(self, symbol: str, new_state: UnitState) -> None:
        """Stage the full new state of a record. The first observed state is kept as old_state."""
        if symbol not in self._old:
            if not self.view.has_unit(symbol):
                raise UnitNotRegistered(f"Unit {symbol} not registered")
            self._old[symbol] = self.view.get_unit_state(symbol)
        self._new[symbol] = copy.deepcopy(new_state)

    def move(self, quantity: Decimal, unit_symbol: str, source: str, dest: str,
             contract_id: str) -> None:
        """Append a transfer. Dust quantities are skipped."""
        if quantity < QUANTITY_EPSILON:
            return
        self._moves.append(Move(quantity, unit_symbol, source, dest, contract_id))

    def net_flow(self, wallet: str, unit_symbol: str) -> Decimal:
        """Net staged change of a wallet's balance for one token."""
        total = Decimal("0")
        for m in self._moves:
            if m.unit_symbol != unit_symbol:
                continue
            if m.dest == wallet:
                total += m.quantity
            if m.source == wallet:
                total -= m.quantity
        return total

    def is_empty(self) -> bool:
        return not self._moves and not self._new

    def build(self, origin: TransactionOrigin) -> PendingTransaction:
        """Freeze the accumulated changes into a PendingTransaction."""
        units = tuple(
            replace(unit, _frozen_state=_freeze_state(self._new[symbol]))
            for symbol, unit in self._created.items()
        )
        changes = [
            UnitStateChange(unit=symbol, old_state=self._old[symbol], new_state=new_state)
            for symbol, new_state in self._new.items()
        ]
        return build_transaction(self.view, self._moves, changes, origin, units)


# ============================================================================
# UNIT FACTORIES
# ============================================================================

def token(symbol: str, name: str, decimals: int = DEFAULT_TOKEN_DECIMALS,
          transfer_rule: Optional[TransferRule] = None) -> Unit:
    """
    Create a fungible token unit.

    Args:
        symbol: Token symbol (e.g., "USDC", "ETH").
        name: Full name of the token.
        decimals: Number of decimal places for amounts (default: 18).
        transfer_rule: Optional hook called for every move of the token.

    Returns:
        A Unit that can never go below a zero balance in any wallet
        (except the system wallet, which issues supply).
    """
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_TOKEN,
        decimal_places=decimals,
        min_balance=Decimal("0"),
        transfer_rule=transfer_rule,
        _frozen_state=_freeze_state({'decimals': decimals}),
    )


def record_unit(symbol: str, unit_type: str, state: UnitState, name: Optional[str] = None) -> Unit:
    """
    Create a record unit: keyed state storage that can never hold a balance.
    """
    return Unit(
        symbol=symbol,
        name=name or symbol,
        unit_type=unit_type,
        min_balance=Decimal("0"),
        max_balance=Decimal("0"),
        _frozen_state=_freeze_state(state),
    )
