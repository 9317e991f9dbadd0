"""
ledger.py - Host ledger for the lending protocol

Holds every token balance and every protocol record (markets, positions,
collateral accounts, liquidations, auctions) and applies changes to them
only through committed transactions. A transaction either applies in full
or leaves the ledger untouched, which is what makes each protocol
operation atomic.

The Ledger satisfies the LedgerView protocol, so engines and pure
functions can be handed it for reads.
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Set, Optional, Any, Tuple
import copy
import logging
from decimal import Decimal

from .core import (
    Move, Transaction, Unit,
    PendingTransaction,
    ExecuteResult,
    Positions, UnitState,
    QUANTITY_EPSILON, SYSTEM_WALLET,
    LedgerError, ProtocolError, InsufficientFunds, BalanceConstraintViolation,
    TransferRuleViolation, UnitNotRegistered, WalletNotRegistered,
    _freeze_state,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def _empty_wallet() -> Dict[str, Decimal]:
    return defaultdict(lambda: ZERO)


class Ledger:
    """
    Double-entry balances plus keyed record storage, with an audit trail.

    Every commit is validated against registration, transfer rules, balance
    limits and the ledger clock before anything changes, and every applied
    transaction is appended to transaction_log. The ledger is single
    threaded: callers serialize operations.

    Example:
        ledger = Ledger("main", datetime(2024, 1, 1))
        ledger.register_unit(token("USDC", "USD Coin", 6))
        ledger.register_wallet("alice")
        ledger.commit(build_transaction(ledger, [
            Move(Decimal("100"), "USDC", SYSTEM_WALLET, "alice", "fund:alice")
        ]))
    """

    POSITION_EPSILON = QUANTITY_EPSILON

    def __init__(
        self,
        name: str,
        initial_time: Optional[datetime] = None,
        verbose: bool = True,
        test_mode: bool = False
    ):
        """
        Args:
            name: Ledger identifier, part of every exec_id
            initial_time: Starting logical time (default: 1970-01-01)
            verbose: Log transactions at INFO instead of DEBUG
            test_mode: Allow set_balance() to write balances directly
        """
        self.name = name
        self.verbose = verbose
        self._test_mode = test_mode
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)

        self.units: Dict[str, Unit] = {}
        self.registered_wallets: Set[str] = {SYSTEM_WALLET}
        self.balances: Dict[str, Dict[str, Decimal]] = {SYSTEM_WALLET: _empty_wallet()}
        # unit -> {wallet -> quantity}, non-zero holdings only
        self._positions_by_unit: Dict[str, Dict[str, Decimal]] = defaultdict(dict)

        self.transaction_log: List[Transaction] = []
        self._next_sequence: int = 0

    @property
    def _log_level(self) -> int:
        return logging.INFO if self.verbose else logging.DEBUG

    # ------------------------------------------------------------------
    # Reads (LedgerView)
    # ------------------------------------------------------------------

    @property
    def current_time(self) -> datetime:
        return self._current_time

    def _require_unit(self, unit_symbol: str) -> Unit:
        unit = self.units.get(unit_symbol)
        if unit is None:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return unit

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """
        Raises:
            WalletNotRegistered, UnitNotRegistered
        """
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        self._require_unit(unit_symbol)
        return self.balances[wallet_id].get(unit_symbol, ZERO)

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """A private copy of a unit's state; mutating it does not touch the ledger."""
        return copy.deepcopy(self._require_unit(unit_symbol).state)

    def get_positions(self, unit_symbol: str) -> Positions:
        return dict(self._positions_by_unit.get(unit_symbol, {}))

    def list_wallets(self) -> Set[str]:
        return set(self.registered_wallets)

    def list_units(self, unit_type: Optional[str] = None) -> List[str]:
        """Registered unit symbols, sorted, optionally of one unit type."""
        return sorted(
            symbol for symbol, unit in self.units.items()
            if unit_type is None or unit.unit_type == unit_type
        )

    def get_unit(self, symbol: str) -> Unit:
        return self._require_unit(symbol)

    def has_unit(self, symbol: str) -> bool:
        return symbol in self.units

    def is_registered(self, wallet_id: str) -> bool:
        return wallet_id in self.registered_wallets

    def total_supply(self, unit_symbol: str) -> Decimal:
        """Signed sum of a unit over all wallets, summed in wallet order."""
        self._require_unit(unit_symbol)
        total = ZERO
        for wallet in sorted(self.registered_wallets):
            total += self.balances[wallet].get(unit_symbol, ZERO)
        return total

    def verify_double_entry(
        self,
        expected_supplies: Dict[str, Decimal] = None,
        tolerance: Decimal = Decimal("1e-9")
    ) -> Dict[str, Any]:
        """
        Compare each unit's total supply against an expected value.

        Tokens are issued from SYSTEM_WALLET, whose balance goes negative,
        so a closed system expects a supply of zero for every token.

        Returns:
            {'valid': bool, 'supplies': {unit: total}, 'discrepancies': [...]}
        """
        expected_supplies = expected_supplies or {}
        supplies = {symbol: self.total_supply(symbol) for symbol in self.units}
        discrepancies = []
        for symbol, expected in expected_supplies.items():
            if symbol not in supplies:
                discrepancies.append({
                    'unit': symbol, 'expected': expected, 'actual': ZERO,
                    'difference': abs(expected), 'error': 'unit not registered',
                })
                continue
            difference = abs(supplies[symbol] - expected)
            if difference > tolerance:
                discrepancies.append({
                    'unit': symbol, 'expected': expected, 'actual': supplies[symbol],
                    'difference': difference,
                })
        return {
            'valid': not discrepancies,
            'supplies': supplies,
            'discrepancies': discrepancies,
        }

    # ------------------------------------------------------------------
    # Clock and registration
    # ------------------------------------------------------------------

    def advance_time(self, new_time: datetime) -> None:
        """Move the logical clock forward. Raises ValueError when moving backwards."""
        if new_time < self._current_time:
            raise ValueError(f"Cannot move time backwards: {new_time} < {self._current_time}")
        self._current_time = new_time

    def register_wallet(self, wallet_id: str) -> str:
        if wallet_id in self.registered_wallets:
            raise ValueError(f"Wallet {wallet_id} already registered")
        self.registered_wallets.add(wallet_id)
        self.balances[wallet_id] = _empty_wallet()
        return wallet_id

    def register_unit(self, unit: Unit) -> None:
        if unit.symbol in self.units:
            raise ValueError(f"Unit {unit.symbol} already registered")
        self.units[unit.symbol] = unit
        logger.debug("Registered %s unit %s (%s)", unit.unit_type, unit.symbol, unit.name)

    def set_balance(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        """
        Overwrite a balance without a counterparty. Test mode only: it
        breaks double-entry on purpose.
        """
        if not self._test_mode:
            raise LedgerError(
                "set_balance() is only available on a ledger created with test_mode=True; "
                "commit a transaction to change balances"
            )
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        self._require_unit(unit_symbol)
        self._write_balance(wallet_id, unit_symbol, Decimal(str(quantity)))

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def execute(self, pending: PendingTransaction) -> ExecuteResult:
        """
        commit() reporting ledger rejections as ExecuteResult.REJECTED.

        ProtocolErrors raised from inside a transfer rule still propagate.
        """
        try:
            self.commit(pending)
        except ProtocolError:
            raise
        except LedgerError:
            return ExecuteResult.REJECTED
        return ExecuteResult.APPLIED

    def commit(self, pending: PendingTransaction) -> Optional[Transaction]:
        """
        Apply a PendingTransaction atomically.

        Units the transaction creates are registered first so that its moves
        and state changes can refer to them, and unregistered again if the
        transaction is rejected.

        Returns:
            The logged Transaction, or None when there was nothing to apply

        Raises:
            The LedgerError describing the first failed check. Any other
            exception raised by a transfer rule propagates unchanged. In both
            cases nothing is applied.
        """
        if pending.is_empty():
            return None

        created = [unit.symbol for unit in pending.units_to_create if unit.symbol not in self.units]
        for unit in pending.units_to_create:
            if unit.symbol in created:
                self.units[unit.symbol] = unit

        try:
            error = self._validate_pending(pending)
        except BaseException:
            self._unregister(created)
            raise
        if error is not None:
            self._unregister(created)
            logger.log(self._log_level, "REJECTED %r: %s", pending, error)
            raise error

        sequence = self._next_sequence
        self._next_sequence += 1
        tx = Transaction(
            moves=pending.moves,
            state_changes=pending.state_changes,
            origin=pending.origin,
            timestamp=pending.timestamp,
            exec_id=self._exec_id(sequence),
            ledger_name=self.name,
            execution_time=self._current_time,
            sequence_number=sequence,
            units_to_create=pending.units_to_create,
        )

        for move in tx.moves:
            unit = self.units[move.unit_symbol]
            self._write_balance(move.source, move.unit_symbol,
                                unit.round(self.balances[move.source][move.unit_symbol] - move.quantity))
            self._write_balance(move.dest, move.unit_symbol,
                                unit.round(self.balances[move.dest][move.unit_symbol] + move.quantity))

        for change in tx.state_changes:
            unit = self.units.get(change.unit)
            if unit is None:
                continue
            new_state = copy.deepcopy(change.new_state) if isinstance(change.new_state, dict) else {}
            self.units[change.unit] = replace(unit, _frozen_state=_freeze_state(new_state))

        self.transaction_log.append(tx)
        logger.log(self._log_level, "APPLIED%r", tx)
        return tx

    def _exec_id(self, sequence: int) -> str:
        """exec:{ledger}:{sequence}:{logical time in microseconds}"""
        micros = int(self._current_time.timestamp() * 1_000_000)
        return f"exec:{self.name}:{sequence:012d}:{micros}"

    def _unregister(self, symbols: List[str]) -> None:
        for symbol in symbols:
            del self.units[symbol]

    def _validate_pending(self, pending: PendingTransaction) -> Optional[LedgerError]:
        """Return the first reason to reject the transaction, or None."""
        if pending.timestamp > self._current_time:
            return LedgerError(f"future timestamp {pending.timestamp} > {self._current_time}")
        return (
            self._check_registration(pending)
            or self._check_state_versions(pending)
            or self._check_transfer_rules(pending.moves)
            or self._check_balances(pending.moves)
        )

    def _check_registration(self, pending: PendingTransaction) -> Optional[LedgerError]:
        for change in pending.state_changes:
            if change.unit not in self.units:
                return UnitNotRegistered(f"unit not registered: {change.unit}")
        for move in pending.moves:
            if move.unit_symbol not in self.units:
                return UnitNotRegistered(f"unit not registered: {move.unit_symbol}")
            for wallet in (move.source, move.dest):
                if wallet not in self.registered_wallets:
                    return WalletNotRegistered(f"wallet not registered: {wallet}")
        return None

    def _check_state_versions(self, pending: PendingTransaction) -> Optional[LedgerError]:
        """Each staged change must have been built against the record's current state."""
        for change in pending.state_changes:
            if change.old_state is not None and change.old_state != self.units[change.unit].state:
                return LedgerError(f"stale state for {change.unit}: record changed since it was staged")
        return None

    def _check_transfer_rules(self, moves: Tuple[Move, ...]) -> Optional[LedgerError]:
        for move in moves:
            rule = self.units[move.unit_symbol].transfer_rule
            if rule is None:
                continue
            try:
                rule(self, move)
            except TransferRuleViolation as e:
                return e
        return None

    def _check_balances(self, moves: Tuple[Move, ...]) -> Optional[LedgerError]:
        """Net the moves per (wallet, unit) and check the resulting balances against unit limits."""
        net: Dict[Tuple[str, str], Decimal] = defaultdict(lambda: ZERO)
        for move in moves:
            unit = self.units[move.unit_symbol]
            net[move.source, move.unit_symbol] = unit.round(net[move.source, move.unit_symbol] - move.quantity)
            net[move.dest, move.unit_symbol] = unit.round(net[move.dest, move.unit_symbol] + move.quantity)

        for (wallet, symbol), delta in net.items():
            # the system wallet issues supply and may hold any balance
            if wallet == SYSTEM_WALLET:
                continue
            unit = self.units[symbol]
            proposed = unit.round(self.balances[wallet][symbol] + delta)
            if proposed < unit.min_balance:
                return InsufficientFunds(f"{wallet} {symbol}: {proposed} < min {unit.min_balance}")
            if proposed > unit.max_balance:
                return BalanceConstraintViolation(f"{wallet} {symbol}: {proposed} > max {unit.max_balance}")
        return None

    def _write_balance(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        self.balances[wallet_id][unit_symbol] = quantity
        holders = self._positions_by_unit[unit_symbol]
        if abs(quantity) > self.POSITION_EPSILON:
            holders[wallet_id] = quantity
        else:
            holders.pop(wallet_id, None)

    # ------------------------------------------------------------------
    # Copies
    # ------------------------------------------------------------------

    def clone(self) -> Ledger:
        """Fully independent copy: balances, records, clock and audit trail."""
        twin = Ledger(self.name, self._current_time, self.verbose, self._test_mode)
        twin.units = {
            symbol: replace(unit, _frozen_state=_freeze_state(copy.deepcopy(unit.state)))
            for symbol, unit in self.units.items()
        }
        twin.registered_wallets = set(self.registered_wallets)
        twin.balances = {
            wallet: defaultdict(lambda: ZERO, holdings) for wallet, holdings in self.balances.items()
        }
        twin._positions_by_unit = defaultdict(dict, {
            symbol: dict(holders) for symbol, holders in self._positions_by_unit.items()
        })
        twin.transaction_log = list(self.transaction_log)
        twin._next_sequence = self._next_sequence
        return twin
