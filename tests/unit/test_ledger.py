"""
test_ledger.py - Unit tests for ledger.py

Tests:
- Ledger creation and registration
- Balance queries and total supply
- commit() validation and rejection
- execute() results
- State changes and record creation
- clone()
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from lending import (
    Ledger, Move, ExecuteResult, UnitStateChange, build_transaction, token, record_unit,
    SYSTEM_WALLET, UNIT_TYPE_MARKET,
    LedgerError, InsufficientFunds, BalanceConstraintViolation, TransferRuleViolation,
    WalletNotRegistered, UnitNotRegistered,
)


T0 = datetime(2024, 1, 1)


def funded_ledger() -> Ledger:
    ledger = Ledger("test", T0, verbose=False)
    ledger.register_unit(token("USDC", "USD Coin", 6))
    ledger.register_wallet("alice")
    ledger.register_wallet("bob")
    ledger.commit(build_transaction(ledger, [
        Move(Decimal("1000"), "USDC", SYSTEM_WALLET, "alice", "fund")
    ]))
    return ledger


class TestLedgerCreation:

    def test_create_ledger(self):
        ledger = Ledger("test", verbose=False)
        assert ledger.name == "test"
        assert SYSTEM_WALLET in ledger.list_wallets()

    def test_create_with_initial_time(self):
        ledger = Ledger("test", initial_time=T0, verbose=False)
        assert ledger.current_time == T0


class TestRegistration:

    def test_register_duplicate_wallet_raises(self):
        ledger = Ledger("test", verbose=False)
        ledger.register_wallet("alice")
        with pytest.raises(ValueError, match="already registered"):
            ledger.register_wallet("alice")

    def test_register_duplicate_unit_raises(self):
        ledger = Ledger("test", verbose=False)
        ledger.register_unit(token("USDC", "USD Coin", 6))
        with pytest.raises(ValueError, match="already registered"):
            ledger.register_unit(token("USDC", "USD Coin", 6))

    def test_list_units_by_type(self):
        ledger = Ledger("test", verbose=False)
        ledger.register_unit(token("USDC", "USD Coin", 6))
        ledger.register_unit(record_unit("MARKET:USDC", UNIT_TYPE_MARKET, {"asset": "USDC"}))
        assert ledger.list_units(UNIT_TYPE_MARKET) == ["MARKET:USDC"]
        assert ledger.has_unit("USDC")
        assert not ledger.has_unit("ETH")

    def test_get_unit_state_unregistered_raises(self):
        with pytest.raises(UnitNotRegistered):
            Ledger("test", verbose=False).get_unit_state("UNKNOWN")


class TestBalances:

    def test_balance_after_funding(self):
        ledger = funded_ledger()
        assert ledger.get_balance("alice", "USDC") == Decimal("1000")
        assert ledger.get_balance("bob", "USDC") == Decimal("0")

    def test_get_balance_unregistered_wallet_raises(self):
        with pytest.raises(WalletNotRegistered):
            funded_ledger().get_balance("carol", "USDC")

    def test_total_supply_conserved_by_transfers(self):
        ledger = funded_ledger()
        ledger.commit(build_transaction(ledger, [Move(Decimal("250"), "USDC", "alice", "bob", "pay")]))
        assert ledger.total_supply("USDC") == Decimal("0")
        assert ledger.get_positions("USDC") == {
            SYSTEM_WALLET: Decimal("-1000"), "alice": Decimal("750"), "bob": Decimal("250"),
        }

    def test_verify_double_entry(self):
        result = funded_ledger().verify_double_entry({"USDC": Decimal("0")})
        assert result["valid"]

    def test_set_balance_requires_test_mode(self):
        with pytest.raises(LedgerError):
            funded_ledger().set_balance("alice", "USDC", Decimal("5"))


class TestCommit:

    def test_commit_returns_transaction(self):
        ledger = funded_ledger()
        tx = ledger.commit(build_transaction(ledger, [Move(Decimal("10"), "USDC", "alice", "bob", "pay")]))
        assert tx.sequence_number == 1
        assert tx.contract_ids == frozenset({"pay"})
        assert ledger.transaction_log[-1] is tx

    def test_insufficient_funds(self):
        ledger = funded_ledger()
        with pytest.raises(InsufficientFunds):
            ledger.commit(build_transaction(ledger, [Move(Decimal("1001"), "USDC", "alice", "bob", "pay")]))
        assert ledger.get_balance("alice", "USDC") == Decimal("1000")

    def test_unregistered_wallet(self):
        ledger = funded_ledger()
        with pytest.raises(WalletNotRegistered):
            ledger.commit(build_transaction(ledger, [Move(Decimal("1"), "USDC", "alice", "carol", "pay")]))

    def test_record_units_cannot_hold_balances(self):
        ledger = funded_ledger()
        ledger.register_unit(record_unit("MARKET:USDC", UNIT_TYPE_MARKET, {}))
        with pytest.raises(BalanceConstraintViolation):
            ledger.commit(build_transaction(ledger, [
                Move(Decimal("1"), "MARKET:USDC", SYSTEM_WALLET, "alice", "mint")
            ]))

    def test_transfer_rule_violation(self):
        def frozen(view, move):
            raise TransferRuleViolation("frozen token")

        ledger = funded_ledger()
        ledger.register_unit(token("FRZ", "Frozen", 6, transfer_rule=frozen))
        with pytest.raises(TransferRuleViolation):
            ledger.commit(build_transaction(ledger, [
                Move(Decimal("1"), "FRZ", SYSTEM_WALLET, "alice", "mint")
            ]))

    def test_empty_transaction_is_noop(self):
        ledger = funded_ledger()
        assert ledger.commit(build_transaction(ledger, [])) is None

    def test_units_created_with_transaction(self):
        ledger = funded_ledger()
        unit = record_unit("MARKET:USDC", UNIT_TYPE_MARKET, {"total_borrowed": Decimal("0")})
        ledger.commit(build_transaction(ledger, [], units_to_create=(unit,)))
        assert ledger.get_unit_state("MARKET:USDC") == {"total_borrowed": Decimal("0")}

    def test_units_rolled_back_on_rejection(self):
        ledger = funded_ledger()
        unit = record_unit("MARKET:USDC", UNIT_TYPE_MARKET, {})
        with pytest.raises(InsufficientFunds):
            ledger.commit(build_transaction(
                ledger, [Move(Decimal("5000"), "USDC", "alice", "bob", "pay")], units_to_create=(unit,)
            ))
        assert not ledger.has_unit("MARKET:USDC")

    def test_state_changes_applied(self):
        ledger = funded_ledger()
        ledger.register_unit(record_unit("MARKET:USDC", UNIT_TYPE_MARKET, {"borrow_rate": 200}))
        ledger.commit(build_transaction(ledger, [], [
            UnitStateChange("MARKET:USDC", {"borrow_rate": 200}, {"borrow_rate": 400})
        ]))
        assert ledger.get_unit_state("MARKET:USDC")["borrow_rate"] == 400

    def test_stale_state_change_rejected(self):
        ledger = funded_ledger()
        ledger.register_unit(record_unit("MARKET:USDC", UNIT_TYPE_MARKET, {"borrow_rate": 200}))
        stale = build_transaction(ledger, [], [
            UnitStateChange("MARKET:USDC", {"borrow_rate": 200}, {"borrow_rate": 400})
        ])
        ledger.commit(build_transaction(ledger, [], [
            UnitStateChange("MARKET:USDC", {"borrow_rate": 200}, {"borrow_rate": 300})
        ]))
        count = len(ledger.transaction_log)
        with pytest.raises(LedgerError, match="stale state"):
            ledger.commit(stale)
        assert ledger.get_unit_state("MARKET:USDC")["borrow_rate"] == 300
        assert len(ledger.transaction_log) == count

    def test_future_timestamp_rejected(self):
        ledger = funded_ledger()
        later = Ledger("later", T0 + timedelta(days=1), verbose=False)
        pending = build_transaction(later, [Move(Decimal("1"), "USDC", "alice", "bob", "pay")])
        with pytest.raises(LedgerError, match="future"):
            ledger.commit(pending)


class TestExecute:

    def test_applied(self):
        ledger = funded_ledger()
        tx = build_transaction(ledger, [Move(Decimal("10"), "USDC", "alice", "bob", "pay")])
        assert ledger.execute(tx) == ExecuteResult.APPLIED

    def test_rejected(self):
        ledger = funded_ledger()
        tx = build_transaction(ledger, [Move(Decimal("5000"), "USDC", "alice", "bob", "pay")])
        assert ledger.execute(tx) == ExecuteResult.REJECTED


class TestTime:

    def test_advance_time(self):
        ledger = funded_ledger()
        ledger.advance_time(T0 + timedelta(hours=1))
        assert ledger.current_time == T0 + timedelta(hours=1)

    def test_advance_time_backwards_raises(self):
        ledger = funded_ledger()
        with pytest.raises(ValueError, match="backwards"):
            ledger.advance_time(T0 - timedelta(seconds=1))


class TestClone:

    def test_clone_is_independent(self):
        ledger = funded_ledger()
        cloned = ledger.clone()
        cloned.commit(build_transaction(cloned, [Move(Decimal("10"), "USDC", "alice", "bob", "pay")]))
        assert ledger.get_balance("alice", "USDC") == Decimal("1000")
        assert cloned.get_balance("alice", "USDC") == Decimal("990")
