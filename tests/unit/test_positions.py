"""
test_positions.py - Unit tests for positions.py

Tests:
- Pure functions: accrual, LTV, health factor, origination fee, repayment split
- create_position validation and effects
- increase_borrow / add_collateral / withdraw_collateral
- repay (partial, full, over-payment)
- Read API: outstanding debt, health, user positions
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from lending import (
    BorrowPosition, PositionStatus, RiskLevel, CollateralConfig, LendingProtocol, OracleAdapter,
    LIQUIDITY_POOL, TREASURY_WALLET,
    AuthorizationError, EconomicError, StalePriceError, StateError, ValidationError,
    calculate_accrual, calculate_ltv, calculate_health,
)
from lending.positions import (
    UNCOLLATERALIZED_LTV, calculate_origination_fee, calculate_repayment, classify_risk, exceeds_ltv,
)

from tests.conftest import START, usdc_market


def make_position(**overrides) -> BorrowPosition:
    fields = dict(
        position_id=1, borrower="alice", borrow_asset="USDC", collateral_asset="ETH",
        principal=Decimal("1000"), accrued_interest=Decimal("0"),
        collateral_amount=Decimal("1"), collateral_value=Decimal("2000"),
        created_at=START, last_interest_update=START,
        liquidation_threshold_bp=6000, max_ltv_bp=5000,
    )
    fields.update(overrides)
    return BorrowPosition(**fields)


# =============================================================================
# PURE FUNCTIONS
# =============================================================================

class TestAccrual:

    def test_thirty_days_at_two_percent(self):
        accrued = calculate_accrual(make_position(), 200, START + timedelta(days=30), Decimal("0.000001"))
        assert accrued.accrued_interest == Decimal("1.643836")
        assert accrued.last_interest_update == START + timedelta(days=30)
        assert accrued.principal == Decimal("1000")

    def test_interest_rounds_up(self):
        accrued = calculate_accrual(make_position(), 200, START + timedelta(seconds=1), Decimal("0.000001"))
        assert accrued.accrued_interest == Decimal("0.000001")

    def test_fractional_seconds_carry_over(self):
        position = make_position(principal=Decimal("31536000"))
        first = calculate_accrual(position, 10000, START + timedelta(seconds=1.5), None)
        assert first.last_interest_update == START + timedelta(seconds=1)
        assert first.accrued_interest == Decimal("1")
        second = calculate_accrual(first, 10000, START + timedelta(seconds=3), None)
        assert second.last_interest_update == START + timedelta(seconds=3)
        assert second.accrued_interest == Decimal("3")

    def test_no_elapsed_time_returns_same_position(self):
        position = make_position()
        assert calculate_accrual(position, 200, START, Decimal("0.000001")) is position

    def test_interest_adds_to_existing(self):
        position = make_position(accrued_interest=Decimal("5"))
        accrued = calculate_accrual(position, 0, START + timedelta(days=1), Decimal("0.000001"))
        assert accrued.accrued_interest == Decimal("5")


class TestLtvAndHealth:

    def test_ltv_floor(self):
        assert calculate_ltv(Decimal("1000"), Decimal("2000")) == 5000
        assert calculate_ltv(Decimal("1001"), Decimal("3000")) == 3336

    def test_ltv_no_debt(self):
        assert calculate_ltv(Decimal("0"), Decimal("0")) == 0

    def test_ltv_no_collateral(self):
        assert calculate_ltv(Decimal("1"), Decimal("0")) == UNCOLLATERALIZED_LTV

    def test_exceeds_ltv_is_exact(self):
        assert not exceeds_ltv(Decimal("1000"), Decimal("2000"), 5000)
        assert exceeds_ltv(Decimal("1000.000001"), Decimal("2000"), 5000)

    def test_health_at_threshold_is_liquidatable(self):
        health = calculate_health(make_position(), Decimal("1200"), Decimal("2000"))
        assert health.current_ltv == 6000
        assert health.health_factor == 10000
        assert health.is_liquidatable

    def test_health_without_debt(self):
        health = calculate_health(make_position(), Decimal("0"), Decimal("2000"))
        assert health.health_factor is None
        assert health.risk_level == RiskLevel.VERY_SAFE
        assert not health.is_liquidatable

    @pytest.mark.parametrize("hf,level", [
        (None, RiskLevel.VERY_SAFE), (20000, RiskLevel.VERY_SAFE), (19999, RiskLevel.SAFE),
        (15000, RiskLevel.SAFE), (14999, RiskLevel.MODERATE), (12000, RiskLevel.MODERATE),
        (11999, RiskLevel.HIGH_RISK), (10000, RiskLevel.HIGH_RISK), (9999, RiskLevel.CRITICAL),
    ])
    def test_risk_bands(self, hf, level):
        assert classify_risk(hf) == level


class TestFeesAndRepayment:

    def test_origination_fee_rounds_down(self):
        assert calculate_origination_fee(Decimal("1000"), 50, Decimal("0.000001")) == Decimal("5")
        assert calculate_origination_fee(Decimal("0.000199"), 50, Decimal("0.000001")) == Decimal("0")

    def test_repayment_pays_interest_first(self):
        position = make_position(accrued_interest=Decimal("10"))
        assert calculate_repayment(position, Decimal("4")) == (Decimal("4"), Decimal("0"))
        assert calculate_repayment(position, Decimal("25")) == (Decimal("10"), Decimal("15"))


# =============================================================================
# CREATE POSITION
# =============================================================================

class TestCreatePosition:

    def test_create_position(self, protocol, ledger, ctx, open_position):
        position = protocol.get_position(open_position)
        assert position.position_id == 1
        assert position.status == PositionStatus.ACTIVE
        assert position.principal == Decimal("1000")
        assert position.collateral_value == Decimal("2000")
        assert position.max_ltv_bp == 5000
        assert position.liquidation_threshold_bp == 6000
        assert ledger.get_balance("alice", "USDC") == Decimal("11000")
        assert ledger.get_balance(LIQUIDITY_POOL, "USDC") == Decimal("999000")
        assert protocol.get_account("alice", "ETH").locked_amount == Decimal("1")

    def test_market_updated(self, protocol, open_position):
        market = protocol.get_market_state("USDC")
        assert market.total_borrowed == Decimal("1000")
        assert market.active_positions == 1
        assert market.utilization_rate == 10
        assert market.borrow_rate == 200

    def test_ids_increase(self, protocol, ctx, open_position):
        protocol.deposit(ctx("bob"), "ETH", Decimal("1"))
        assert protocol.create_position(ctx("bob"), "USDC", "ETH", Decimal("100"), Decimal("1")) == 2

    def test_ltv_above_max_rejected(self, protocol, ledger, ctx):
        alice = ctx("alice")
        protocol.deposit(alice, "ETH", Decimal("1"))
        with pytest.raises(EconomicError, match="LTV"):
            protocol.create_position(alice, "USDC", "ETH", Decimal("1001"), Decimal("1"))
        assert protocol.get_account("alice", "ETH").locked_amount == Decimal("0")
        assert protocol.get_user_positions("alice") == []
        assert ledger.get_balance("alice", "USDC") == Decimal("10000")

    def test_requires_borrower_role(self, protocol, ctx):
        with pytest.raises(AuthorizationError):
            protocol.create_position(ctx("keeper"), "USDC", "ETH", Decimal("10"), Decimal("1"))

    def test_requires_deposited_collateral(self, protocol, ctx):
        with pytest.raises(StateError, match="no ETH collateral"):
            protocol.create_position(ctx("alice"), "USDC", "ETH", Decimal("10"), Decimal("1"))

    def test_cannot_lock_more_than_deposited(self, protocol, ctx):
        alice = ctx("alice")
        protocol.deposit(alice, "ETH", Decimal("1"))
        with pytest.raises(StateError):
            protocol.create_position(alice, "USDC", "ETH", Decimal("10"), Decimal("2"))

    def test_unknown_market(self, protocol, ctx):
        with pytest.raises(ValidationError, match="No market"):
            protocol.create_position(ctx("alice"), "ETH", "USDC", Decimal("1"), Decimal("100"))

    def test_same_asset_rejected(self, protocol, ctx):
        with pytest.raises(ValidationError, match="differ"):
            protocol.create_position(ctx("alice"), "USDC", "USDC", Decimal("1"), Decimal("100"))

    def test_disabled_market(self, protocol, ctx):
        protocol.configure_market(ctx("admin"), usdc_market(enabled=False))
        protocol.deposit(ctx("alice"), "ETH", Decimal("1"))
        with pytest.raises(StateError, match="disabled"):
            protocol.create_position(ctx("alice"), "USDC", "ETH", Decimal("10"), Decimal("1"))

    def test_unaccepted_collateral(self, protocol, ctx):
        alice = ctx("alice")
        protocol.deposit(alice, "ETH", Decimal("1"))
        protocol.configure_collateral(ctx("admin"), CollateralConfig("ETH", accepted=False))
        with pytest.raises(StateError, match="not an accepted collateral"):
            protocol.create_position(alice, "USDC", "ETH", Decimal("10"), Decimal("1"))

    def test_borrow_bounds(self, protocol, ctx):
        protocol.configure_market(ctx("admin"), usdc_market(min_borrow=100, max_borrow=500))
        alice = ctx("alice")
        protocol.deposit(alice, "ETH", Decimal("1"))
        with pytest.raises(ValidationError, match="minimum"):
            protocol.create_position(alice, "USDC", "ETH", Decimal("50"), Decimal("1"))
        with pytest.raises(ValidationError, match="maximum"):
            protocol.create_position(alice, "USDC", "ETH", Decimal("600"), Decimal("1"))

    def test_whitelist(self, protocol, ctx):
        admin, alice = ctx("admin"), ctx("alice")
        protocol.configure_market(admin, usdc_market(require_whitelist=True))
        protocol.deposit(alice, "ETH", Decimal("1"))
        with pytest.raises(AuthorizationError, match="whitelisted"):
            protocol.create_position(alice, "USDC", "ETH", Decimal("10"), Decimal("1"))
        protocol.set_whitelisted(admin, "USDC", "alice", True)
        assert protocol.create_position(alice, "USDC", "ETH", Decimal("10"), Decimal("1")) == 1

    def test_origination_fee_to_treasury(self, protocol, ledger, ctx):
        protocol.configure_market(ctx("admin"), usdc_market(origination_fee_bp=50))
        alice = ctx("alice")
        protocol.deposit(alice, "ETH", Decimal("1"))
        pid = protocol.create_position(alice, "USDC", "ETH", Decimal("1000"), Decimal("1"))
        assert protocol.get_position(pid).principal == Decimal("1000")
        assert ledger.get_balance("alice", "USDC") == Decimal("10995")
        assert ledger.get_balance(TREASURY_WALLET, "USDC") == Decimal("5")

    def test_paused(self, protocol, ctx):
        alice = ctx("alice")
        protocol.deposit(alice, "ETH", Decimal("1"))
        protocol.set_paused(ctx("admin"), True)
        with pytest.raises(StateError, match="paused"):
            protocol.create_position(alice, "USDC", "ETH", Decimal("10"), Decimal("1"))

    def test_stale_price(self, protocol, clock, ctx):
        alice = ctx("alice")
        protocol.deposit(alice, "ETH", Decimal("1"))
        clock.advance(timedelta(hours=2), refresh=False)
        with pytest.raises(StalePriceError):
            protocol.create_position(alice, "USDC", "ETH", Decimal("10"), Decimal("1"))

    def test_insufficient_liquidity(self, ledger, prices, clock, ctx):
        protocol = LendingProtocol(ledger, OracleAdapter(prices, timedelta(hours=1)))
        protocol.configure_collateral(ctx("admin"), CollateralConfig("ETH"))
        protocol.configure_market(ctx("admin"), usdc_market())
        protocol.supply_liquidity(ctx("lender"), "USDC", Decimal("50"))
        alice = ctx("alice")
        protocol.deposit(alice, "ETH", Decimal("1"))
        with pytest.raises(EconomicError, match="liquidity"):
            protocol.create_position(alice, "USDC", "ETH", Decimal("100"), Decimal("1"))


# =============================================================================
# ADJUSTMENTS
# =============================================================================

class TestIncreaseBorrow:

    def test_increase_within_ltv(self, protocol, ledger, ctx):
        alice = ctx("alice")
        protocol.deposit(alice, "ETH", Decimal("1"))
        pid = protocol.create_position(alice, "USDC", "ETH", Decimal("500"), Decimal("1"))
        updated = protocol.increase_borrow(alice, pid, Decimal("500"))
        assert updated.principal == Decimal("1000")
        assert protocol.get_market_state("USDC").total_borrowed == Decimal("1000")
        assert ledger.get_balance("alice", "USDC") == Decimal("11000")

    def test_increase_above_ltv(self, protocol, ctx, open_position):
        with pytest.raises(EconomicError):
            protocol.increase_borrow(ctx("alice"), open_position, Decimal("1"))

    def test_only_borrower(self, protocol, ctx, open_position):
        with pytest.raises(AuthorizationError):
            protocol.increase_borrow(ctx("bob"), open_position, Decimal("1"))

    def test_unknown_position(self, protocol, ctx):
        with pytest.raises(ValidationError, match="Unknown position"):
            protocol.increase_borrow(ctx("alice"), 99, Decimal("1"))

    def test_paused(self, protocol, ctx, open_position):
        protocol.set_paused(ctx("admin"), True)
        with pytest.raises(StateError, match="paused"):
            protocol.increase_borrow(ctx("alice"), open_position, Decimal("1"))


class TestAddCollateral:

    def test_add_collateral(self, protocol, ctx, open_position):
        alice = ctx("alice")
        protocol.deposit(alice, "ETH", Decimal("1"))
        updated = protocol.add_collateral(alice, open_position, Decimal("1"))
        assert updated.collateral_amount == Decimal("2")
        assert updated.collateral_value == Decimal("4000")
        assert protocol.get_account("alice", "ETH").locked_amount == Decimal("2")
        assert protocol.increase_borrow(alice, open_position, Decimal("900")).principal == Decimal("1900")

    def test_requires_unlocked_deposit(self, protocol, ctx, open_position):
        with pytest.raises(StateError):
            protocol.add_collateral(ctx("alice"), open_position, Decimal("1"))

    def test_allowed_while_paused(self, protocol, ctx, open_position):
        alice = ctx("alice")
        protocol.deposit(alice, "ETH", Decimal("1"))
        protocol.set_paused(ctx("admin"), True)
        assert protocol.add_collateral(alice, open_position, Decimal("1")).collateral_amount == Decimal("2")


class TestWithdrawCollateral:

    @pytest.fixture
    def overcollateralized(self, protocol, ctx):
        alice = ctx("alice")
        protocol.deposit(alice, "ETH", Decimal("2"))
        return protocol.create_position(alice, "USDC", "ETH", Decimal("1000"), Decimal("2"))

    def test_withdraw_to_max_ltv(self, protocol, ledger, ctx, overcollateralized):
        updated = protocol.withdraw_collateral(ctx("alice"), overcollateralized, Decimal("1"))
        assert updated.collateral_amount == Decimal("1")
        assert ledger.get_balance("alice", "ETH") == Decimal("9")
        account = protocol.get_account("alice", "ETH")
        assert account.deposited_amount == Decimal("1")
        assert account.locked_amount == Decimal("1")

    def test_withdraw_beyond_ltv(self, protocol, ctx, overcollateralized):
        with pytest.raises(EconomicError):
            protocol.withdraw_collateral(ctx("alice"), overcollateralized, Decimal("1.1"))

    def test_withdraw_everything_with_debt(self, protocol, ctx, overcollateralized):
        with pytest.raises(EconomicError, match="cannot drop to zero"):
            protocol.withdraw_collateral(ctx("alice"), overcollateralized, Decimal("2"))

    def test_withdraw_more_than_position(self, protocol, ctx, overcollateralized):
        with pytest.raises(ValidationError):
            protocol.withdraw_collateral(ctx("alice"), overcollateralized, Decimal("3"))


# =============================================================================
# REPAY
# =============================================================================

class TestRepay:

    def test_partial_repay_after_thirty_days(self, protocol, ledger, clock, ctx, open_position):
        clock.advance(timedelta(days=30))
        updated = protocol.repay(ctx("alice"), open_position, Decimal("500"))
        assert updated.accrued_interest == Decimal("0")
        assert updated.principal == Decimal("501.643836")
        assert updated.total_interest_paid == Decimal("1.643836")
        assert updated.total_principal_paid == Decimal("498.356164")
        assert updated.last_interest_update == ledger.current_time
        assert ledger.get_balance(TREASURY_WALLET, "USDC") == Decimal("0.164383")
        assert protocol.get_market_state("USDC").total_borrowed == Decimal("501.643836")

    def test_full_repay_closes_position(self, protocol, ledger, clock, ctx, open_position):
        clock.advance(timedelta(days=30))
        debt = protocol.get_outstanding_debt(open_position)
        assert debt == Decimal("1001.643836")
        closed = protocol.repay(ctx("alice"), open_position, debt)
        assert closed.status == PositionStatus.REPAID
        assert closed.total_debt == Decimal("0")
        assert closed.collateral_amount == Decimal("0")
        assert protocol.get_account("alice", "ETH").locked_amount == Decimal("0")
        assert ledger.get_balance("alice", "USDC") == Decimal("9998.356164")
        market = protocol.get_market_state("USDC")
        assert market.active_positions == 0
        assert market.total_borrowed == Decimal("0")
        assert market.total_reserves == Decimal("0.164383")

    def test_over_repay_rejected(self, protocol, ctx, open_position):
        with pytest.raises(ValidationError, match="exceeds the debt"):
            protocol.repay(ctx("alice"), open_position, Decimal("1000.000001"))

    def test_closed_position_rejects_mutations(self, protocol, ctx, open_position):
        alice = ctx("alice")
        protocol.repay(alice, open_position, Decimal("1000"))
        with pytest.raises(StateError, match="repaid"):
            protocol.repay(alice, open_position, Decimal("1"))

    def test_only_borrower_repays(self, protocol, ctx, open_position):
        with pytest.raises(AuthorizationError):
            protocol.repay(ctx("bob"), open_position, Decimal("1"))

    def test_repay_allowed_while_paused(self, protocol, ctx, open_position):
        protocol.set_paused(ctx("admin"), True)
        assert protocol.repay(ctx("alice"), open_position, Decimal("100")).principal == Decimal("900")


# =============================================================================
# READ API
# =============================================================================

class TestReads:

    def test_outstanding_debt_does_not_stage(self, protocol, clock, open_position):
        clock.advance(timedelta(days=30))
        assert protocol.get_outstanding_debt(open_position) == Decimal("1001.643836")
        assert protocol.get_position(open_position).accrued_interest == Decimal("0")

    def test_health(self, protocol, open_position):
        health = protocol.get_position_health(open_position)
        assert health.current_ltv == 5000
        assert health.health_factor == 12000
        assert health.risk_level == RiskLevel.MODERATE
        assert not health.is_liquidatable

    def test_health_after_price_drop(self, protocol, clock, open_position):
        clock.set_price("ETH", 1600)
        health = protocol.get_position_health(open_position)
        assert health.current_ltv == 6250
        assert health.health_factor == 9600
        assert health.risk_level == RiskLevel.CRITICAL
        assert health.is_liquidatable

    def test_user_positions_sorted(self, protocol, ctx):
        alice = ctx("alice")
        protocol.deposit(alice, "ETH", Decimal("3"))
        first = protocol.create_position(alice, "USDC", "ETH", Decimal("100"), Decimal("1"))
        second = protocol.create_position(alice, "USDC", "ETH", Decimal("200"), Decimal("1"))
        assert [p.position_id for p in protocol.get_user_positions("alice")] == [first, second]
        assert protocol.get_user_positions("alice", "ETH") == []
        assert protocol.get_user_positions("bob") == []

    def test_unknown_position(self, protocol):
        with pytest.raises(ValidationError):
            protocol.get_position(42)
