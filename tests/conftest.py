"""
conftest.py - Shared pytest fixtures for lending tests

Provides common fixtures used across unit, conformance and functional tests:
- A funded ledger with USDC (6 decimals) and ETH (18 decimals)
- A role registry and per-caller AuthorizationContexts
- A LendingProtocol with an ETH collateral type, a USDC market and
  1,000,000 USDC of pool liquidity
- A Clock helper that advances ledger time and refreshes oracle prices
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict

from lending import (
    Ledger, Move, build_transaction, token,
    SYSTEM_WALLET,
    StaticPriceOracle, OracleAdapter,
    RoleRegistry, AuthorizationContext,
    ROLE_ADMIN, ROLE_RISK_MANAGER, ROLE_BORROWER, ROLE_LIQUIDATOR, ROLE_COLLATERAL_MANAGER,
    CollateralConfig, MarketConfig, LiquidationConfig, LiquidationMode, RateModelParams,
    LendingProtocol,
)

from tests.fake_view import FakeView


START = datetime(2024, 1, 1)

USERS = ("alice", "bob", "keeper", "lender", "bidder1", "bidder2", "manager")

FUNDING = {
    "lender": {"USDC": Decimal("1000000")},
    "alice": {"ETH": Decimal("10"), "USDC": Decimal("10000")},
    "bob": {"ETH": Decimal("10"), "USDC": Decimal("10000")},
    "keeper": {"USDC": Decimal("100000")},
    "bidder1": {"USDC": Decimal("100000")},
    "bidder2": {"USDC": Decimal("100000")},
}

INITIAL_PRICES = {"ETH": Decimal("2000"), "USDC": Decimal("1")}


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def make_ledger(time: datetime = START) -> Ledger:
    """Ledger with USDC and ETH registered and every test user funded from the system wallet."""
    ledger = Ledger("test", time, verbose=False)
    ledger.register_unit(token("USDC", "USD Coin", 6))
    ledger.register_unit(token("ETH", "Ether", 18))
    for user in USERS:
        ledger.register_wallet(user)
    moves = [
        Move(amount, asset, SYSTEM_WALLET, user, f"fund:{user}:{asset}")
        for user, balances in FUNDING.items()
        for asset, amount in balances.items()
    ]
    ledger.commit(build_transaction(ledger, moves))
    return ledger


def make_roles() -> RoleRegistry:
    return RoleRegistry({
        "admin": [ROLE_ADMIN, ROLE_RISK_MANAGER],
        "alice": [ROLE_BORROWER],
        "bob": [ROLE_BORROWER],
        "keeper": [ROLE_LIQUIDATOR],
        "manager": [ROLE_COLLATERAL_MANAGER],
    })


def usdc_market(
    max_ltv_bp: int = 5000,
    liquidation_threshold_bp: int = 6000,
    mode: LiquidationMode = LiquidationMode.DIRECT,
    **overrides,
) -> MarketConfig:
    liquidation = LiquidationConfig(
        mode=mode,
        liquidation_penalty_bp=overrides.pop("liquidation_penalty_bp", 500),
        liquidator_share_bp=overrides.pop("liquidator_share_bp", 5000),
        max_liquidation_amount=overrides.pop("max_liquidation_amount", None),
        auction_duration=overrides.pop("auction_duration", timedelta(hours=24)),
    )
    return MarketConfig(
        asset="USDC",
        max_ltv_bp=max_ltv_bp,
        liquidation_threshold_bp=liquidation_threshold_bp,
        rate_model=overrides.pop("rate_model", RateModelParams()),
        liquidation=liquidation,
        **overrides,
    )


class Clock:
    """Moves ledger time forward and re-publishes prices so they stay fresh."""

    def __init__(self, ledger: Ledger, prices: StaticPriceOracle):
        self.ledger = ledger
        self.prices = prices
        self.current: Dict[str, Decimal] = dict(INITIAL_PRICES)
        prices.set_prices(self.current, ledger.current_time)

    def set_price(self, asset: str, price) -> None:
        self.current[asset] = Decimal(str(price))
        self.prices.set_price(asset, self.current[asset], self.ledger.current_time)

    def advance(self, delta: timedelta, refresh: bool = True) -> datetime:
        self.ledger.advance_time(self.ledger.current_time + delta)
        if refresh:
            self.prices.set_prices(self.current, self.ledger.current_time)
        return self.ledger.current_time


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def ledger():
    return make_ledger()


@pytest.fixture
def roles():
    return make_roles()


@pytest.fixture
def ctx(roles):
    """Factory: ctx("alice") -> AuthorizationContext for alice."""
    def _ctx(caller: str) -> AuthorizationContext:
        return AuthorizationContext(caller, roles)
    return _ctx


@pytest.fixture
def prices():
    return StaticPriceOracle()


@pytest.fixture
def clock(ledger, prices):
    return Clock(ledger, prices)


def build_protocol(ledger, prices, ctx, market_config: MarketConfig) -> LendingProtocol:
    protocol = LendingProtocol(ledger, OracleAdapter(prices, timedelta(hours=1)))
    admin = ctx("admin")
    protocol.configure_collateral(admin, CollateralConfig("ETH"))
    protocol.configure_market(admin, market_config)
    protocol.supply_liquidity(ctx("lender"), "USDC", Decimal("1000000"))
    return protocol


@pytest.fixture
def protocol(ledger, prices, clock, ctx):
    """Direct-liquidation USDC market: max LTV 50%, threshold 60%, penalty 5%, liquidator share 50%."""
    return build_protocol(ledger, prices, ctx, usdc_market())


@pytest.fixture
def auction_protocol(ledger, prices, clock, ctx):
    """Same market as `protocol`, liquidating through 24h collateral auctions."""
    return build_protocol(ledger, prices, ctx, usdc_market(mode=LiquidationMode.AUCTION))


@pytest.fixture
def open_position(protocol, ctx):
    """alice: 1 ETH deposited and locked, 1000 USDC borrowed (LTV 5000 bp)."""
    alice = ctx("alice")
    protocol.deposit(alice, "ETH", Decimal("1"))
    return protocol.create_position(alice, "USDC", "ETH", Decimal("1000"), Decimal("1"))


@pytest.fixture
def fake_view():
    return FakeView(
        units={"USDC": token("USDC", "USD Coin", 6), "ETH": token("ETH", "Ether", 18)},
        time=START,
    )
