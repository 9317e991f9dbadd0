"""
markets.py - Per-asset market state and the market registry

A market exists for every borrowable asset. Its MARKET record keeps the
totals the rate model needs and is recomputed on every position mutation:

    utilization = total_borrowed * 10000 / (total_borrowed + available_supply)

where available_supply is the LIQUIDITY_POOL balance of the asset after the
current transaction's flows. total_borrowed counts outstanding principal;
accrued interest lives on the positions until it is paid.

Interest paid by borrowers (or by liquidators and auction winners on their
behalf) is split by the reserve factor: the reserve share goes to the
treasury, the rest back to the pool.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging

from .access import AuthorizationContext, ROLE_ADMIN, ROLE_RISK_MANAGER
from .collateral import validate_amount
from .config import MarketConfig
from .core import (
    BPS, LIQUIDITY_POOL, TREASURY_WALLET, UNIT_TYPE_MARKET, UNIT_TYPE_TOKEN,
    ChangeSet, ConfigurationError, LedgerView, OriginType, ValidationError,
    record_unit,
)
from .engine import LedgerEngine
from .guard import ReentrancyGuard, non_reentrant
from .ledger import Ledger
from .oracle import OracleAdapter
from .rate_model import (
    DEFAULT_HISTORY_SIZE, InterestRateModel, RateSample,
    calculate_rates, calculate_utilization,
)

logger = logging.getLogger(__name__)


def market_symbol(asset: str) -> str:
    return f"MARKET:{asset}"


# ============================================================================
# FROZEN DATACLASSES
# ============================================================================

@dataclass(frozen=True, slots=True)
class MarketState:
    asset: str
    config: MarketConfig
    total_borrowed: Decimal = Decimal("0")
    total_collateral_value: Decimal = Decimal("0")
    utilization_rate: int = 0
    borrow_rate: int = 0
    supply_rate: int = 0
    reserve_factor: int = 0
    last_update_time: Optional[datetime] = None
    active_positions: int = 0
    total_reserves: Decimal = Decimal("0")
    bad_debt: Decimal = Decimal("0")
    whitelist: Tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class MarketRates:
    """Read-only projection returned by get_market_rates."""
    asset: str
    borrow_rate: int
    supply_rate: int
    utilization_rate: int
    available_supply: Decimal
    total_borrowed: Decimal
    last_update_time: Optional[datetime]


# ============================================================================
# ADAPTER FUNCTIONS
# ============================================================================

def load_market(view: LedgerView, asset: str) -> Optional[MarketState]:
    symbol = market_symbol(asset)
    if not view.has_unit(symbol):
        return None
    s = view.get_unit_state(symbol)
    return MarketState(
        asset=s['asset'],
        config=MarketConfig.from_state_dict(s['config']),
        total_borrowed=s['total_borrowed'],
        total_collateral_value=s['total_collateral_value'],
        utilization_rate=s['utilization_rate'],
        borrow_rate=s['borrow_rate'],
        supply_rate=s['supply_rate'],
        reserve_factor=s['reserve_factor'],
        last_update_time=s['last_update_time'],
        active_positions=s['active_positions'],
        total_reserves=s['total_reserves'],
        bad_debt=s['bad_debt'],
        whitelist=tuple(s.get('whitelist', ())),
    )


def to_state_dict(market: MarketState) -> Dict[str, Any]:
    return {
        'asset': market.asset,
        'config': market.config.to_state_dict(),
        'total_borrowed': market.total_borrowed,
        'total_collateral_value': market.total_collateral_value,
        'utilization_rate': market.utilization_rate,
        'borrow_rate': market.borrow_rate,
        'supply_rate': market.supply_rate,
        'reserve_factor': market.reserve_factor,
        'last_update_time': market.last_update_time,
        'active_positions': market.active_positions,
        'total_reserves': market.total_reserves,
        'bad_debt': market.bad_debt,
        'whitelist': list(market.whitelist),
    }


def require_market(view: LedgerView, asset: str) -> MarketState:
    market = load_market(view, asset)
    if market is None:
        raise ValidationError(f"No market for {asset}")
    return market


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def calculate_market_rates(market: MarketState, available_supply: Decimal, now: datetime) -> MarketState:
    """Recompute utilization and both rates from the market totals."""
    utilization = calculate_utilization(market.total_borrowed, available_supply)
    borrow_rate, supply_rate = calculate_rates(utilization, market.config.rate_model)
    return replace(
        market,
        utilization_rate=utilization,
        borrow_rate=borrow_rate,
        supply_rate=supply_rate,
        reserve_factor=market.config.rate_model.reserve_factor_bp,
        last_update_time=now,
    )


def calculate_reserve_share(interest_paid: Decimal, reserve_factor_bp: int) -> Decimal:
    """Unrounded treasury share of an interest payment."""
    return interest_paid * reserve_factor_bp / BPS


# ============================================================================
# STAGING FUNCTIONS
# ============================================================================

def write_market(cs: ChangeSet, market: MarketState) -> None:
    symbol = market_symbol(market.asset)
    if cs.has_unit(symbol):
        cs.stage(symbol, to_state_dict(market))
    else:
        cs.create(record_unit(symbol, UNIT_TYPE_MARKET, to_state_dict(market)))


def refresh_rates(cs: ChangeSet, market: MarketState) -> MarketState:
    """Recompute the market against the pool balance as it will be after this transaction."""
    market = calculate_market_rates(market, cs.get_balance(LIQUIDITY_POOL, market.asset), cs.current_time)
    write_market(cs, market)
    return market


def stage_debt_payment(
    cs: ChangeSet,
    market: MarketState,
    payer: str,
    interest_paid: Decimal,
    principal_paid: Decimal,
    contract_id: str,
) -> MarketState:
    """
    Move a debt payment from payer into the protocol.

    Principal returns to the pool; interest is split between treasury
    (reserve factor) and pool. The caller is responsible for refreshing rates.
    """
    token = cs.get_unit(market.asset)
    reserve = token.round(calculate_reserve_share(interest_paid, market.config.rate_model.reserve_factor_bp))
    to_pool = interest_paid - reserve + principal_paid
    cs.move(reserve, market.asset, payer, TREASURY_WALLET, f"{contract_id}:reserve")
    cs.move(to_pool, market.asset, payer, LIQUIDITY_POOL, contract_id)
    return replace(
        market,
        total_borrowed=max(market.total_borrowed - principal_paid, Decimal("0")),
        total_reserves=market.total_reserves + reserve,
    )


# ============================================================================
# MARKET REGISTRY
# ============================================================================

class MarketRegistry(LedgerEngine):
    """
    Owns market configuration, liquidity supply and each market's rate history.

    Rate samples are recorded after a transaction commits, so rejected
    operations never show up in the history.
    """

    def __init__(self, ledger: Ledger, oracle: OracleAdapter, guard: Optional[ReentrancyGuard] = None,
                 history_size: int = DEFAULT_HISTORY_SIZE):
        super().__init__(ledger, oracle, guard)
        self.history_size = history_size
        self._models: Dict[str, InterestRateModel] = {}

    @non_reentrant
    def configure_market(self, ctx: AuthorizationContext, config: MarketConfig) -> MarketState:
        """Create a market or replace its configuration. Risk-manager or admin only."""
        ctx.require_any(ROLE_RISK_MANAGER, ROLE_ADMIN)
        config.validate()
        if not self.ledger.has_unit(config.asset) or self.ledger.get_unit(config.asset).unit_type != UNIT_TYPE_TOKEN:
            raise ConfigurationError(f"Market asset {config.asset} is not a registered token")
        cs = ChangeSet(self.ledger)
        existing = load_market(cs, config.asset)
        market = replace(existing, config=config) if existing else MarketState(asset=config.asset, config=config)
        market = refresh_rates(cs, market)
        self._commit(cs, ctx, "CONFIGURE_MARKET", market_symbol(config.asset), OriginType.ADMIN)

        previous = self._models.get(config.asset)
        self._models[config.asset] = InterestRateModel(
            config.rate_model, self.history_size, previous.history() if previous else None
        )
        self.record_samples([config.asset])
        logger.info("Market %s configured: max_ltv=%d threshold=%d mode=%s",
                    config.asset, config.max_ltv_bp, config.liquidation_threshold_bp,
                    config.liquidation.mode.value)
        return market

    @non_reentrant
    def set_whitelisted(self, ctx: AuthorizationContext, asset: str, account: str, allowed: bool) -> None:
        ctx.require_any(ROLE_RISK_MANAGER, ROLE_ADMIN)
        cs = ChangeSet(self.ledger)
        market = require_market(cs, asset)
        members = set(market.whitelist)
        if allowed:
            members.add(account)
        else:
            members.discard(account)
        write_market(cs, replace(market, whitelist=tuple(sorted(members))))
        self._commit(cs, ctx, "SET_WHITELIST", market_symbol(asset), OriginType.ADMIN)

    @non_reentrant
    def supply_liquidity(self, ctx: AuthorizationContext, asset: str, amount: Decimal) -> MarketState:
        """Fund the lending pool of a market from the caller's wallet."""
        cs = ChangeSet(self.ledger)
        market = require_market(cs, asset)
        amount = validate_amount(cs, asset, amount)
        cs.move(amount, asset, ctx.caller, LIQUIDITY_POOL, f"supply:{asset}")
        market = refresh_rates(cs, market)
        self._commit(cs, ctx, "SUPPLY", market_symbol(asset))
        self.record_samples([asset])
        logger.info("%s supplied %s %s", ctx.caller, amount, asset)
        return market

    # ------------------------------------------------------------------
    # Rate history
    # ------------------------------------------------------------------

    def model(self, asset: str) -> InterestRateModel:
        if asset not in self._models:
            market = require_market(self.ledger, asset)
            self._models[asset] = InterestRateModel(market.config.rate_model, self.history_size)
        return self._models[asset]

    def record_samples(self, assets: Iterable[str]) -> None:
        for asset in dict.fromkeys(assets):
            market = load_market(self.ledger, asset)
            if market is not None:
                self.model(asset).record(self.now, market.utilization_rate)

    def get_rate_history(self, asset: str) -> List[RateSample]:
        return self.model(asset).history()

    def get_rate_statistics(self, asset: str) -> Dict[str, Dict[str, float]]:
        return self.model(asset).statistics()

    def get_rate_curve(self, asset: str, n_points: int = 101):
        return self.model(asset).rate_curve(n_points)

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------

    def get_market_state(self, asset: str) -> MarketState:
        return require_market(self.ledger, asset)

    def available_liquidity(self, asset: str) -> Decimal:
        return self.ledger.get_balance(LIQUIDITY_POOL, asset)

    def get_market_rates(self, asset: str) -> MarketRates:
        market = require_market(self.ledger, asset)
        return MarketRates(
            asset=asset,
            borrow_rate=market.borrow_rate,
            supply_rate=market.supply_rate,
            utilization_rate=market.utilization_rate,
            available_supply=self.available_liquidity(asset),
            total_borrowed=market.total_borrowed,
            last_update_time=market.last_update_time,
        )

    def list_markets(self) -> List[str]:
        return [self.ledger.get_unit_state(s)['asset'] for s in self.ledger.list_units(UNIT_TYPE_MARKET)]
