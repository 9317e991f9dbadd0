"""
protocol.py - LendingProtocol facade

Wires the engines onto one Ledger with one shared ReentrancyGuard and
exposes the protocol's read and write API.

Example:
    ledger = Ledger("main", datetime(2024, 1, 1))
    ledger.register_unit(token("USDC", "USD Coin", 6))
    ledger.register_unit(token("ETH", "Ether"))

    oracle = OracleAdapter(StaticPriceOracle())
    protocol = LendingProtocol(ledger, oracle)

    admin = AuthorizationContext("admin", roles)
    protocol.configure_collateral(admin, CollateralConfig("ETH"))
    protocol.configure_market(admin, MarketConfig("USDC", max_ltv_bp=5000, liquidation_threshold_bp=6000))
"""

from __future__ import annotations
from decimal import Decimal
from typing import Dict, List, Optional
import logging

from .access import AuthorizationContext, ROLE_ADMIN
from .collateral import CollateralAccount, CollateralLedger
from .config import CollateralConfig, MarketConfig, ProtocolConfig, ProtocolSettings
from .core import PROTOCOL_SYMBOL, PROTOCOL_WALLETS, ChangeSet, OriginType
from .engine import LedgerEngine, is_paused, protocol_record
from .guard import ReentrancyGuard, non_reentrant
from .ledger import Ledger
from .liquidation import AuctionState, LiquidationEngine, LiquidationRecord
from .markets import MarketRates, MarketRegistry, MarketState
from .oracle import OracleAdapter, PriceOracle
from .positions import BorrowPosition, PositionEngine, PositionHealth
from .rate_model import RateSample

logger = logging.getLogger(__name__)


class LendingProtocol(LedgerEngine):
    """
    The lending protocol on top of a host Ledger.

    Construction registers the protocol wallets and the PROTOCOL record on
    the ledger when they are missing, so a ledger can be shared with other
    bookkeeping.
    """

    def __init__(self, ledger: Ledger, oracle: OracleAdapter,
                 settings: Optional[ProtocolSettings] = None):
        super().__init__(ledger, oracle, ReentrancyGuard())
        self.settings = settings or ProtocolSettings()
        self.settings.validate()
        for wallet in PROTOCOL_WALLETS:
            if not ledger.is_registered(wallet):
                ledger.register_wallet(wallet)
        if not ledger.has_unit(PROTOCOL_SYMBOL):
            ledger.register_unit(protocol_record())

        self.collateral = CollateralLedger(ledger, oracle, self.guard)
        self.markets = MarketRegistry(ledger, oracle, self.guard, self.settings.rate_history_size)
        self.positions = PositionEngine(ledger, oracle, self.markets, self.guard)
        self.liquidations = LiquidationEngine(ledger, oracle, self.markets, self.positions, self.guard)

    @classmethod
    def from_config(cls, ledger: Ledger, source: PriceOracle, config: ProtocolConfig,
                    ctx: AuthorizationContext) -> LendingProtocol:
        """Build a protocol and apply every collateral type and market of a ProtocolConfig."""
        config.validate()
        protocol = cls(ledger, OracleAdapter(source, config.settings.staleness_window), config.settings)
        for collateral in config.collateral:
            protocol.configure_collateral(ctx, collateral)
        for market in config.markets:
            protocol.configure_market(ctx, market)
        logger.info("Protocol configured: %d collateral types, %d markets",
                    len(config.collateral), len(config.markets))
        return protocol

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    @non_reentrant
    def set_paused(self, ctx: AuthorizationContext, paused: bool) -> None:
        """Stop (or resume) new borrowing and deposits. Admin only."""
        ctx.require(ROLE_ADMIN)
        cs = ChangeSet(self.ledger)
        state = cs.get_unit_state(PROTOCOL_SYMBOL)
        state["paused"] = bool(paused)
        cs.stage(PROTOCOL_SYMBOL, state)
        self._commit(cs, ctx, "SET_PAUSED", PROTOCOL_SYMBOL, OriginType.ADMIN)
        logger.warning("Protocol %s by %s", "paused" if paused else "unpaused", ctx.caller)

    @property
    def paused(self) -> bool:
        return is_paused(self.ledger)

    def configure_collateral(self, ctx: AuthorizationContext, config: CollateralConfig) -> None:
        self.collateral.configure_collateral(ctx, config)

    def configure_market(self, ctx: AuthorizationContext, config: MarketConfig) -> MarketState:
        return self.markets.configure_market(ctx, config)

    def set_whitelisted(self, ctx: AuthorizationContext, asset: str, account: str, allowed: bool) -> None:
        self.markets.set_whitelisted(ctx, asset, account, allowed)

    # ------------------------------------------------------------------
    # Write API
    # ------------------------------------------------------------------

    def supply_liquidity(self, ctx: AuthorizationContext, asset: str, amount: Decimal) -> MarketState:
        return self.markets.supply_liquidity(ctx, asset, amount)

    def deposit(self, ctx: AuthorizationContext, asset: str, amount: Decimal) -> CollateralAccount:
        return self.collateral.deposit(ctx, asset, amount)

    def withdraw(self, ctx: AuthorizationContext, asset: str, amount: Decimal,
                 recipient: Optional[str] = None) -> CollateralAccount:
        return self.collateral.withdraw(ctx, asset, amount, recipient)

    def create_position(self, ctx: AuthorizationContext, borrow_asset: str, collateral_asset: str,
                        borrow_amount: Decimal, collateral_amount: Decimal) -> int:
        return self.positions.create_position(ctx, borrow_asset, collateral_asset,
                                              borrow_amount, collateral_amount)

    def increase_borrow(self, ctx: AuthorizationContext, position_id: int, extra: Decimal) -> BorrowPosition:
        return self.positions.increase_borrow(ctx, position_id, extra)

    def add_collateral(self, ctx: AuthorizationContext, position_id: int, extra: Decimal) -> BorrowPosition:
        return self.positions.add_collateral(ctx, position_id, extra)

    def repay(self, ctx: AuthorizationContext, position_id: int, amount: Decimal) -> BorrowPosition:
        return self.positions.repay(ctx, position_id, amount)

    def withdraw_collateral(self, ctx: AuthorizationContext, position_id: int,
                            amount: Decimal) -> BorrowPosition:
        return self.positions.withdraw_collateral(ctx, position_id, amount)

    def liquidate(self, ctx: AuthorizationContext, position_id: int) -> int:
        return self.liquidations.liquidate(ctx, position_id)

    def place_bid(self, ctx: AuthorizationContext, auction_id: int, amount: Decimal) -> AuctionState:
        return self.liquidations.place_bid(ctx, auction_id, amount)

    def finalize_auction(self, ctx: AuthorizationContext, auction_id: int) -> AuctionState:
        return self.liquidations.finalize_auction(ctx, auction_id)

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------

    def get_account(self, owner: str, asset: str) -> Optional[CollateralAccount]:
        return self.collateral.get_account(owner, asset)

    def get_position(self, position_id: int) -> BorrowPosition:
        return self.positions.get_position(position_id)

    def get_position_health(self, position_id: int) -> PositionHealth:
        return self.positions.get_position_health(position_id)

    def get_outstanding_debt(self, position_id: int) -> Decimal:
        return self.positions.get_outstanding_debt(position_id)

    def get_user_positions(self, user: str, asset: Optional[str] = None) -> List[BorrowPosition]:
        return self.positions.get_user_positions(user, asset)

    def get_market_state(self, asset: str) -> MarketState:
        return self.markets.get_market_state(asset)

    def get_market_rates(self, asset: str) -> MarketRates:
        return self.markets.get_market_rates(asset)

    def get_rate_history(self, asset: str) -> List[RateSample]:
        return self.markets.get_rate_history(asset)

    def get_rate_statistics(self, asset: str) -> Dict[str, Dict[str, float]]:
        return self.markets.get_rate_statistics(asset)

    def find_liquidatable_positions(self, asset: Optional[str] = None) -> List[int]:
        return self.liquidations.find_liquidatable_positions(asset)

    def get_liquidation_data(self, liquidation_id: int) -> LiquidationRecord:
        return self.liquidations.get_liquidation_data(liquidation_id)

    def get_auction_data(self, auction_id: int) -> AuctionState:
        return self.liquidations.get_auction_data(auction_id)
