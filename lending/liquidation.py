"""
liquidation.py - Liquidation Engine (direct seizure and collateral auctions)

A position becomes liquidatable once its LTV reaches the liquidation
threshold. What happens next depends on the market's LiquidationMode.

DIRECT:
    repay   = min(total_debt, max_liquidation_amount)
    penalty = repay * penalty_bp / 10000
    seize   = (repay + penalty) in USD / collateral price, capped at the
              position's collateral

    The liquidator pays `repay` in the borrow asset and receives the seized
    collateral less the protocol's cut of the penalty. The split is computed
    from the collateral actually seized, never from the requested amount.
    When max_liquidation_amount leaves debt unpaid, the remainder is written
    off as market bad debt and collateral worth that remainder goes to the
    treasury. Only collateral beyond it is unlocked for the borrower.

AUCTION:
    The position is QUEUED and an auction opens for its whole collateral.
    Bids must exceed the current highest bid and cover the debt; the
    previous highest bidder is refunded in the same transaction. After
    end_time the auction is finalized: the winner's bid repays the debt and
    the surplus goes to the borrower. With no bids the whole collateral goes
    to the treasury and the debt becomes bad debt.

    current_price decays linearly from start_price to zero over the auction
    for display only; it does not gate bids.
"""

from __future__ import annotations
from dataclasses import dataclass, fields, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
import logging

from .access import AuthorizationContext, ROLE_LIQUIDATOR
from .collateral import (
    load_collateral_account, stage_payout, stage_seizure, stage_unlock, validate_amount,
)
from .config import LiquidationMode
from .core import (
    AUCTION_ESCROW, BPS, DECIMAL_ROUNDING, TREASURY_WALLET,
    UNIT_TYPE_AUCTION, UNIT_TYPE_LIQUIDATION,
    ChangeSet, EconomicError, LedgerView, OriginType, StateError, ValidationError,
    quantize_value, record_unit,
)
from .engine import LedgerEngine, allocate_id
from .guard import ReentrancyGuard, non_reentrant
from .ledger import Ledger
from .markets import MarketRegistry, MarketState, refresh_rates, require_market, stage_debt_payment
from .oracle import OracleAdapter
from .positions import (
    BorrowPosition, PositionEngine, PositionStatus, calculate_repayment, position_symbol,
    require_position, snapshot_collateral_value, stage_accrual, write_position,
)

logger = logging.getLogger(__name__)


def liquidation_symbol(liquidation_id: int) -> str:
    return f"LIQUIDATION:{liquidation_id}"


def auction_symbol(auction_id: int) -> str:
    return f"AUCTION:{auction_id}"


# ============================================================================
# FROZEN DATACLASSES
# ============================================================================

@dataclass(frozen=True, slots=True)
class LiquidationRecord:
    """
    Append-only record of one liquidation.

    Amounts: borrow_asset_amount and bad_debt in the borrow asset; the
    collateral amounts (seized, reward, fee, bad_debt_collateral) in the
    collateral asset.
    """
    liquidation_id: int
    position_id: int
    borrower: str
    liquidator: Optional[str]
    borrow_asset_amount: Decimal
    collateral_seized: Decimal
    liquidator_reward: Decimal
    protocol_fee: Decimal
    timestamp: datetime
    completed: bool
    is_auction: bool
    auction_id: Optional[int] = None
    bad_debt: Decimal = Decimal("0")
    bad_debt_collateral: Decimal = Decimal("0")


@dataclass(frozen=True, slots=True)
class AuctionState:
    auction_id: int
    position_id: int
    liquidation_id: int
    borrower: str
    borrow_asset: str
    collateral_asset: str
    debt_amount: Decimal
    collateral_amount: Decimal
    start_price: Decimal
    current_price: Decimal
    start_time: datetime
    end_time: datetime
    highest_bidder: Optional[str] = None
    highest_bid: Decimal = Decimal("0")
    active: bool = True
    completed: bool = False
    emergency: bool = False


@dataclass(frozen=True, slots=True)
class DirectLiquidationQuote:
    """Outcome of the direct-mode math for one position."""
    repay_amount: Decimal
    penalty_amount: Decimal
    collateral_seized: Decimal
    liquidator_reward: Decimal
    protocol_fee: Decimal
    bad_debt: Decimal
    bad_debt_collateral: Decimal = Decimal("0")

    @property
    def liquidator_receives(self) -> Decimal:
        return self.collateral_seized - self.protocol_fee


# ============================================================================
# ADAPTER FUNCTIONS
# ============================================================================

_LIQUIDATION_FIELDS = tuple(f.name for f in fields(LiquidationRecord))
_AUCTION_FIELDS = tuple(f.name for f in fields(AuctionState))


def load_liquidation(view: LedgerView, liquidation_id: int) -> Optional[LiquidationRecord]:
    symbol = liquidation_symbol(liquidation_id)
    if not view.has_unit(symbol):
        return None
    state = view.get_unit_state(symbol)
    return LiquidationRecord(**{name: state[name] for name in _LIQUIDATION_FIELDS})


def load_auction(view: LedgerView, auction_id: int) -> Optional[AuctionState]:
    symbol = auction_symbol(auction_id)
    if not view.has_unit(symbol):
        return None
    state = view.get_unit_state(symbol)
    return AuctionState(**{name: state[name] for name in _AUCTION_FIELDS})


def _as_state(record, names: Tuple[str, ...]) -> Dict[str, Any]:
    return {name: getattr(record, name) for name in names}


def write_liquidation(cs: ChangeSet, record: LiquidationRecord) -> None:
    symbol = liquidation_symbol(record.liquidation_id)
    state = _as_state(record, _LIQUIDATION_FIELDS)
    if cs.has_unit(symbol):
        cs.stage(symbol, state)
    else:
        cs.create(record_unit(symbol, UNIT_TYPE_LIQUIDATION, state))


def write_auction(cs: ChangeSet, auction: AuctionState) -> None:
    symbol = auction_symbol(auction.auction_id)
    state = _as_state(auction, _AUCTION_FIELDS)
    if cs.has_unit(symbol):
        cs.stage(symbol, state)
    else:
        cs.create(record_unit(symbol, UNIT_TYPE_AUCTION, state))


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def calculate_direct_liquidation(
    total_debt: Decimal,
    collateral_amount: Decimal,
    borrow_price: Decimal,
    collateral_price: Decimal,
    penalty_bp: int,
    liquidator_share_bp: int,
    max_liquidation_amount: Optional[Decimal] = None,
    collateral_quantum: Optional[Decimal] = None,
) -> DirectLiquidationQuote:
    """
    Direct-mode liquidation math.

    The seized quantity is rounded down to the collateral token's precision.
    The penalty share is taken pro rata from what was actually seized, so a
    cap on the collateral shrinks the reward and fee along with it.
    bad_debt_collateral is the collateral worth the unpaid debt, out of what
    is left after the seizure.
    """
    repay = total_debt if max_liquidation_amount is None else min(total_debt, max_liquidation_amount)
    penalty = repay * penalty_bp / BPS

    def _round(value: Decimal) -> Decimal:
        if collateral_quantum is None:
            return value
        return value.quantize(collateral_quantum, rounding=DECIMAL_ROUNDING['TOKEN'])

    target = _round((repay + penalty) * borrow_price / collateral_price)
    seized = min(target, collateral_amount)
    reward, protocol_fee = calculate_penalty_split(seized, repay, penalty, liquidator_share_bp,
                                                   collateral_quantum)
    bad_debt = total_debt - repay
    cover = _round(bad_debt * borrow_price / collateral_price) if bad_debt > 0 else Decimal("0")
    return DirectLiquidationQuote(
        repay_amount=repay,
        penalty_amount=penalty,
        collateral_seized=seized,
        liquidator_reward=reward,
        protocol_fee=protocol_fee,
        bad_debt=bad_debt,
        bad_debt_collateral=min(cover, collateral_amount - seized),
    )


def calculate_penalty_split(
    seized: Decimal,
    repay: Decimal,
    penalty: Decimal,
    liquidator_share_bp: int,
    collateral_quantum: Optional[Decimal] = None,
) -> Tuple[Decimal, Decimal]:
    """
    (liquidator_reward, protocol_fee) for a seizure.

    The penalty's share of `seized` is pro rata to penalty / (repay + penalty).
    """
    gross = repay + penalty
    if gross <= 0:
        return Decimal("0"), Decimal("0")

    def _round(value: Decimal) -> Decimal:
        if collateral_quantum is None:
            return value
        return value.quantize(collateral_quantum, rounding=DECIMAL_ROUNDING['TOKEN'])

    penalty_share = _round(seized * penalty / gross)
    protocol_fee = _round(penalty_share * (BPS - liquidator_share_bp) / BPS)
    return penalty_share - protocol_fee, protocol_fee


def calculate_auction_price(start_price: Decimal, start_time: datetime, end_time: datetime,
                            now: datetime) -> Decimal:
    """Linear decay from start_price at start_time to zero at end_time."""
    duration = (end_time - start_time).total_seconds()
    if duration <= 0 or now >= end_time:
        return Decimal("0")
    if now <= start_time:
        return start_price
    remaining = Decimal(str((end_time - now).total_seconds()))
    return quantize_value(start_price * remaining / Decimal(str(duration)))


# ============================================================================
# STAGING FUNCTIONS
# ============================================================================

def stage_write_off(market: MarketState, position: BorrowPosition) -> MarketState:
    """Write the position's remaining debt off against the market."""
    return replace(
        market,
        total_borrowed=max(market.total_borrowed - position.principal, Decimal("0")),
        bad_debt=market.bad_debt + position.total_debt,
    )


def stage_close(cs: ChangeSet, market: MarketState, old: BorrowPosition,
                position: BorrowPosition) -> MarketState:
    """Mark the position LIQUIDATED with no debt and no collateral left."""
    closed = replace(
        position,
        status=PositionStatus.LIQUIDATED,
        principal=Decimal("0"),
        accrued_interest=Decimal("0"),
        collateral_amount=Decimal("0"),
        collateral_value=Decimal("0"),
    )
    write_position(cs, closed)
    market = snapshot_collateral_value(market, old, closed)
    return replace(market, active_positions=max(market.active_positions - 1, 0))


# ============================================================================
# LIQUIDATION ENGINE
# ============================================================================

class LiquidationEngine(LedgerEngine):
    """
    Liquidates unsafe positions.

    Example:
        liquidation_id = engine.liquidate(keeper_ctx, position_id)
        record = engine.get_liquidation_data(liquidation_id)
    """

    def __init__(self, ledger: Ledger, oracle: OracleAdapter, markets: MarketRegistry,
                 positions: PositionEngine, guard: Optional[ReentrancyGuard] = None):
        super().__init__(ledger, oracle, guard)
        self.markets = markets
        self.positions = positions

    @non_reentrant
    def liquidate(self, ctx: AuthorizationContext, position_id: int) -> int:
        """
        Liquidate a position whose LTV has reached the liquidation threshold.

        Returns:
            The liquidation id. In auction mode the linked auction id is on
            the record and on get_auction_data.

        Raises:
            StateError: position already queued/closed or has a liquidation in flight
            EconomicError: position is not liquidatable
        """
        ctx.require(ROLE_LIQUIDATOR)
        cs = ChangeSet(self.ledger)
        position = require_position(cs, position_id)
        if position.liquidation_id is not None:
            raise StateError(
                f"Position {position_id} already has liquidation {position.liquidation_id}"
            )
        if not position.active:
            raise StateError(f"Position {position_id} is {position.status.value}")
        market = require_market(cs, position.borrow_asset)
        position = stage_accrual(cs, position, market)
        health = self.positions.health_of(position)
        if not health.is_liquidatable:
            raise EconomicError(
                f"Position {position_id} is healthy: LTV {health.current_ltv} bp below "
                f"threshold {health.liquidation_threshold} bp"
            )

        if market.config.liquidation.mode == LiquidationMode.AUCTION:
            liquidation_id = self._open_auction(cs, ctx, position, market, health.collateral_value)
        else:
            liquidation_id = self._liquidate_direct(cs, ctx, position, market)
        self.markets.record_samples([market.asset])
        return liquidation_id

    def _liquidate_direct(self, cs: ChangeSet, ctx: AuthorizationContext,
                          position: BorrowPosition, market: MarketState) -> int:
        config = market.config.liquidation
        borrower, asset = position.borrower, position.collateral_asset
        quantum = cs.get_unit(asset).quantum
        account = load_collateral_account(cs, borrower, asset)
        # the account lock can be lower than the position's collateral
        held = min(position.collateral_amount, account.locked_amount) if account else Decimal("0")
        quote = calculate_direct_liquidation(
            total_debt=position.total_debt,
            collateral_amount=held,
            borrow_price=self.oracle.get_price(position.borrow_asset, self.now),
            collateral_price=self.oracle.get_price(asset, self.now),
            penalty_bp=config.liquidation_penalty_bp,
            liquidator_share_bp=config.liquidator_share_bp,
            max_liquidation_amount=config.max_liquidation_amount,
            collateral_quantum=quantum,
        )
        liquidation_id = allocate_id(cs, "next_liquidation_id")
        contract = f"liquidation:{liquidation_id}"

        interest_paid, principal_paid = calculate_repayment(position, quote.repay_amount)
        market = stage_debt_payment(cs, market, ctx.caller, interest_paid, principal_paid, contract)
        seized = stage_seizure(cs, borrower, asset, quote.collateral_seized)
        reward, protocol_fee = calculate_penalty_split(
            seized, quote.repay_amount, quote.penalty_amount, config.liquidator_share_bp, quantum,
        )
        stage_payout(cs, asset, seized - protocol_fee, ctx.caller, contract)
        stage_payout(cs, asset, protocol_fee, TREASURY_WALLET, f"{contract}:fee")
        covered = Decimal("0")
        if quote.bad_debt_collateral > 0:
            covered = stage_seizure(cs, borrower, asset, quote.bad_debt_collateral)
            stage_payout(cs, asset, covered, TREASURY_WALLET, f"{contract}:bad_debt")
        leftover = held - seized - covered
        if leftover > 0:
            stage_unlock(cs, borrower, asset, leftover)

        remaining = replace(
            position,
            principal=position.principal - principal_paid,
            accrued_interest=position.accrued_interest - interest_paid,
            total_interest_paid=position.total_interest_paid + interest_paid,
            total_principal_paid=position.total_principal_paid + principal_paid,
            liquidation_id=liquidation_id,
        )
        if remaining.total_debt > 0:
            market = stage_write_off(market, remaining)
        market = stage_close(cs, market, position, remaining)
        refresh_rates(cs, market)

        write_liquidation(cs, LiquidationRecord(
            liquidation_id=liquidation_id,
            position_id=position.position_id,
            borrower=position.borrower,
            liquidator=ctx.caller,
            borrow_asset_amount=quote.repay_amount,
            collateral_seized=seized,
            liquidator_reward=reward,
            protocol_fee=protocol_fee,
            timestamp=cs.current_time,
            completed=True,
            is_auction=False,
            bad_debt=remaining.total_debt,
            bad_debt_collateral=covered,
        ))
        self._commit(cs, ctx, "LIQUIDATE", position_symbol(position.position_id), OriginType.LIQUIDATION)
        logger.info("Position %d liquidated by %s: repaid %s %s, seized %s %s "
                    "(reward %s, fee %s, unlocked %s, bad debt %s covered by %s)",
                    position.position_id, ctx.caller, quote.repay_amount, position.borrow_asset,
                    seized, asset, reward, protocol_fee, leftover, remaining.total_debt, covered)
        return liquidation_id

    def _open_auction(self, cs: ChangeSet, ctx: AuthorizationContext, position: BorrowPosition,
                      market: MarketState, collateral_value: Decimal) -> int:
        liquidation_id = allocate_id(cs, "next_liquidation_id")
        auction_id = allocate_id(cs, "next_auction_id")
        now = cs.current_time
        end_time = now + market.config.liquidation.auction_duration
        write_auction(cs, AuctionState(
            auction_id=auction_id,
            position_id=position.position_id,
            liquidation_id=liquidation_id,
            borrower=position.borrower,
            borrow_asset=position.borrow_asset,
            collateral_asset=position.collateral_asset,
            debt_amount=position.total_debt,
            collateral_amount=position.collateral_amount,
            start_price=collateral_value,
            current_price=collateral_value,
            start_time=now,
            end_time=end_time,
        ))
        write_liquidation(cs, LiquidationRecord(
            liquidation_id=liquidation_id,
            position_id=position.position_id,
            borrower=position.borrower,
            liquidator=None,
            borrow_asset_amount=position.total_debt,
            collateral_seized=Decimal("0"),
            liquidator_reward=Decimal("0"),
            protocol_fee=Decimal("0"),
            timestamp=now,
            completed=False,
            is_auction=True,
            auction_id=auction_id,
        ))
        write_position(cs, replace(position, status=PositionStatus.QUEUED, liquidation_id=liquidation_id))
        self._commit(cs, ctx, "START_AUCTION", position_symbol(position.position_id), OriginType.LIQUIDATION)
        logger.info("Position %d queued for auction %d: debt %s %s, %s %s collateral worth %s, ends %s",
                    position.position_id, auction_id, position.total_debt, position.borrow_asset,
                    position.collateral_amount, position.collateral_asset, collateral_value, end_time)
        return liquidation_id

    def _require_auction(self, view: LedgerView, auction_id: int) -> AuctionState:
        auction = load_auction(view, auction_id)
        if auction is None:
            raise ValidationError(f"Unknown auction {auction_id}")
        return auction

    @non_reentrant
    def place_bid(self, ctx: AuthorizationContext, auction_id: int, amount: Decimal) -> AuctionState:
        """
        Bid on an open auction with borrow-asset tokens held in escrow.

        The bid must exceed the highest bid and cover the debt. The previous
        highest bidder is refunded in the same transaction.
        """
        cs = ChangeSet(self.ledger)
        auction = self._require_auction(cs, auction_id)
        if not auction.active:
            raise StateError(f"Auction {auction_id} is closed")
        if cs.current_time >= auction.end_time:
            raise StateError(f"Auction {auction_id} ended at {auction.end_time}")
        amount = validate_amount(cs, auction.borrow_asset, amount)
        if amount <= auction.highest_bid:
            raise EconomicError(f"Bid {amount} does not exceed the highest bid {auction.highest_bid}")
        if amount < auction.debt_amount:
            raise EconomicError(f"Bid {amount} does not cover the debt {auction.debt_amount}")

        contract = f"auction:{auction_id}"
        if auction.highest_bidder is not None:
            cs.move(auction.highest_bid, auction.borrow_asset, AUCTION_ESCROW,
                    auction.highest_bidder, f"{contract}:refund")
        cs.move(amount, auction.borrow_asset, ctx.caller, AUCTION_ESCROW, f"{contract}:bid")
        updated = replace(
            auction,
            highest_bidder=ctx.caller,
            highest_bid=amount,
            current_price=calculate_auction_price(auction.start_price, auction.start_time,
                                                  auction.end_time, cs.current_time),
        )
        write_auction(cs, updated)
        self._commit(cs, ctx, "PLACE_BID", auction_symbol(auction_id), OriginType.LIQUIDATION)
        logger.info("Auction %d: %s bid %s %s (outbid %s)", auction_id, ctx.caller, amount,
                    auction.borrow_asset, auction.highest_bidder)
        return updated

    @non_reentrant
    def finalize_auction(self, ctx: AuthorizationContext, auction_id: int) -> AuctionState:
        """
        Settle an auction once end_time has been reached.

        With a winner the bid repays the debt, the surplus goes to the
        borrower and the collateral to the winner. Without bids the
        collateral goes to the treasury and the debt is written off.
        """
        cs = ChangeSet(self.ledger)
        auction = self._require_auction(cs, auction_id)
        if not auction.active:
            raise StateError(f"Auction {auction_id} is already finalized")
        if cs.current_time < auction.end_time:
            raise StateError(f"Auction {auction_id} runs until {auction.end_time}")

        position = require_position(cs, auction.position_id)
        market = require_market(cs, position.borrow_asset)
        record = load_liquidation(cs, auction.liquidation_id)
        contract = f"auction:{auction_id}"
        seized = stage_seizure(cs, position.borrower, position.collateral_asset, position.collateral_amount)
        emergency = auction.highest_bidder is None

        if emergency:
            stage_payout(cs, position.collateral_asset, seized, TREASURY_WALLET, f"{contract}:emergency")
            market = stage_write_off(market, position)
            settled = replace(position, liquidation_id=auction.liquidation_id)
            record = replace(record, collateral_seized=seized, protocol_fee=seized,
                             completed=True, bad_debt=position.total_debt)
        else:
            interest_paid, principal_paid = calculate_repayment(position, position.total_debt)
            market = stage_debt_payment(cs, market, AUCTION_ESCROW, interest_paid, principal_paid, contract)
            surplus = auction.highest_bid - position.total_debt
            cs.move(surplus, position.borrow_asset, AUCTION_ESCROW, position.borrower, f"{contract}:surplus")
            stage_payout(cs, position.collateral_asset, seized, auction.highest_bidder, contract)
            settled = replace(
                position,
                total_interest_paid=position.total_interest_paid + interest_paid,
                total_principal_paid=position.total_principal_paid + principal_paid,
            )
            record = replace(record, liquidator=auction.highest_bidder, collateral_seized=seized,
                             completed=True)

        market = stage_close(cs, market, position, settled)
        refresh_rates(cs, market)
        write_liquidation(cs, record)
        finalized = replace(auction, active=False, completed=True, emergency=emergency,
                            current_price=Decimal("0"))
        write_auction(cs, finalized)
        self._commit(cs, ctx, "FINALIZE_AUCTION", auction_symbol(auction_id), OriginType.LIQUIDATION)
        self.markets.record_samples([market.asset])
        if emergency:
            logger.warning("Auction %d had no bids: %s %s seized to treasury, %s %s written off",
                           auction_id, seized, position.collateral_asset,
                           position.total_debt, position.borrow_asset)
        else:
            logger.info("Auction %d won by %s for %s %s", auction_id, auction.highest_bidder,
                        auction.highest_bid, position.borrow_asset)
        return finalized

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------

    def find_liquidatable_positions(self, asset: Optional[str] = None) -> List[int]:
        """Ids of ACTIVE positions at or past their liquidation threshold."""
        found = []
        for position in self.positions.list_positions():
            if not position.active or position.liquidation_id is not None:
                continue
            if asset is not None and position.borrow_asset != asset:
                continue
            if self.positions.health_of(position).is_liquidatable:
                found.append(position.position_id)
        return sorted(found)

    def get_liquidation_data(self, liquidation_id: int) -> LiquidationRecord:
        record = load_liquidation(self.ledger, liquidation_id)
        if record is None:
            raise ValidationError(f"Unknown liquidation {liquidation_id}")
        return record

    def get_liquidations_for_position(self, position_id: int) -> List[LiquidationRecord]:
        records = [
            load_liquidation(self.ledger, self.ledger.get_unit_state(symbol)['liquidation_id'])
            for symbol in self.ledger.list_units(UNIT_TYPE_LIQUIDATION)
        ]
        return sorted((r for r in records if r.position_id == position_id),
                      key=lambda r: r.liquidation_id)

    def get_auction_data(self, auction_id: int) -> AuctionState:
        """Auction state with current_price refreshed to now while it is open."""
        auction = self._require_auction(self.ledger, auction_id)
        if not auction.active:
            return auction
        return replace(
            auction,
            current_price=calculate_auction_price(auction.start_price, auction.start_time,
                                                  auction.end_time, self.now),
        )
