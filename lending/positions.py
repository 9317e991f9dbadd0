"""
positions.py - Borrow Position Engine

A BorrowPosition is a loan of one borrow asset against locked collateral of
another asset. Its lifecycle is a one-way state machine:

    ACTIVE --repay in full--------------------------> REPAID
    ACTIVE --direct liquidation---------------------> LIQUIDATED
    ACTIVE --auction liquidation--> QUEUED --final--> LIQUIDATED

Every mutation runs in this order inside a single transaction:
    1. accrue interest up to now (lazy, pull-based)
    2. revalidate LTV at current oracle prices
    3. stage the record changes and token moves

PURE CALCULATION FUNCTIONS (calculate_*):
    calculate_accrual      - simple interest since the last update
    calculate_ltv          - debt value / collateral value in basis points
    calculate_health       - LTV, health factor, risk band

STAGING FUNCTIONS (stage_*, write_position):
    Shared with the liquidation engine so that a liquidation accrues and
    closes positions inside its own transaction.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import logging

from .access import AuthorizationContext, ROLE_BORROWER
from .collateral import (
    load_collateral_config, stage_lock, stage_unlock, stage_withdrawal, validate_amount,
)
from .core import (
    BPS, DECIMAL_ROUNDING, LIQUIDITY_POOL, TREASURY_WALLET, UNIT_TYPE_POSITION,
    AuthorizationError, ChangeSet, EconomicError, LedgerView, StateError, ValidationError,
    record_unit,
)
from .engine import LedgerEngine, allocate_id
from .guard import ReentrancyGuard, non_reentrant
from .ledger import Ledger
from .markets import MarketRegistry, MarketState, refresh_rates, require_market, stage_debt_payment
from .oracle import OracleAdapter
from .rate_model import calculate_interest

logger = logging.getLogger(__name__)

# Reported when debt is outstanding against zero collateral value.
UNCOLLATERALIZED_LTV = 2 ** 63 - 1

# Health-factor bands (basis points of 1.0)
VERY_SAFE_HEALTH_FACTOR = 20_000
SAFE_HEALTH_FACTOR = 15_000
MODERATE_HEALTH_FACTOR = 12_000
HIGH_RISK_HEALTH_FACTOR = 10_000


class PositionStatus(str, Enum):
    ACTIVE = "active"
    QUEUED = "queued"
    REPAID = "repaid"
    LIQUIDATED = "liquidated"


class RiskLevel(str, Enum):
    VERY_SAFE = "very_safe"
    SAFE = "safe"
    MODERATE = "moderate"
    HIGH_RISK = "high_risk"
    CRITICAL = "critical"


def position_symbol(position_id: int) -> str:
    return f"POSITION:{position_id}"


# ============================================================================
# FROZEN DATACLASSES
# ============================================================================

@dataclass(frozen=True, slots=True)
class BorrowPosition:
    """
    One loan.

    principal is the outstanding borrowed amount; accrued_interest is
    interest charged but not yet paid. Both are in borrow-asset units.
    collateral_value is the USD snapshot taken at the last mutation.
    """
    position_id: int
    borrower: str
    borrow_asset: str
    collateral_asset: str
    principal: Decimal
    accrued_interest: Decimal
    collateral_amount: Decimal
    collateral_value: Decimal
    created_at: datetime
    last_interest_update: datetime
    liquidation_threshold_bp: int
    max_ltv_bp: int
    status: PositionStatus = PositionStatus.ACTIVE
    liquidation_id: Optional[int] = None
    total_interest_paid: Decimal = Decimal("0")
    total_principal_paid: Decimal = Decimal("0")

    @property
    def total_debt(self) -> Decimal:
        return self.principal + self.accrued_interest

    @property
    def active(self) -> bool:
        return self.status == PositionStatus.ACTIVE

    @property
    def liquidated(self) -> bool:
        return self.status == PositionStatus.LIQUIDATED


@dataclass(frozen=True, slots=True)
class PositionHealth:
    position_id: int
    current_ltv: int
    liquidation_threshold: int
    health_factor: Optional[int]
    is_liquidatable: bool
    risk_level: RiskLevel
    debt_value: Decimal
    collateral_value: Decimal


# ============================================================================
# ADAPTER FUNCTIONS
# ============================================================================

def load_position(view: LedgerView, position_id: int) -> Optional[BorrowPosition]:
    symbol = position_symbol(position_id)
    if not view.has_unit(symbol):
        return None
    s = view.get_unit_state(symbol)
    return BorrowPosition(
        position_id=s['position_id'],
        borrower=s['borrower'],
        borrow_asset=s['borrow_asset'],
        collateral_asset=s['collateral_asset'],
        principal=s['principal'],
        accrued_interest=s['accrued_interest'],
        collateral_amount=s['collateral_amount'],
        collateral_value=s['collateral_value'],
        created_at=s['created_at'],
        last_interest_update=s['last_interest_update'],
        liquidation_threshold_bp=s['liquidation_threshold_bp'],
        max_ltv_bp=s['max_ltv_bp'],
        status=PositionStatus(s['status']),
        liquidation_id=s.get('liquidation_id'),
        total_interest_paid=s['total_interest_paid'],
        total_principal_paid=s['total_principal_paid'],
    )


def to_state_dict(position: BorrowPosition) -> Dict[str, Any]:
    return {
        'position_id': position.position_id,
        'borrower': position.borrower,
        'borrow_asset': position.borrow_asset,
        'collateral_asset': position.collateral_asset,
        'principal': position.principal,
        'accrued_interest': position.accrued_interest,
        'collateral_amount': position.collateral_amount,
        'collateral_value': position.collateral_value,
        'created_at': position.created_at,
        'last_interest_update': position.last_interest_update,
        'liquidation_threshold_bp': position.liquidation_threshold_bp,
        'max_ltv_bp': position.max_ltv_bp,
        'status': position.status.value,
        'liquidation_id': position.liquidation_id,
        'total_interest_paid': position.total_interest_paid,
        'total_principal_paid': position.total_principal_paid,
    }


def require_position(view: LedgerView, position_id: int) -> BorrowPosition:
    position = load_position(view, position_id)
    if position is None:
        raise ValidationError(f"Unknown position {position_id}")
    return position


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def calculate_accrual(position: BorrowPosition, borrow_rate_bp: int, now: datetime,
                      quantum: Optional[Decimal]) -> BorrowPosition:
    """
    Charge simple interest on the principal since last_interest_update.

    Interest is rounded up to the borrow token's precision. Only whole
    seconds are charged and last_interest_update advances by exactly those,
    so a fractional remainder carries into the next accrual. With zero
    elapsed seconds the position is returned unchanged.
    """
    elapsed = int((now - position.last_interest_update).total_seconds())
    if elapsed <= 0:
        return position
    interest = calculate_interest(position.principal, borrow_rate_bp, elapsed)
    if quantum is not None:
        interest = interest.quantize(quantum, rounding=DECIMAL_ROUNDING['INTEREST'])
    return replace(
        position,
        accrued_interest=position.accrued_interest + interest,
        last_interest_update=position.last_interest_update + timedelta(seconds=elapsed),
    )


def calculate_ltv(debt_value: Decimal, collateral_value: Decimal) -> int:
    """Floor of debt_value * 10000 / collateral_value."""
    if debt_value <= 0:
        return 0
    if collateral_value <= 0:
        return UNCOLLATERALIZED_LTV
    return int(debt_value * BPS // collateral_value)


def exceeds_ltv(debt_value: Decimal, collateral_value: Decimal, max_ltv_bp: int) -> bool:
    """Exact check of debt_value * 10000 / collateral_value > max_ltv_bp."""
    return debt_value * BPS > max_ltv_bp * collateral_value


def classify_risk(health_factor: Optional[int]) -> RiskLevel:
    if health_factor is None or health_factor >= VERY_SAFE_HEALTH_FACTOR:
        return RiskLevel.VERY_SAFE
    if health_factor >= SAFE_HEALTH_FACTOR:
        return RiskLevel.SAFE
    if health_factor >= MODERATE_HEALTH_FACTOR:
        return RiskLevel.MODERATE
    if health_factor >= HIGH_RISK_HEALTH_FACTOR:
        return RiskLevel.HIGH_RISK
    return RiskLevel.CRITICAL


def calculate_health(position: BorrowPosition, debt_value: Decimal,
                     collateral_value: Decimal) -> PositionHealth:
    ltv = calculate_ltv(debt_value, collateral_value)
    threshold = position.liquidation_threshold_bp
    health_factor = threshold * BPS // ltv if ltv > 0 else None
    return PositionHealth(
        position_id=position.position_id,
        current_ltv=ltv,
        liquidation_threshold=threshold,
        health_factor=health_factor,
        is_liquidatable=ltv >= threshold,
        risk_level=classify_risk(health_factor),
        debt_value=debt_value,
        collateral_value=collateral_value,
    )


def calculate_origination_fee(amount: Decimal, fee_bp: int, quantum: Optional[Decimal]) -> Decimal:
    fee = amount * fee_bp / BPS
    if quantum is not None:
        fee = fee.quantize(quantum, rounding=DECIMAL_ROUNDING['FEES'])
    return fee


def calculate_repayment(position: BorrowPosition, amount: Decimal):
    """Split a payment into (interest_paid, principal_paid), interest first."""
    interest_paid = min(amount, position.accrued_interest)
    return interest_paid, amount - interest_paid


# ============================================================================
# STAGING FUNCTIONS
# ============================================================================

def write_position(cs: ChangeSet, position: BorrowPosition) -> None:
    symbol = position_symbol(position.position_id)
    if cs.has_unit(symbol):
        cs.stage(symbol, to_state_dict(position))
    else:
        cs.create(record_unit(symbol, UNIT_TYPE_POSITION, to_state_dict(position)))


def stage_accrual(cs: ChangeSet, position: BorrowPosition, market: MarketState) -> BorrowPosition:
    """Accrue interest at the market's current borrow rate and stage the result."""
    accrued = calculate_accrual(
        position, market.borrow_rate, cs.current_time, cs.get_unit(position.borrow_asset).quantum
    )
    if accrued is not position:
        logger.debug("Position %d accrued %s %s", position.position_id,
                     accrued.accrued_interest - position.accrued_interest, position.borrow_asset)
        write_position(cs, accrued)
    return accrued


def snapshot_collateral_value(market: MarketState, old: BorrowPosition,
                              new: BorrowPosition) -> MarketState:
    """Keep the market's collateral total in step with a position's snapshot."""
    return replace(
        market,
        total_collateral_value=max(
            market.total_collateral_value - old.collateral_value + new.collateral_value, Decimal("0")
        ),
    )


# ============================================================================
# POSITION ENGINE
# ============================================================================

class PositionEngine(LedgerEngine):
    """
    Borrow position state machine.

    Example:
        pid = positions.create_position(alice, "USDC", "ETH", Decimal("1000"), Decimal("1"))
        positions.repay(alice, pid, positions.get_outstanding_debt(pid))
    """

    def __init__(self, ledger: Ledger, oracle: OracleAdapter, markets: MarketRegistry,
                 guard: Optional[ReentrancyGuard] = None):
        super().__init__(ledger, oracle, guard)
        self.markets = markets

    def _value(self, asset: str, amount: Decimal) -> Decimal:
        return self.oracle.get_value(asset, amount, self.now)

    def _check_ltv(self, borrow_asset: str, debt: Decimal, collateral_asset: str,
                   collateral_amount: Decimal, max_ltv_bp: int, operation: str) -> Decimal:
        """Raise EconomicError above max_ltv_bp; returns the collateral value."""
        debt_value = self._value(borrow_asset, debt)
        collateral_value = self._value(collateral_asset, collateral_amount)
        if exceeds_ltv(debt_value, collateral_value, max_ltv_bp):
            raise EconomicError(
                f"{operation} rejected: LTV {calculate_ltv(debt_value, collateral_value)} bp "
                f"exceeds max {max_ltv_bp} bp"
            )
        return collateral_value

    @staticmethod
    def _check_liquidity(cs: ChangeSet, asset: str, amount: Decimal) -> None:
        available = cs.get_balance(LIQUIDITY_POOL, asset)
        if amount > available:
            raise EconomicError(f"Insufficient {asset} liquidity: requested {amount}, available {available}")

    @staticmethod
    def _check_bounds(market: MarketState, principal: Decimal) -> None:
        config = market.config
        if principal < config.min_borrow:
            raise ValidationError(f"Borrow {principal} {market.asset} is below the minimum {config.min_borrow}")
        if config.max_borrow is not None and principal > config.max_borrow:
            raise ValidationError(f"Borrow {principal} {market.asset} exceeds the maximum {config.max_borrow}")

    def _stage_disbursement(self, cs: ChangeSet, market: MarketState, borrower: str,
                            amount: Decimal, contract_id: str) -> Decimal:
        """Pay out a loan: amount less the origination fee to the borrower, the fee to treasury."""
        fee = calculate_origination_fee(amount, market.config.origination_fee_bp,
                                        cs.get_unit(market.asset).quantum)
        cs.move(amount - fee, market.asset, LIQUIDITY_POOL, borrower, contract_id)
        cs.move(fee, market.asset, LIQUIDITY_POOL, TREASURY_WALLET, f"{contract_id}:fee")
        return fee

    def _load_for_mutation(self, cs: ChangeSet, ctx: AuthorizationContext, position_id: int):
        """Borrower-only access to an ACTIVE position, accrued to now."""
        position = require_position(cs, position_id)
        if position.borrower != ctx.caller:
            raise AuthorizationError(f"{ctx.caller} is not the borrower of position {position_id}")
        if not position.active:
            raise StateError(f"Position {position_id} is {position.status.value}")
        market = require_market(cs, position.borrow_asset)
        return stage_accrual(cs, position, market), market

    def _finish(self, cs: ChangeSet, ctx: AuthorizationContext, event: str,
                old: BorrowPosition, new: BorrowPosition, market: MarketState) -> MarketState:
        write_position(cs, new)
        market = refresh_rates(cs, snapshot_collateral_value(market, old, new))
        self._commit(cs, ctx, event, position_symbol(new.position_id))
        self.markets.record_samples([market.asset])
        return market

    @non_reentrant
    def create_position(
        self,
        ctx: AuthorizationContext,
        borrow_asset: str,
        collateral_asset: str,
        borrow_amount: Decimal,
        collateral_amount: Decimal,
    ) -> int:
        """
        Open a loan against collateral the caller has already deposited.

        Returns:
            The new position id
        """
        ctx.require(ROLE_BORROWER)
        self._require_not_paused(self.ledger, "borrowing")
        cs = ChangeSet(self.ledger)
        market = require_market(cs, borrow_asset)
        if not market.config.enabled:
            raise StateError(f"Market {borrow_asset} is disabled")
        if collateral_asset == borrow_asset:
            raise ValidationError("Collateral asset must differ from the borrow asset")
        collateral_config = load_collateral_config(cs, collateral_asset)
        if collateral_config is None or not collateral_config.accepted:
            raise StateError(f"{collateral_asset} is not an accepted collateral type")
        borrow_amount = validate_amount(cs, borrow_asset, borrow_amount)
        collateral_amount = validate_amount(cs, collateral_asset, collateral_amount)
        self._check_bounds(market, borrow_amount)
        if market.config.require_whitelist and ctx.caller not in market.whitelist:
            raise AuthorizationError(f"{ctx.caller} is not whitelisted for {borrow_asset}")

        collateral_value = self._check_ltv(borrow_asset, borrow_amount, collateral_asset,
                                           collateral_amount, market.config.max_ltv_bp, "Borrow")
        self._check_liquidity(cs, borrow_asset, borrow_amount)
        stage_lock(cs, ctx.caller, collateral_asset, collateral_amount)

        position_id = allocate_id(cs, "next_position_id")
        now = cs.current_time
        position = BorrowPosition(
            position_id=position_id,
            borrower=ctx.caller,
            borrow_asset=borrow_asset,
            collateral_asset=collateral_asset,
            principal=borrow_amount,
            accrued_interest=Decimal("0"),
            collateral_amount=collateral_amount,
            collateral_value=collateral_value,
            created_at=now,
            last_interest_update=now,
            liquidation_threshold_bp=market.config.liquidation_threshold_bp,
            max_ltv_bp=market.config.max_ltv_bp,
        )
        fee = self._stage_disbursement(cs, market, ctx.caller, borrow_amount, f"borrow:{position_id}")
        market = replace(
            market,
            total_borrowed=market.total_borrowed + borrow_amount,
            total_collateral_value=market.total_collateral_value + collateral_value,
            active_positions=market.active_positions + 1,
        )
        write_position(cs, position)
        refresh_rates(cs, market)
        self._commit(cs, ctx, "CREATE_POSITION", position_symbol(position_id))
        self.markets.record_samples([borrow_asset])
        logger.info("Position %d opened: %s borrowed %s %s against %s %s (fee %s)",
                    position_id, ctx.caller, borrow_amount, borrow_asset,
                    collateral_amount, collateral_asset, fee)
        return position_id

    @non_reentrant
    def increase_borrow(self, ctx: AuthorizationContext, position_id: int, extra: Decimal) -> BorrowPosition:
        self._require_not_paused(self.ledger, "borrowing")
        cs = ChangeSet(self.ledger)
        position, market = self._load_for_mutation(cs, ctx, position_id)
        if not market.config.enabled:
            raise StateError(f"Market {market.asset} is disabled")
        extra = validate_amount(cs, position.borrow_asset, extra)
        self._check_bounds(market, position.principal + extra)
        collateral_value = self._check_ltv(position.borrow_asset, position.total_debt + extra,
                                           position.collateral_asset, position.collateral_amount,
                                           market.config.max_ltv_bp, "Increase borrow")
        self._check_liquidity(cs, position.borrow_asset, extra)
        self._stage_disbursement(cs, market, ctx.caller, extra, f"borrow:{position_id}")
        updated = replace(position, principal=position.principal + extra, collateral_value=collateral_value)
        market = replace(market, total_borrowed=market.total_borrowed + extra)
        self._finish(cs, ctx, "INCREASE_BORROW", position, updated, market)
        logger.info("Position %d borrowed %s more %s", position_id, extra, position.borrow_asset)
        return updated

    @non_reentrant
    def add_collateral(self, ctx: AuthorizationContext, position_id: int, extra: Decimal) -> BorrowPosition:
        cs = ChangeSet(self.ledger)
        position, market = self._load_for_mutation(cs, ctx, position_id)
        extra = validate_amount(cs, position.collateral_asset, extra)
        stage_lock(cs, ctx.caller, position.collateral_asset, extra)
        amount = position.collateral_amount + extra
        updated = replace(position, collateral_amount=amount,
                          collateral_value=self._value(position.collateral_asset, amount))
        self._finish(cs, ctx, "ADD_COLLATERAL", position, updated, market)
        logger.info("Position %d added %s %s collateral", position_id, extra, position.collateral_asset)
        return updated

    @non_reentrant
    def repay(self, ctx: AuthorizationContext, position_id: int, amount: Decimal) -> BorrowPosition:
        """
        Pay down interest first, then principal.

        Paying the whole debt closes the position and unlocks its collateral.
        """
        cs = ChangeSet(self.ledger)
        position, market = self._load_for_mutation(cs, ctx, position_id)
        amount = validate_amount(cs, position.borrow_asset, amount)
        if amount > position.total_debt:
            raise ValidationError(
                f"Repay {amount} exceeds the debt {position.total_debt} of position {position_id}"
            )
        interest_paid, principal_paid = calculate_repayment(position, amount)
        market = stage_debt_payment(cs, market, ctx.caller, interest_paid, principal_paid,
                                    f"repay:{position_id}")
        updated = replace(
            position,
            principal=position.principal - principal_paid,
            accrued_interest=position.accrued_interest - interest_paid,
            total_interest_paid=position.total_interest_paid + interest_paid,
            total_principal_paid=position.total_principal_paid + principal_paid,
        )
        if updated.total_debt == 0:
            stage_unlock(cs, position.borrower, position.collateral_asset, position.collateral_amount)
            updated = replace(updated, status=PositionStatus.REPAID,
                              collateral_amount=Decimal("0"), collateral_value=Decimal("0"))
            market = replace(market, active_positions=market.active_positions - 1)
        self._finish(cs, ctx, "REPAY", position, updated, market)
        logger.info("Position %d repaid %s %s (interest %s, principal %s)%s",
                    position_id, amount, position.borrow_asset, interest_paid, principal_paid,
                    " - closed" if updated.status == PositionStatus.REPAID else "")
        return updated

    @non_reentrant
    def withdraw_collateral(self, ctx: AuthorizationContext, position_id: int,
                            amount: Decimal) -> BorrowPosition:
        cs = ChangeSet(self.ledger)
        position, market = self._load_for_mutation(cs, ctx, position_id)
        amount = validate_amount(cs, position.collateral_asset, amount)
        if amount > position.collateral_amount:
            raise ValidationError(
                f"Withdraw {amount} exceeds the collateral {position.collateral_amount} "
                f"of position {position_id}"
            )
        remaining = position.collateral_amount - amount
        if remaining == 0 and position.total_debt > 0:
            raise EconomicError(f"Position {position_id} still owes {position.total_debt}; "
                                f"collateral cannot drop to zero")
        collateral_value = self._check_ltv(position.borrow_asset, position.total_debt,
                                           position.collateral_asset, remaining,
                                           market.config.max_ltv_bp, "Withdraw collateral")
        stage_unlock(cs, ctx.caller, position.collateral_asset, amount)
        stage_withdrawal(cs, ctx.caller, position.collateral_asset, amount, ctx.caller)
        updated = replace(position, collateral_amount=remaining, collateral_value=collateral_value)
        self._finish(cs, ctx, "WITHDRAW_COLLATERAL", position, updated, market)
        logger.info("Position %d released %s %s collateral", position_id, amount, position.collateral_asset)
        return updated

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------

    def _accrued_view(self, position: BorrowPosition) -> BorrowPosition:
        """The position with interest pending up to now, without staging anything."""
        if not position.active:
            return position
        market = require_market(self.ledger, position.borrow_asset)
        return calculate_accrual(position, market.borrow_rate, self.now,
                                 self.ledger.get_unit(position.borrow_asset).quantum)

    def get_position(self, position_id: int) -> BorrowPosition:
        return require_position(self.ledger, position_id)

    def get_outstanding_debt(self, position_id: int) -> Decimal:
        """Principal plus interest accrued up to now."""
        return self._accrued_view(self.get_position(position_id)).total_debt

    def health_of(self, position: BorrowPosition) -> PositionHealth:
        position = self._accrued_view(position)
        return calculate_health(
            position,
            self._value(position.borrow_asset, position.total_debt),
            self._value(position.collateral_asset, position.collateral_amount),
        )

    def get_position_health(self, position_id: int) -> PositionHealth:
        return self.health_of(self.get_position(position_id))

    def list_positions(self) -> List[BorrowPosition]:
        return [
            load_position(self.ledger, self.ledger.get_unit_state(symbol)['position_id'])
            for symbol in self.ledger.list_units(UNIT_TYPE_POSITION)
        ]

    def get_user_positions(self, user: str, asset: Optional[str] = None) -> List[BorrowPosition]:
        """Positions of a borrower in id order, optionally for one borrow asset."""
        found = [
            p for p in self.list_positions()
            if p.borrower == user and (asset is None or p.borrow_asset == asset)
        ]
        return sorted(found, key=lambda p: p.position_id)
