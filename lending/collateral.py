"""
collateral.py - Collateral Ledger

Per-owner, per-asset collateral accounting on top of the host ledger.
Deposited tokens sit in COLLATERAL_VAULT; the CollateralAccount record
tracks how much of an owner's deposit is locked behind borrow positions.

ARCHITECTURE (Pure Function Pattern):
=====================================

1. FROZEN DATACLASS: CollateralAccount (owner, asset, deposited, locked, last_update)

2. PURE CALCULATION FUNCTIONS (calculate_*):
   - Take the account and the amount explicitly
   - Return the new account (and, for seizure, the seized amount)

3. ADAPTER FUNCTIONS (load_collateral_account, to_state_dict):
   - The only place that touches LedgerView for reads

4. STAGING FUNCTIONS (stage_*):
   - Load + calculate + stage record changes and token moves on a ChangeSet
   - Shared by the CollateralLedger entry points and by the position and
     liquidation engines, so cross-component calls stay in one transaction

Invariant: 0 <= locked_amount <= deposited_amount for every account.
Only deposited_amount - locked_amount can be withdrawn.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
import logging

from .access import (
    AuthorizationContext, ROLE_ADMIN, ROLE_COLLATERAL_MANAGER, ROLE_RISK_MANAGER,
)
from .config import CollateralConfig
from .core import (
    COLLATERAL_VAULT, UNIT_TYPE_COLLATERAL_ACCOUNT, UNIT_TYPE_COLLATERAL_TYPE, UNIT_TYPE_TOKEN,
    ChangeSet, ConfigurationError, LedgerView, OriginType, StateError, ValidationError,
    as_decimal, record_unit,
)
from .engine import LedgerEngine
from .guard import non_reentrant

logger = logging.getLogger(__name__)


def collateral_symbol(owner: str, asset: str) -> str:
    return f"COLLATERAL:{owner}:{asset}"


def collateral_type_symbol(asset: str) -> str:
    return f"COLLATERAL_TYPE:{asset}"


# ============================================================================
# FROZEN DATACLASS
# ============================================================================

@dataclass(frozen=True, slots=True)
class CollateralAccount:
    owner: str
    asset: str
    deposited_amount: Decimal
    locked_amount: Decimal
    last_update: Optional[datetime] = None

    def __post_init__(self):
        if not isinstance(self.deposited_amount, Decimal):
            object.__setattr__(self, 'deposited_amount', as_decimal(self.deposited_amount))
        if not isinstance(self.locked_amount, Decimal):
            object.__setattr__(self, 'locked_amount', as_decimal(self.locked_amount))

    @property
    def available(self) -> Decimal:
        """Unlocked, withdrawable balance."""
        return self.deposited_amount - self.locked_amount


def empty_account(owner: str, asset: str) -> CollateralAccount:
    return CollateralAccount(owner, asset, Decimal("0"), Decimal("0"), None)


# ============================================================================
# ADAPTER FUNCTIONS
# ============================================================================

def load_collateral_account(view: LedgerView, owner: str, asset: str) -> Optional[CollateralAccount]:
    """Read an account record; None if the owner never deposited the asset."""
    symbol = collateral_symbol(owner, asset)
    if not view.has_unit(symbol):
        return None
    state = view.get_unit_state(symbol)
    return CollateralAccount(
        owner=state['owner'],
        asset=state['asset'],
        deposited_amount=state['deposited_amount'],
        locked_amount=state['locked_amount'],
        last_update=state.get('last_update'),
    )


def to_state_dict(account: CollateralAccount) -> Dict[str, Any]:
    return {
        'owner': account.owner,
        'asset': account.asset,
        'deposited_amount': account.deposited_amount,
        'locked_amount': account.locked_amount,
        'last_update': account.last_update,
    }


def load_collateral_config(view: LedgerView, asset: str) -> Optional[CollateralConfig]:
    symbol = collateral_type_symbol(asset)
    if not view.has_unit(symbol):
        return None
    return CollateralConfig.from_state_dict(view.get_unit_state(symbol))


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def calculate_deposit(account: CollateralAccount, amount: Decimal, now: datetime) -> CollateralAccount:
    return replace(account, deposited_amount=account.deposited_amount + amount, last_update=now)


def calculate_withdrawal(account: CollateralAccount, amount: Decimal, now: datetime) -> CollateralAccount:
    if amount > account.available:
        raise ValidationError(
            f"Cannot withdraw {amount} {account.asset}: only {account.available} unlocked "
            f"for {account.owner}"
        )
    return replace(account, deposited_amount=account.deposited_amount - amount, last_update=now)


def calculate_lock(account: CollateralAccount, amount: Decimal, now: datetime) -> CollateralAccount:
    if amount > account.available:
        raise StateError(
            f"Cannot lock {amount} {account.asset}: only {account.available} unlocked "
            f"for {account.owner}"
        )
    return replace(account, locked_amount=account.locked_amount + amount, last_update=now)


def calculate_unlock(account: CollateralAccount, amount: Decimal, now: datetime) -> CollateralAccount:
    if amount > account.locked_amount:
        raise StateError(
            f"Cannot unlock {amount} {account.asset}: only {account.locked_amount} locked "
            f"for {account.owner}"
        )
    return replace(account, locked_amount=account.locked_amount - amount, last_update=now)


def calculate_seizure(
    account: CollateralAccount, amount: Decimal, now: datetime
) -> Tuple[CollateralAccount, Decimal]:
    """
    Seize up to the locked balance.

    Returns:
        (new_account, seized) where seized = min(amount, locked_amount).
        Callers must use the returned amount, which may be less than requested.
    """
    seized = min(amount, account.locked_amount)
    new_account = replace(
        account,
        deposited_amount=account.deposited_amount - seized,
        locked_amount=account.locked_amount - seized,
        last_update=now,
    )
    return new_account, seized


# ============================================================================
# STAGING FUNCTIONS
# ============================================================================

def validate_amount(view: LedgerView, asset: str, amount: Any) -> Decimal:
    """Positive, finite and representable in the token's precision."""
    if not view.has_unit(asset) or view.get_unit(asset).unit_type != UNIT_TYPE_TOKEN:
        raise ValidationError(f"Unknown asset {asset}")
    try:
        amount = as_decimal(amount)
    except ArithmeticError:
        raise ValidationError(f"Invalid amount {amount!r}") from None
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"Amount must be positive, got {amount}")
    if view.get_unit(asset).round(amount) != amount:
        raise ValidationError(f"Amount {amount} exceeds the precision of {asset}")
    return amount


def _require_account(view: LedgerView, owner: str, asset: str) -> CollateralAccount:
    account = load_collateral_account(view, owner, asset)
    if account is None:
        raise StateError(f"{owner} has no {asset} collateral account")
    return account


def write_account(cs: ChangeSet, account: CollateralAccount) -> None:
    symbol = collateral_symbol(account.owner, account.asset)
    if cs.has_unit(symbol):
        cs.stage(symbol, to_state_dict(account))
    else:
        cs.create(record_unit(symbol, UNIT_TYPE_COLLATERAL_ACCOUNT, to_state_dict(account)))


def stage_deposit(cs: ChangeSet, owner: str, asset: str, amount: Decimal) -> CollateralAccount:
    config = load_collateral_config(cs, asset)
    if config is None or not config.accepted:
        raise StateError(f"{asset} is not an accepted collateral type")
    amount = validate_amount(cs, asset, amount)
    if amount < config.min_deposit:
        raise ValidationError(f"Deposit {amount} {asset} is below the minimum {config.min_deposit}")
    account = load_collateral_account(cs, owner, asset) or empty_account(owner, asset)
    account = calculate_deposit(account, amount, cs.current_time)
    write_account(cs, account)
    cs.move(amount, asset, owner, COLLATERAL_VAULT, f"deposit:{owner}:{asset}")
    return account


def stage_withdrawal(cs: ChangeSet, owner: str, asset: str, amount: Decimal,
                     recipient: str) -> CollateralAccount:
    amount = validate_amount(cs, asset, amount)
    account = load_collateral_account(cs, owner, asset)
    if account is None:
        raise ValidationError(f"{owner} has no {asset} collateral to withdraw")
    account = calculate_withdrawal(account, amount, cs.current_time)
    write_account(cs, account)
    cs.move(amount, asset, COLLATERAL_VAULT, recipient, f"withdraw:{owner}:{asset}")
    return account


def stage_lock(cs: ChangeSet, owner: str, asset: str, amount: Decimal) -> CollateralAccount:
    account = calculate_lock(_require_account(cs, owner, asset), amount, cs.current_time)
    write_account(cs, account)
    return account


def stage_unlock(cs: ChangeSet, owner: str, asset: str, amount: Decimal) -> CollateralAccount:
    account = calculate_unlock(_require_account(cs, owner, asset), amount, cs.current_time)
    write_account(cs, account)
    return account


def stage_seizure(cs: ChangeSet, owner: str, asset: str, amount: Decimal) -> Decimal:
    """Reduce the account and return the seized amount. The seized tokens stay in the vault until paid out."""
    account, seized = calculate_seizure(_require_account(cs, owner, asset), amount, cs.current_time)
    write_account(cs, account)
    return seized


def stage_payout(cs: ChangeSet, asset: str, amount: Decimal, recipient: str, contract_id: str) -> None:
    """Release seized collateral from the vault."""
    cs.move(amount, asset, COLLATERAL_VAULT, recipient, contract_id)


# ============================================================================
# COLLATERAL LEDGER
# ============================================================================

class CollateralLedger(LedgerEngine):
    """
    Collateral accounts of every owner.

    Example:
        collateral.configure_collateral(admin_ctx, CollateralConfig("ETH", min_deposit="0.01"))
        collateral.deposit(alice_ctx, "ETH", Decimal("2"))
        collateral.withdraw(alice_ctx, "ETH", Decimal("0.5"))
    """

    @non_reentrant
    def configure_collateral(self, ctx: AuthorizationContext, config: CollateralConfig) -> None:
        """Accept (or stop accepting) an asset as collateral. Risk-manager or admin only."""
        ctx.require_any(ROLE_RISK_MANAGER, ROLE_ADMIN)
        config.validate()
        if not self.ledger.has_unit(config.asset):
            raise ConfigurationError(f"Collateral asset {config.asset} is not a registered token")
        cs = ChangeSet(self.ledger)
        symbol = collateral_type_symbol(config.asset)
        if cs.has_unit(symbol):
            cs.stage(symbol, config.to_state_dict())
        else:
            cs.create(record_unit(symbol, UNIT_TYPE_COLLATERAL_TYPE, config.to_state_dict()))
        self._commit(cs, ctx, "CONFIGURE_COLLATERAL", symbol, OriginType.ADMIN)
        logger.info("Collateral %s configured: accepted=%s min_deposit=%s",
                    config.asset, config.accepted, config.min_deposit)

    @non_reentrant
    def deposit(self, ctx: AuthorizationContext, asset: str, amount: Decimal) -> CollateralAccount:
        self._require_not_paused(self.ledger, "deposit")
        cs = ChangeSet(self.ledger)
        account = stage_deposit(cs, ctx.caller, asset, amount)
        self._commit(cs, ctx, "DEPOSIT", collateral_symbol(ctx.caller, asset))
        logger.info("%s deposited %s %s", ctx.caller, amount, asset)
        return account

    @non_reentrant
    def withdraw(self, ctx: AuthorizationContext, asset: str, amount: Decimal,
                 recipient: Optional[str] = None) -> CollateralAccount:
        cs = ChangeSet(self.ledger)
        account = stage_withdrawal(cs, ctx.caller, asset, amount, recipient or ctx.caller)
        self._commit(cs, ctx, "WITHDRAW", collateral_symbol(ctx.caller, asset))
        logger.info("%s withdrew %s %s to %s", ctx.caller, amount, asset, recipient or ctx.caller)
        return account

    @non_reentrant
    def lock(self, ctx: AuthorizationContext, owner: str, asset: str, amount: Decimal) -> CollateralAccount:
        ctx.require(ROLE_COLLATERAL_MANAGER)
        cs = ChangeSet(self.ledger)
        account = stage_lock(cs, owner, asset, validate_amount(cs, asset, amount))
        self._commit(cs, ctx, "LOCK", collateral_symbol(owner, asset))
        return account

    @non_reentrant
    def unlock(self, ctx: AuthorizationContext, owner: str, asset: str, amount: Decimal) -> CollateralAccount:
        ctx.require(ROLE_COLLATERAL_MANAGER)
        cs = ChangeSet(self.ledger)
        account = stage_unlock(cs, owner, asset, validate_amount(cs, asset, amount))
        self._commit(cs, ctx, "UNLOCK", collateral_symbol(owner, asset))
        return account

    @non_reentrant
    def seize(self, ctx: AuthorizationContext, owner: str, asset: str, amount: Decimal,
              recipient: str) -> Decimal:
        """Seize up to the locked balance to recipient; returns the amount actually seized."""
        ctx.require(ROLE_COLLATERAL_MANAGER)
        cs = ChangeSet(self.ledger)
        seized = stage_seizure(cs, owner, asset, validate_amount(cs, asset, amount))
        stage_payout(cs, asset, seized, recipient, f"seize:{owner}:{asset}")
        self._commit(cs, ctx, "SEIZE", collateral_symbol(owner, asset), OriginType.LIQUIDATION)
        logger.info("Seized %s %s from %s to %s (requested %s)", seized, asset, owner, recipient, amount)
        return seized

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------

    def get_account(self, owner: str, asset: str) -> Optional[CollateralAccount]:
        """The owner's account, or None once nothing is deposited."""
        account = load_collateral_account(self.ledger, owner, asset)
        if account is None or account.deposited_amount == 0:
            return None
        return account

    def get_accounts(self, owner: str) -> List[CollateralAccount]:
        accounts = []
        for symbol in self.ledger.list_units(UNIT_TYPE_COLLATERAL_ACCOUNT):
            state = self.ledger.get_unit_state(symbol)
            if state['owner'] == owner:
                account = self.get_account(owner, state['asset'])
                if account is not None:
                    accounts.append(account)
        return accounts

    def get_collateral_config(self, asset: str) -> Optional[CollateralConfig]:
        return load_collateral_config(self.ledger, asset)

    def get_value(self, asset: str, amount: Decimal) -> Decimal:
        """USD value of an amount of collateral at the current oracle price."""
        return self.oracle.get_value(asset, as_decimal(amount), self.now)

    def get_total_value(self, owner: str) -> Decimal:
        """USD value of everything the owner has deposited."""
        return sum(
            (self.get_value(a.asset, a.deposited_amount) for a in self.get_accounts(owner)),
            Decimal("0"),
        )
