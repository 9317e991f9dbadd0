"""
config.py - Market, collateral and rate-model configuration

Configuration is a set of frozen dataclasses. Values are checked at write
time (validate() raises ConfigurationError) and stored in the ledger as
plain dicts inside MARKET and COLLATERAL_TYPE records.

A YAML file can describe a whole deployment:

    settings:
      staleness_window_seconds: 3600
      rate_history_size: 256
    collateral:
      ETH: {min_deposit: "0.001"}
    markets:
      USDC:
        max_ltv_bp: 7500
        liquidation_threshold_bp: 8000
        rate_model: {base_rate_bp: 200, slope1_bp: 400, slope2_bp: 6000,
                     optimal_utilization_bp: 8000, reserve_factor_bp: 1000,
                     max_rate_bp: 10000}
        liquidation: {mode: auction, auction_duration_seconds: 86400}
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union
import logging

import yaml

from .core import (
    BPS, MAX_LIQUIDATION_PENALTY_BP, MAX_ORIGINATION_FEE_BP,
    ConfigurationError, as_decimal,
)

logger = logging.getLogger(__name__)


class LiquidationMode(str, Enum):
    DIRECT = "direct"
    AUCTION = "auction"


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ConfigurationError(message)


# ============================================================================
# FROZEN CONFIG DATACLASSES
# ============================================================================

@dataclass(frozen=True, slots=True)
class RateModelParams:
    """
    Kinked rate curve parameters, all in basis points (annualized).

    Below the optimal utilization the borrow rate rises along slope1; above
    it, along the much steeper slope2. The curve is capped at max_rate_bp.
    """
    base_rate_bp: int = 200
    slope1_bp: int = 400
    slope2_bp: int = 6000
    optimal_utilization_bp: int = 8000
    reserve_factor_bp: int = 1000
    max_rate_bp: int = 10000

    def validate(self) -> None:
        for name in ("base_rate_bp", "slope1_bp", "slope2_bp", "reserve_factor_bp", "max_rate_bp"):
            _require(getattr(self, name) >= 0, f"{name} must be non-negative")
        _require(0 < self.optimal_utilization_bp < BPS,
                 f"optimal_utilization_bp must be in (0, {BPS}), got {self.optimal_utilization_bp}")
        _require(self.reserve_factor_bp <= BPS,
                 f"reserve_factor_bp must be <= {BPS}, got {self.reserve_factor_bp}")
        _require(self.max_rate_bp >= self.base_rate_bp + self.slope1_bp,
                 f"max_rate_bp {self.max_rate_bp} is below the kink rate "
                 f"{self.base_rate_bp + self.slope1_bp}")

    def to_state_dict(self) -> Dict[str, Any]:
        return {
            'base_rate_bp': self.base_rate_bp,
            'slope1_bp': self.slope1_bp,
            'slope2_bp': self.slope2_bp,
            'optimal_utilization_bp': self.optimal_utilization_bp,
            'reserve_factor_bp': self.reserve_factor_bp,
            'max_rate_bp': self.max_rate_bp,
        }

    @classmethod
    def from_state_dict(cls, raw: Dict[str, Any]) -> RateModelParams:
        return cls(**{k: int(v) for k, v in raw.items()})


@dataclass(frozen=True, slots=True)
class LiquidationConfig:
    """
    How unsafe positions of a market are resolved.

    Attributes:
        mode: DIRECT seizure or collateral AUCTION
        liquidation_penalty_bp: Extra value seized on top of the repaid debt
        liquidator_share_bp: Share of the penalty kept by the liquidator; the
            remainder is the protocol fee
        max_liquidation_amount: Cap on debt repaid per direct liquidation (None = whole debt)
        auction_duration: Time between auction start and the earliest finalization
    """
    mode: LiquidationMode = LiquidationMode.DIRECT
    liquidation_penalty_bp: int = 500
    liquidator_share_bp: int = 5000
    max_liquidation_amount: Optional[Decimal] = None
    auction_duration: timedelta = timedelta(hours=24)

    def __post_init__(self):
        if not isinstance(self.mode, LiquidationMode):
            object.__setattr__(self, 'mode', LiquidationMode(self.mode))
        if self.max_liquidation_amount is not None and not isinstance(self.max_liquidation_amount, Decimal):
            object.__setattr__(self, 'max_liquidation_amount', as_decimal(self.max_liquidation_amount))

    def validate(self) -> None:
        _require(0 <= self.liquidation_penalty_bp <= MAX_LIQUIDATION_PENALTY_BP,
                 f"liquidation_penalty_bp {self.liquidation_penalty_bp} exceeds the "
                 f"{MAX_LIQUIDATION_PENALTY_BP} bp hard cap")
        _require(0 <= self.liquidator_share_bp <= BPS,
                 f"liquidator_share_bp must be in [0, {BPS}], got {self.liquidator_share_bp}")
        _require(self.max_liquidation_amount is None or self.max_liquidation_amount > 0,
                 "max_liquidation_amount must be positive")
        _require(self.auction_duration > timedelta(0), "auction_duration must be positive")

    def to_state_dict(self) -> Dict[str, Any]:
        return {
            'mode': self.mode.value,
            'liquidation_penalty_bp': self.liquidation_penalty_bp,
            'liquidator_share_bp': self.liquidator_share_bp,
            'max_liquidation_amount': self.max_liquidation_amount,
            'auction_duration_seconds': int(self.auction_duration.total_seconds()),
        }

    @classmethod
    def from_state_dict(cls, raw: Dict[str, Any]) -> LiquidationConfig:
        return cls(
            mode=LiquidationMode(raw['mode']),
            liquidation_penalty_bp=int(raw['liquidation_penalty_bp']),
            liquidator_share_bp=int(raw['liquidator_share_bp']),
            max_liquidation_amount=raw.get('max_liquidation_amount'),
            auction_duration=timedelta(seconds=int(raw['auction_duration_seconds'])),
        )


@dataclass(frozen=True, slots=True)
class MarketConfig:
    """Risk parameters of one borrowable asset."""
    asset: str
    max_ltv_bp: int = 7500
    liquidation_threshold_bp: int = 8000
    min_borrow: Decimal = Decimal("0")
    max_borrow: Optional[Decimal] = None
    origination_fee_bp: int = 0
    enabled: bool = True
    require_whitelist: bool = False
    rate_model: RateModelParams = field(default_factory=RateModelParams)
    liquidation: LiquidationConfig = field(default_factory=LiquidationConfig)

    def __post_init__(self):
        if not isinstance(self.min_borrow, Decimal):
            object.__setattr__(self, 'min_borrow', as_decimal(self.min_borrow))
        if self.max_borrow is not None and not isinstance(self.max_borrow, Decimal):
            object.__setattr__(self, 'max_borrow', as_decimal(self.max_borrow))

    def validate(self) -> None:
        _require(bool(self.asset), "Market asset cannot be empty")
        _require(0 < self.max_ltv_bp < BPS,
                 f"max_ltv_bp must be in (0, {BPS}), got {self.max_ltv_bp}")
        _require(self.max_ltv_bp < self.liquidation_threshold_bp <= BPS,
                 f"liquidation_threshold_bp {self.liquidation_threshold_bp} must exceed "
                 f"max_ltv_bp {self.max_ltv_bp} and be <= {BPS}")
        _require(0 <= self.origination_fee_bp <= MAX_ORIGINATION_FEE_BP,
                 f"origination_fee_bp {self.origination_fee_bp} exceeds the "
                 f"{MAX_ORIGINATION_FEE_BP} bp cap")
        _require(self.min_borrow >= 0, "min_borrow must be non-negative")
        _require(self.max_borrow is None or self.max_borrow >= self.min_borrow,
                 f"max_borrow {self.max_borrow} is below min_borrow {self.min_borrow}")
        self.rate_model.validate()
        self.liquidation.validate()

    def to_state_dict(self) -> Dict[str, Any]:
        return {
            'asset': self.asset,
            'max_ltv_bp': self.max_ltv_bp,
            'liquidation_threshold_bp': self.liquidation_threshold_bp,
            'min_borrow': self.min_borrow,
            'max_borrow': self.max_borrow,
            'origination_fee_bp': self.origination_fee_bp,
            'enabled': self.enabled,
            'require_whitelist': self.require_whitelist,
            'rate_model': self.rate_model.to_state_dict(),
            'liquidation': self.liquidation.to_state_dict(),
        }

    @classmethod
    def from_state_dict(cls, raw: Dict[str, Any]) -> MarketConfig:
        return cls(
            asset=raw['asset'],
            max_ltv_bp=int(raw['max_ltv_bp']),
            liquidation_threshold_bp=int(raw['liquidation_threshold_bp']),
            min_borrow=raw['min_borrow'],
            max_borrow=raw.get('max_borrow'),
            origination_fee_bp=int(raw['origination_fee_bp']),
            enabled=bool(raw['enabled']),
            require_whitelist=bool(raw['require_whitelist']),
            rate_model=RateModelParams.from_state_dict(raw['rate_model']),
            liquidation=LiquidationConfig.from_state_dict(raw['liquidation']),
        )


@dataclass(frozen=True, slots=True)
class CollateralConfig:
    """Whether an asset is accepted as collateral and its minimum deposit."""
    asset: str
    accepted: bool = True
    min_deposit: Decimal = Decimal("0")

    def __post_init__(self):
        if not isinstance(self.min_deposit, Decimal):
            object.__setattr__(self, 'min_deposit', as_decimal(self.min_deposit))

    def validate(self) -> None:
        _require(bool(self.asset), "Collateral asset cannot be empty")
        _require(self.min_deposit >= 0, "min_deposit must be non-negative")

    def to_state_dict(self) -> Dict[str, Any]:
        return {'asset': self.asset, 'accepted': self.accepted, 'min_deposit': self.min_deposit}

    @classmethod
    def from_state_dict(cls, raw: Dict[str, Any]) -> CollateralConfig:
        return cls(asset=raw['asset'], accepted=bool(raw['accepted']), min_deposit=raw['min_deposit'])


@dataclass(frozen=True, slots=True)
class ProtocolSettings:
    staleness_window: timedelta = timedelta(hours=1)
    rate_history_size: int = 256

    def validate(self) -> None:
        _require(self.staleness_window > timedelta(0), "staleness_window must be positive")
        _require(self.rate_history_size > 0, "rate_history_size must be positive")


@dataclass(frozen=True, slots=True)
class ProtocolConfig:
    settings: ProtocolSettings = field(default_factory=ProtocolSettings)
    collateral: Tuple[CollateralConfig, ...] = ()
    markets: Tuple[MarketConfig, ...] = ()

    def validate(self) -> None:
        self.settings.validate()
        for cfg in self.collateral:
            cfg.validate()
        for cfg in self.markets:
            cfg.validate()
        assets = [m.asset for m in self.markets]
        _require(len(assets) == len(set(assets)), "Duplicate market configuration")


# ============================================================================
# YAML -> dataclass builders
# ============================================================================

def _build_settings(raw: Dict[str, Any]) -> ProtocolSettings:
    return ProtocolSettings(
        staleness_window=timedelta(seconds=int(raw.get("staleness_window_seconds", 3600))),
        rate_history_size=int(raw.get("rate_history_size", 256)),
    )


def _build_rate_model(raw: Dict[str, Any]) -> RateModelParams:
    defaults = RateModelParams()
    return RateModelParams(
        base_rate_bp=int(raw.get("base_rate_bp", defaults.base_rate_bp)),
        slope1_bp=int(raw.get("slope1_bp", defaults.slope1_bp)),
        slope2_bp=int(raw.get("slope2_bp", defaults.slope2_bp)),
        optimal_utilization_bp=int(raw.get("optimal_utilization_bp", defaults.optimal_utilization_bp)),
        reserve_factor_bp=int(raw.get("reserve_factor_bp", defaults.reserve_factor_bp)),
        max_rate_bp=int(raw.get("max_rate_bp", defaults.max_rate_bp)),
    )


def _build_liquidation(raw: Dict[str, Any]) -> LiquidationConfig:
    try:
        mode = LiquidationMode(str(raw.get("mode", "direct")).lower())
    except ValueError:
        raise ConfigurationError(f"Unknown liquidation mode {raw.get('mode')!r}") from None
    max_amount = raw.get("max_liquidation_amount")
    return LiquidationConfig(
        mode=mode,
        liquidation_penalty_bp=int(raw.get("liquidation_penalty_bp", 500)),
        liquidator_share_bp=int(raw.get("liquidator_share_bp", 5000)),
        max_liquidation_amount=as_decimal(max_amount) if max_amount is not None else None,
        auction_duration=timedelta(seconds=int(raw.get("auction_duration_seconds", 86400))),
    )


def _build_markets(raw: Dict[str, Any]) -> Tuple[MarketConfig, ...]:
    markets = []
    for asset, cfg in raw.items():
        cfg = cfg or {}
        max_borrow = cfg.get("max_borrow")
        markets.append(MarketConfig(
            asset=asset,
            max_ltv_bp=int(cfg.get("max_ltv_bp", 7500)),
            liquidation_threshold_bp=int(cfg.get("liquidation_threshold_bp", 8000)),
            min_borrow=as_decimal(cfg.get("min_borrow", "0")),
            max_borrow=as_decimal(max_borrow) if max_borrow is not None else None,
            origination_fee_bp=int(cfg.get("origination_fee_bp", 0)),
            enabled=bool(cfg.get("enabled", True)),
            require_whitelist=bool(cfg.get("require_whitelist", False)),
            rate_model=_build_rate_model(cfg.get("rate_model", {})),
            liquidation=_build_liquidation(cfg.get("liquidation", {})),
        ))
    return tuple(markets)


def _build_collateral(raw: Dict[str, Any]) -> Tuple[CollateralConfig, ...]:
    collateral = []
    for asset, cfg in raw.items():
        cfg = cfg or {}
        collateral.append(CollateralConfig(
            asset=asset,
            accepted=bool(cfg.get("accepted", True)),
            min_deposit=as_decimal(cfg.get("min_deposit", "0")),
        ))
    return tuple(collateral)


def parse_protocol_config(raw: Dict[str, Any]) -> ProtocolConfig:
    """Build and validate a ProtocolConfig from an already-parsed mapping."""
    raw = raw or {}
    cfg = ProtocolConfig(
        settings=_build_settings(raw.get("settings", {}) or {}),
        collateral=_build_collateral(raw.get("collateral", {}) or {}),
        markets=_build_markets(raw.get("markets", {}) or {}),
    )
    cfg.validate()
    return cfg


def load_protocol_config(config_path: Union[str, Path]) -> ProtocolConfig:
    """
    Load and validate a deployment configuration from YAML.

    Raises:
        FileNotFoundError: If the file does not exist
        ConfigurationError: If any value is out of bounds
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f)

    cfg = parse_protocol_config(raw)
    logger.info("Configuration loaded from %s (%d markets, %d collateral types)",
                config_path, len(cfg.markets), len(cfg.collateral))
    return cfg
