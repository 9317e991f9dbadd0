"""
oracle.py - Price oracle sources and the staleness-checking adapter

Provides per-asset USD prices for valuing collateral and debt.

Classes:
- PriceData: One price observation (price, last_update_time, confidence)
- PriceOracle: Protocol defining the source interface
- StaticPriceOracle: Latest-price store, updated explicitly
- TimeSeriesPriceOracle: Historical observations with point-in-time lookup
- OracleAdapter: What the engines consume; rejects missing, non-positive
  and stale prices

All prices are quoted in USD.
"""

from __future__ import annotations
from bisect import bisect_right
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple, Protocol, runtime_checkable
import logging

from .core import (
    StalePriceError, ValidationError,
    as_decimal, quantize_value,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PriceData:
    """A single oracle observation."""
    price: Decimal
    last_update_time: datetime
    confidence: Decimal = Decimal("1")

    def __post_init__(self):
        if not isinstance(self.price, Decimal):
            object.__setattr__(self, 'price', as_decimal(self.price))
        if not isinstance(self.confidence, Decimal):
            object.__setattr__(self, 'confidence', as_decimal(self.confidence))


@runtime_checkable
class PriceOracle(Protocol):
    """
    Protocol for price sources.

    get_price returns the latest observation at or before the timestamp,
    or None when the source has never priced the asset.
    """

    def get_price(self, asset: str, timestamp: datetime) -> Optional[PriceData]:
        ...


class StaticPriceOracle:
    """
    Price source holding the latest observation per asset.

    The observation's own timestamp is reported as last_update_time, so a
    price that is never refreshed eventually becomes stale.
    """

    def __init__(self, prices: Optional[Dict[str, PriceData]] = None):
        self.prices: Dict[str, PriceData] = dict(prices or {})

    def get_price(self, asset: str, timestamp: datetime) -> Optional[PriceData]:
        """Get the latest observation (timestamp is ignored)."""
        return self.prices.get(asset)

    def set_price(self, asset: str, price: Decimal, timestamp: datetime,
                  confidence: Decimal = Decimal("1")) -> None:
        """Record a new observation for an asset."""
        self.prices[asset] = PriceData(as_decimal(price), timestamp, as_decimal(confidence))

    def set_prices(self, prices: Dict[str, Decimal], timestamp: datetime) -> None:
        """Record observations for several assets at the same timestamp."""
        for asset, price in prices.items():
            self.set_price(asset, price, timestamp)

    def __repr__(self):
        return f"StaticPriceOracle({len(self.prices)} prices)"


class TimeSeriesPriceOracle:
    """
    Price source with time-varying prices.

    Stores historical observations and returns the most recent one at or
    before the requested timestamp.
    """

    def __init__(self, price_paths: Optional[Dict[str, List[Tuple[datetime, Decimal]]]] = None):
        """
        Args:
            price_paths: Optional dict mapping assets to lists of (timestamp, price) tuples.

        Example:
            oracle = TimeSeriesPriceOracle({
                'ETH': [(t0, Decimal("2000")), (t1, Decimal("1600"))],
            })
        """
        self.price_history: Dict[str, List[Tuple[datetime, Decimal]]] = {}
        if price_paths:
            for asset, path in price_paths.items():
                if path:
                    self.price_history[asset] = sorted(
                        ((ts, as_decimal(p)) for ts, p in path), key=lambda x: x[0]
                    )

    def add_price(self, asset: str, timestamp: datetime, price: Decimal) -> None:
        """Add a price observation, keeping history in chronological order."""
        history = self.price_history.setdefault(asset, [])
        history.append((timestamp, as_decimal(price)))
        history.sort(key=lambda x: x[0])

    def get_price(self, asset: str, timestamp: datetime) -> Optional[PriceData]:
        """
        Get the observation at or before the specified timestamp.

        Uses binary search for O(log n) lookup.
        """
        history = self.price_history.get(asset)
        if not history:
            return None
        timestamps = [ts for ts, _ in history]
        idx = bisect_right(timestamps, timestamp)
        if idx == 0:
            return None
        ts, price = history[idx - 1]
        return PriceData(price, ts)

    def __repr__(self):
        total = sum(len(h) for h in self.price_history.values())
        return f"TimeSeriesPriceOracle({len(self.price_history)} assets, {total} observations)"


class OracleAdapter:
    """
    Staleness-checking facade over a PriceOracle.

    A price is unusable when the asset has never been priced, when the price
    is not positive, or when its age exceeds the staleness window.
    """

    def __init__(self, source: PriceOracle, staleness_window: timedelta = timedelta(hours=1)):
        if staleness_window <= timedelta(0):
            raise ValidationError(f"Staleness window must be positive, got {staleness_window}")
        self.source = source
        self.staleness_window = staleness_window

    def get_price_data(self, asset: str, now: datetime) -> PriceData:
        data = self.source.get_price(asset, now)
        if data is None:
            raise ValidationError(f"No price registered for {asset}")
        if data.price <= 0:
            raise ValidationError(f"Invalid price for {asset}: {data.price}")
        age = now - data.last_update_time
        if age > self.staleness_window:
            logger.warning("Stale price for %s: age %s exceeds %s", asset, age, self.staleness_window)
            raise StalePriceError(
                f"Price for {asset} is stale: last update {data.last_update_time}, age {age}"
            )
        return data

    def get_price(self, asset: str, now: datetime) -> Decimal:
        """USD price of one unit of the asset."""
        return self.get_price_data(asset, now).price

    def get_value(self, asset: str, amount: Decimal, now: datetime) -> Decimal:
        """USD value of an amount, on the global valuation scale."""
        if amount == 0:
            return Decimal("0")
        return quantize_value(amount * self.get_price(asset, now))
