"""
rate_model.py - Kinked interest rate curve and rate history

PURE CALCULATION FUNCTIONS (calculate_*):
    Integer basis-point arithmetic with floor division, no hidden state.

    U <= optimal:  borrow = base + U * slope1 / optimal
    U >  optimal:  borrow = base + slope1 + (U - optimal) * slope2 / (10000 - optimal)
                   borrow = min(borrow, max_rate)
                   supply = borrow * U * (10000 - reserve_factor) / 10000^2

InterestRateModel wraps one market's parameters with a bounded history of
observed rates and numpy-based analytics over that history.
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Deque, Dict, Iterable, List, Optional, Tuple

import numpy as np

from .config import RateModelParams
from .core import BPS, SECONDS_PER_YEAR

DEFAULT_HISTORY_SIZE = 256


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def calculate_utilization(total_borrowed: Decimal, available_supply: Decimal) -> int:
    """
    Utilization in basis points, clamped to [0, 10000].

    Zero when nothing is borrowed and nothing is available.
    """
    denominator = total_borrowed + available_supply
    if denominator <= 0:
        return 0
    utilization = int(total_borrowed * BPS // denominator)
    return max(0, min(BPS, utilization))


def calculate_borrow_rate(utilization_bp: int, params: RateModelParams) -> int:
    """Annual borrow rate (bp) on the kinked curve, capped at max_rate_bp."""
    optimal = params.optimal_utilization_bp
    if utilization_bp <= optimal:
        rate = params.base_rate_bp + utilization_bp * params.slope1_bp // optimal
    else:
        excess = utilization_bp - optimal
        rate = params.base_rate_bp + params.slope1_bp + excess * params.slope2_bp // (BPS - optimal)
    return min(rate, params.max_rate_bp)


def calculate_supply_rate(borrow_rate_bp: int, utilization_bp: int, reserve_factor_bp: int) -> int:
    """Annual supply rate (bp): what lenders earn after the reserve factor."""
    return borrow_rate_bp * utilization_bp * (BPS - reserve_factor_bp) // (BPS * BPS)


def calculate_interest(principal: Decimal, rate_bp: int, elapsed_seconds: int) -> Decimal:
    """
    Simple interest on principal over elapsed seconds (unrounded).

    interest = principal * rate * elapsed / (10000 * SECONDS_PER_YEAR)
    """
    if elapsed_seconds <= 0 or rate_bp <= 0 or principal <= 0:
        return Decimal("0")
    return principal * rate_bp * elapsed_seconds / Decimal(BPS * SECONDS_PER_YEAR)


def calculate_rates(utilization_bp: int, params: RateModelParams) -> Tuple[int, int]:
    """Return (borrow_rate_bp, supply_rate_bp) for a utilization."""
    borrow = calculate_borrow_rate(utilization_bp, params)
    return borrow, calculate_supply_rate(borrow, utilization_bp, params.reserve_factor_bp)


# ============================================================================
# RATE HISTORY
# ============================================================================

@dataclass(frozen=True, slots=True)
class RateSample:
    timestamp: datetime
    borrow_rate: int
    supply_rate: int
    utilization: int


class InterestRateModel:
    """
    One market's rate curve with a ring buffer of recent samples.

    Example:
        model = InterestRateModel(RateModelParams(), history_size=100)
        borrow, supply = model.rates(8500)
        model.record(now, 8500)
        model.statistics()["borrow_rate"]["mean"]
    """

    def __init__(
        self,
        params: RateModelParams,
        history_size: int = DEFAULT_HISTORY_SIZE,
        history: Optional[Iterable[RateSample]] = None,
    ):
        params.validate()
        if history_size <= 0:
            raise ValueError(f"history_size must be positive, got {history_size}")
        self.params = params
        self._history: Deque[RateSample] = deque(history or (), maxlen=history_size)

    @property
    def history_size(self) -> int:
        return self._history.maxlen

    def rates(self, utilization_bp: int) -> Tuple[int, int]:
        return calculate_rates(utilization_bp, self.params)

    def record(self, timestamp: datetime, utilization_bp: int) -> RateSample:
        """Append a sample; the oldest one is evicted once the ring is full."""
        borrow, supply = self.rates(utilization_bp)
        sample = RateSample(timestamp, borrow, supply, utilization_bp)
        self._history.append(sample)
        return sample

    def history(self) -> List[RateSample]:
        return list(self._history)

    def latest(self) -> Optional[RateSample]:
        return self._history[-1] if self._history else None

    def statistics(self) -> Dict[str, Dict[str, float]]:
        """
        Summary statistics over the retained history.

        Returns:
            {"borrow_rate": {...}, "supply_rate": {...}, "utilization": {...}}
            each with count, mean, min, max, p50 and p95. Empty when no samples.
        """
        if not self._history:
            return {}
        columns = {
            "borrow_rate": np.array([s.borrow_rate for s in self._history], dtype=float),
            "supply_rate": np.array([s.supply_rate for s in self._history], dtype=float),
            "utilization": np.array([s.utilization for s in self._history], dtype=float),
        }
        return {
            name: {
                "count": int(values.size),
                "mean": float(np.mean(values)),
                "min": float(np.min(values)),
                "max": float(np.max(values)),
                "p50": float(np.percentile(values, 50)),
                "p95": float(np.percentile(values, 95)),
            }
            for name, values in columns.items()
        }

    def rate_curve(self, n_points: int = 101) -> Dict[str, np.ndarray]:
        """
        Sample the curve across the full utilization range.

        Returns:
            Dict of equal-length integer arrays: utilization, borrow_rate, supply_rate
        """
        if n_points < 2:
            raise ValueError("n_points must be at least 2")
        utilizations = np.linspace(0, BPS, n_points).round().astype(int)
        pairs = [self.rates(int(u)) for u in utilizations]
        return {
            "utilization": utilizations,
            "borrow_rate": np.array([b for b, _ in pairs], dtype=int),
            "supply_rate": np.array([s for _, s in pairs], dtype=int),
        }
