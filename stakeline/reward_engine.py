"""
Reward accrual math.

Rates are percent per second. The on-ledger program accrues simple
interest since the last harvest; everything that affects principal goes
through ``pending_reward``. ``projected_yields`` and ``compounding_apy`` are
display figures only.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal
from fractions import Fraction
from typing import Dict, Union

from stakeline.errors import ValidationError

# Calibration pair: 12000 basis points is 0.00000125 percent per second.
REF_BASIS_POINTS = 12000
REF_RATE_PER_SECOND = Fraction("0.00000125")
MAX_RATE_BASIS_POINTS = 1_200_000

SECONDS_PER_DAY = 86400
SECONDS_PER_WEEK = SECONDS_PER_DAY * 7
SECONDS_PER_MONTH = SECONDS_PER_DAY * 30
SECONDS_PER_YEAR = SECONDS_PER_DAY * 365

Number = Union[int, float, Fraction, Decimal]


def _exact(rate: Number) -> Fraction:
    # Floats are taken at the decimal value they print as, so 1.25e-06 is exactly 1/800000.
    if isinstance(rate, float):
        return Fraction(repr(rate))
    return Fraction(rate)


def rate_fraction(basis_points: int) -> Fraction:
    """Exact percent-per-second rate for ``basis_points``."""
    if isinstance(basis_points, bool) or not isinstance(basis_points, int):
        raise ValidationError(f"Basis points must be an integer, got {basis_points!r}")
    if basis_points < 0:
        raise ValidationError(f"Basis points must be non-negative, got {basis_points}")
    return basis_points * REF_RATE_PER_SECOND / REF_BASIS_POINTS


def rate_per_second(basis_points: int) -> float:
    return float(rate_fraction(basis_points))


def pending_reward(snapshot, rate: Number, now: int) -> int:
    """
    Raw reward accrued since ``snapshot.last_harvest_time``.

    reward = staked * (rate / 100) * elapsed, truncated toward zero like
    the program's own integer cast. A clock behind the last harvest
    accrues nothing.
    """
    elapsed = now - snapshot.last_harvest_time
    if elapsed <= 0 or snapshot.staked_amount_raw <= 0:
        return 0
    reward = snapshot.staked_amount_raw * (_exact(rate) / 100) * elapsed
    return int(reward)


def can_harvest(snapshot, threshold_raw: int, rate: Number, now: int) -> bool:
    return pending_reward(snapshot, rate, now) >= threshold_raw


def apply_harvest(snapshot, confirmed_at: int, reward_raw: int):
    """Snapshot after a harvest; the clock restarts at confirmation time."""
    return snapshot.harvested(confirmed_at, reward_raw)


def to_raw(amount: Union[str, int, float, Decimal], decimals: int) -> int:
    """Human amount to raw units, truncating dust below one raw unit."""
    try:
        value = Decimal(str(amount))
    except ArithmeticError as exc:
        raise ValidationError(f"Invalid amount {amount!r}") from exc
    if not value.is_finite():
        raise ValidationError(f"Invalid amount {amount!r}")
    scaled = (value * (Decimal(10) ** decimals)).quantize(Decimal(1), rounding=ROUND_DOWN)
    return int(scaled)


def from_raw(raw: int, decimals: int) -> Decimal:
    return Decimal(raw) / (Decimal(10) ** decimals)


def projected_yields(rate: Number) -> Dict[str, float]:
    """Linear percent returns per period for display."""
    per_second = _exact(rate)
    return {
        "rate_per_second": float(per_second),
        "daily": float(per_second * SECONDS_PER_DAY),
        "weekly": float(per_second * SECONDS_PER_WEEK),
        "monthly": float(per_second * SECONDS_PER_MONTH),
        "yearly": float(per_second * SECONDS_PER_YEAR),
    }


def compounding_apy(rate: Number, periods_per_year: int = 365) -> float:
    """Annual percent yield if rewards were restaked ``periods_per_year`` times."""
    yearly = float(_exact(rate)) * SECONDS_PER_YEAR / 100
    return ((1 + yearly / periods_per_year) ** periods_per_year - 1) * 100
