import logging
from dataclasses import dataclass
from enum import Enum
from typing import NamedTuple, Optional

from reserve_audit.curve import Curve
from reserve_audit.errors import InvalidPriceBound, ReserveArithmeticError
from reserve_audit.models import LiquidityInterval, PoolState

logger = logging.getLogger(__name__)

# The pool computes in 256-bit words
MAX_U256 = (1 << 256) - 1


def _checked(value: int, what: str) -> int:
    if value > MAX_U256:
        raise ReserveArithmeticError(f"{what} overflows 256 bits")
    return value


def _check_bounds(sqrt_lower: int, sqrt_current: int, sqrt_upper: int):
    if sqrt_lower <= 0 or sqrt_current <= 0 or sqrt_upper <= 0:
        raise InvalidPriceBound(
            f"Price cannot be lower or equal 0 (lower={sqrt_lower}, current={sqrt_current}, upper={sqrt_upper})"
        )


def compute_amount_x(liquidity: int, sqrt_lower: int, sqrt_current: int, sqrt_upper: int, curve: Curve) -> int:
    """Token X locked by `liquidity` on [sqrt_lower, sqrt_upper] at sqrt_current."""
    _check_bounds(sqrt_lower, sqrt_current, sqrt_upper)

    if sqrt_current >= sqrt_upper:
        return 0
    if sqrt_current < sqrt_lower:
        nominator = sqrt_upper - sqrt_lower
        denominator = _checked(sqrt_lower * sqrt_upper, "sqrt_lower * sqrt_upper") // curve.price_denominator
    else:
        nominator = sqrt_upper - sqrt_current
        denominator = _checked(sqrt_upper * sqrt_current, "sqrt_upper * sqrt_current") // curve.price_denominator

    if denominator == 0:
        raise ReserveArithmeticError("Denominator truncated to zero")
    return _checked(liquidity * nominator, "liquidity * nominator") // denominator // curve.liquidity_denominator


def compute_amount_y(liquidity: int, sqrt_lower: int, sqrt_current: int, sqrt_upper: int, curve: Curve) -> int:
    """Token Y locked by `liquidity` on [sqrt_lower, sqrt_upper] at sqrt_current."""
    _check_bounds(sqrt_lower, sqrt_current, sqrt_upper)

    if sqrt_current <= sqrt_lower:
        return 0
    if sqrt_current >= sqrt_upper:
        difference = sqrt_upper - sqrt_lower
    else:
        difference = sqrt_current - sqrt_lower

    product = _checked(liquidity * difference, "liquidity * difference")
    return product // curve.price_denominator // curve.liquidity_denominator


class LegAmount(NamedTuple):
    """
    Amount of one token leg. `fallback` is None when the value was computed,
    otherwise it holds the reason the leg was defaulted to zero.
    """
    value: int
    fallback: Optional[str] = None

    @property
    def defaulted(self) -> bool:
        return self.fallback is not None


def degrade_to_zero(fn, *args, pool=None, leg: str = "") -> LegAmount:
    """Runs one leg computation, substituting zero if its arithmetic fails."""
    try:
        return LegAmount(fn(*args))
    except ArithmeticError as e:
        logger.error("pool=%s leg=%s arithmetic failure, using 0: %s", pool, leg, e)
        return LegAmount(0, f"{type(e).__name__}: {e}")


class CalculationMode(str, Enum):
    DELEGATING = "delegating"
    INDEPENDENT = "independent"
    CROSS_CHECK = "cross-check"


@dataclass(frozen=True)
class CurveDiscrepancy:
    pool: str
    interval: LiquidityInterval
    delegated: tuple
    independent: tuple


@dataclass(frozen=True)
class IntervalReserves:
    interval: LiquidityInterval
    amount_x: LegAmount
    amount_y: LegAmount
    discrepancy: Optional[CurveDiscrepancy] = None


class ReserveCalculator:
    """
    Converts liquidity intervals into required token amounts.

    DELEGATING trusts the curve primitive, INDEPENDENT recomputes from the
    range formulas with a per-leg zero fallback, CROSS_CHECK reports the
    delegated amounts and records where the two disagree.
    """

    def __init__(self, curve: Curve, mode: CalculationMode = CalculationMode.DELEGATING, tolerance: int = 0):
        self.curve = curve
        self.mode = CalculationMode(mode)
        # per-leg difference allowed between the two implementations
        self.tolerance = tolerance

    def delegated(self, interval: LiquidityInterval, state: PoolState):
        x, y = self.curve.calculate_amount_delta(
            state.current_tick_index,
            state.current_sqrt_price,
            interval.liquidity,
            interval.upper_index,
            interval.lower_index,
        )
        return LegAmount(x), LegAmount(y)

    def independent(self, interval: LiquidityInterval, state: PoolState, pool=None):
        sqrt_lower = self.curve.sqrt_price_at_tick(interval.lower_index)
        sqrt_upper = self.curve.sqrt_price_at_tick(interval.upper_index)
        args = (interval.liquidity, sqrt_lower, state.current_sqrt_price, sqrt_upper, self.curve)
        amount_x = degrade_to_zero(compute_amount_x, *args, pool=pool, leg="x")
        amount_y = degrade_to_zero(compute_amount_y, *args, pool=pool, leg="y")
        return amount_x, amount_y

    def amounts_for(self, interval: LiquidityInterval, state: PoolState, pool=None) -> IntervalReserves:
        if self.mode is CalculationMode.INDEPENDENT:
            amount_x, amount_y = self.independent(interval, state, pool)
            return IntervalReserves(interval, amount_x, amount_y)

        amount_x, amount_y = self.delegated(interval, state)
        if self.mode is CalculationMode.DELEGATING:
            return IntervalReserves(interval, amount_x, amount_y)

        check_x, check_y = self.independent(interval, state, pool)
        discrepancy = None
        if (abs(check_x.value - amount_x.value) > self.tolerance
                or abs(check_y.value - amount_y.value) > self.tolerance):
            discrepancy = CurveDiscrepancy(
                pool=str(pool),
                interval=interval,
                delegated=(amount_x.value, amount_y.value),
                independent=(check_x.value, check_y.value),
            )
            logger.warning(
                "pool=%s interval=[%d, %d] curve=%s independent=%s",
                pool, interval.lower_index, interval.upper_index,
                discrepancy.delegated, discrepancy.independent,
            )
        return IntervalReserves(interval, amount_x, amount_y, discrepancy)
