from dataclasses import dataclass, field
from decimal import Decimal, localcontext, ROUND_FLOOR
from functools import lru_cache
from typing import Callable, Optional, Tuple

from reserve_audit.errors import InvalidPriceBound

TICK_BASE = Decimal("1.0001")
PRECISION = 78 # Sufficient precision for 256-bit fixed point

INVARIANT_ONE = 10**24

# sqrt(1.0001)^(2^k) at 24 decimals, one factor per bit of |tick|
INVARIANT_TICK_FACTORS = (
    1000049998750062496094023,
    1000100000000000000000000,
    1000200010000000000000000,
    1000400060004000100000000,
    1000800280056007000560028,
    1001601200560182043688009,
    1003204964963598014666528,
    1006420201727613920156533,
    1012881622445451097078095,
    1025929181087729343658708,
    1052530684607338948386589,
    1107820842039993613899215,
    1227267018058200482050503,
    1506184333613467388107955,
    2268591246822644826925609,
    5146506245160322222537991,
    26486526531474198664033811,
    701536087702486644953017488,
    492152882348911033633683861778,
    242214459604341065650571799093539783,
)


class TickOutOfBounds(ValueError):
    pass


@lru_cache(maxsize=65536)
def _sqrt_price(tick: int, price_denominator: int) -> int:
    with localcontext() as ctx:
        ctx.prec = PRECISION
        # price(i) = 1.0001^i, so sqrtPrice(i) = 1.0001^(i/2)
        sqrt_price = TICK_BASE ** (Decimal(tick) / Decimal(2))
        scaled = sqrt_price * Decimal(price_denominator)
        return int(scaled.to_integral_value(rounding=ROUND_FLOOR))


@lru_cache(maxsize=65536)
def invariant_sqrt_price(tick: int) -> int:
    """
    Sqrt price at `tick` exactly as the Invariant pool stores it: the product of
    the per-bit factors, truncated after every multiplication. Negative ticks
    take the truncated reciprocal of the positive side.
    """
    sqrt_price = INVARIANT_ONE
    for bit, factor in enumerate(INVARIANT_TICK_FACTORS):
        if abs(tick) & (1 << bit):
            sqrt_price = sqrt_price * factor // INVARIANT_ONE
    if tick >= 0:
        return sqrt_price
    return INVARIANT_ONE * INVARIANT_ONE // sqrt_price


def get_delta_x(sqrt_price_a: int, sqrt_price_b: int, liquidity: int, curve: "Curve") -> int:
    """Token X between two sqrt prices: L * (b - a) / (a * b), rounded down."""
    sp_low, sp_high = min(sqrt_price_a, sqrt_price_b), max(sqrt_price_a, sqrt_price_b)
    if sp_low <= 0:
        raise InvalidPriceBound(f"Sqrt price must be positive, got {sp_low}")
    nominator = liquidity * (sp_high - sp_low) * curve.price_denominator
    denominator = sp_low * sp_high * curve.liquidity_denominator
    return nominator // denominator


def get_delta_y(sqrt_price_a: int, sqrt_price_b: int, liquidity: int, curve: "Curve") -> int:
    """Token Y between two sqrt prices: L * (b - a), rounded down."""
    delta = abs(sqrt_price_b - sqrt_price_a)
    return liquidity * delta // (curve.price_denominator * curve.liquidity_denominator)


@dataclass(frozen=True)
class Curve:
    """Fixed-point convention of one concentrated-liquidity deployment."""
    name: str
    price_denominator: int
    liquidity_denominator: int
    min_tick: int
    max_tick: int
    # exact on-chain tick pricing, the 1.0001 power is used when unset
    tick_pricing: Optional[Callable[[int], int]] = field(default=None, compare=False, repr=False)

    def sqrt_price_at_tick(self, tick: int) -> int:
        if not (self.min_tick <= tick <= self.max_tick):
            raise TickOutOfBounds(f"Tick {tick} is out of bounds [{self.min_tick}, {self.max_tick}]")
        if self.tick_pricing is not None:
            return self.tick_pricing(tick)
        return _sqrt_price(tick, self.price_denominator)

    def calculate_amount_delta(
        self,
        current_tick_index: int,
        current_sqrt_price: int,
        liquidity: int,
        upper_tick: int,
        lower_tick: int,
    ) -> Tuple[int, int]:
        """
        Token amounts backing `liquidity` on [lower_tick, upper_tick] at the pool's
        current position, rounded down as when liquidity is withdrawn.
        The active region is picked by tick index, like the pool itself does.
        """
        if upper_tick < lower_tick:
            raise ValueError(f"Upper tick {upper_tick} below lower tick {lower_tick}")
        if current_sqrt_price <= 0:
            raise InvalidPriceBound(f"Current sqrt price must be positive, got {current_sqrt_price}")
        if liquidity == 0:
            return 0, 0

        sqrt_lower = self.sqrt_price_at_tick(lower_tick)
        sqrt_upper = self.sqrt_price_at_tick(upper_tick)

        amount_x = 0
        amount_y = 0
        if current_tick_index < lower_tick:
            # Price is below the range, liquidity is all token X
            amount_x = get_delta_x(sqrt_lower, sqrt_upper, liquidity, self)
        elif current_tick_index < upper_tick:
            # Price is within the range, liquidity is mixed
            amount_x = get_delta_x(current_sqrt_price, sqrt_upper, liquidity, self)
            amount_y = get_delta_y(sqrt_lower, current_sqrt_price, liquidity, self)
        else:
            # Price is above the range, liquidity is all token Y
            amount_y = get_delta_y(sqrt_lower, sqrt_upper, liquidity, self)
        return amount_x, amount_y


INVARIANT_CURVE = Curve(
    name="invariant",
    price_denominator=10**24,
    liquidity_denominator=10**6,
    min_tick=-221_818,
    max_tick=221_818,
    tick_pricing=invariant_sqrt_price,
)

UNISWAP_V4_CURVE = Curve(
    name="uniswap-v4",
    price_denominator=1 << 96,
    liquidity_denominator=1,
    min_tick=-887_272,
    max_tick=887_272,
)

CURVES = {curve.name: curve for curve in (INVARIANT_CURVE, UNISWAP_V4_CURVE)}


def get_curve(name: str) -> Curve:
    try:
        return CURVES[name]
    except KeyError:
        raise ValueError(f"Unknown curve '{name}', expected one of {sorted(CURVES)}") from None
