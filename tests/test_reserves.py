import pytest

from reserve_audit.curve import INVARIANT_CURVE, UNISWAP_V4_CURVE, TickOutOfBounds, get_curve
from reserve_audit.errors import InvalidPriceBound, ReserveArithmeticError
from reserve_audit.models import LiquidityInterval, PoolState
from reserve_audit.reserves import (
    CalculationMode,
    LegAmount,
    ReserveCalculator,
    compute_amount_x,
    compute_amount_y,
    degrade_to_zero,
)
from tests.helpers import PRICE_ONE, TOKEN_X, TOKEN_Y

CURVE = INVARIANT_CURVE
# one million liquidity units at the 10**6 liquidity scale
L = 10**12
LOWER = PRICE_ONE
UPPER = 2 * PRICE_ONE


def state(sqrt_price=PRICE_ONE, tick=0):
    return PoolState(TOKEN_X, TOKEN_Y, current_sqrt_price=sqrt_price, current_tick_index=tick)


class TestSqrtPriceAtTick:

    def test_tick_zero_is_one(self):
        assert CURVE.sqrt_price_at_tick(0) == PRICE_ONE
        assert UNISWAP_V4_CURVE.sqrt_price_at_tick(0) == 1 << 96

    def test_even_ticks_are_exact_powers(self):
        assert CURVE.sqrt_price_at_tick(2) == 1000100000000000000000000
        assert CURVE.sqrt_price_at_tick(-2) == 999900009999000099990000

    def test_monotonic(self):
        prices = [CURVE.sqrt_price_at_tick(t) for t in range(-50, 51)]
        assert prices == sorted(prices)
        assert len(set(prices)) == len(prices)

    def test_out_of_bounds(self):
        with pytest.raises(TickOutOfBounds):
            CURVE.sqrt_price_at_tick(CURVE.max_tick + 1)

    def test_min_tick_matches_protocol_minimum(self):
        # published MIN_SQRT_PRICE keeps 8 significant digits, MAX_SQRT_PRICE 17
        assert abs(CURVE.sqrt_price_at_tick(CURVE.min_tick) - 15258932000000000000) < 10**12
        assert abs(CURVE.sqrt_price_at_tick(CURVE.max_tick) - 65535383934512647000000000000) < 10**14

    @pytest.mark.parametrize("tick, expected", [
        (20_000, 2718145926825224864037656),
        (-20_000, 367897834377123709894002),
        (200_000, 22015456048552198645701365772),
        (-200_000, 45422633889328990341),
    ])
    def test_matches_protocol_values(self, tick, expected):
        assert CURVE.sqrt_price_at_tick(tick) == expected

    def test_uniswap_uses_power(self):
        assert UNISWAP_V4_CURVE.sqrt_price_at_tick(2) == (10001 * (1 << 96)) // 10000

    def test_unknown_curve(self):
        with pytest.raises(ValueError):
            get_curve("constant-product")


class TestIndependentFormulas:

    def test_price_below_range(self):
        current = PRICE_ONE // 2
        assert compute_amount_x(L, LOWER, current, UPPER, CURVE) == 500000
        assert compute_amount_y(L, LOWER, current, UPPER, CURVE) == 0

    def test_price_above_range(self):
        current = 3 * PRICE_ONE
        assert compute_amount_x(L, LOWER, current, UPPER, CURVE) == 0
        assert compute_amount_y(L, LOWER, current, UPPER, CURVE) == 1000000

    def test_price_at_lower_bound(self):
        assert compute_amount_y(L, LOWER, LOWER, UPPER, CURVE) == 0
        assert compute_amount_x(L, LOWER, LOWER, UPPER, CURVE) == 500000

    def test_price_at_upper_bound(self):
        assert compute_amount_x(L, LOWER, UPPER, UPPER, CURVE) == 0
        assert compute_amount_y(L, LOWER, UPPER, UPPER, CURVE) == 1000000

    def test_price_inside_range(self):
        current = 3 * PRICE_ONE // 2
        assert compute_amount_x(L, LOWER, current, UPPER, CURVE) == 166666
        assert compute_amount_y(L, LOWER, current, UPPER, CURVE) == 500000

    @pytest.mark.parametrize("bounds", [(0, PRICE_ONE, UPPER), (LOWER, 0, UPPER), (LOWER, PRICE_ONE, -1)])
    def test_non_positive_price(self, bounds):
        lower, current, upper = bounds
        with pytest.raises(InvalidPriceBound):
            compute_amount_x(L, lower, current, upper, CURVE)
        with pytest.raises(InvalidPriceBound):
            compute_amount_y(L, lower, current, upper, CURVE)

    def test_overflow(self):
        with pytest.raises(ReserveArithmeticError):
            compute_amount_y(1 << 200, 1, 1 << 100, 1 << 101, CURVE)

    def test_denominator_truncated_to_zero(self):
        with pytest.raises(ReserveArithmeticError):
            compute_amount_x(L, 1, 1, 2, CURVE)


class TestDegradeToZero:

    def test_computed_zero_is_not_a_fallback(self):
        leg = degrade_to_zero(compute_amount_y, L, LOWER, LOWER, UPPER, CURVE)
        assert leg == LegAmount(0)
        assert not leg.defaulted

    def test_failure_substitutes_zero(self, caplog):
        leg = degrade_to_zero(compute_amount_x, L, 0, PRICE_ONE, UPPER, CURVE, pool="p", leg="x")
        assert leg.value == 0
        assert leg.defaulted
        assert "InvalidPriceBound" in leg.fallback
        assert "pool=p leg=x" in caplog.text

    def test_non_arithmetic_errors_propagate(self):
        def broken(*args):
            raise KeyError("boom")

        with pytest.raises(KeyError):
            degrade_to_zero(broken)


class TestReserveCalculator:
    interval = LiquidityInterval(-2, 2, L)

    def test_delegating_inside_range(self):
        reserves = ReserveCalculator(CURVE).amounts_for(self.interval, state())
        assert (reserves.amount_x.value, reserves.amount_y.value) == (99, 99)
        assert reserves.discrepancy is None

    def test_delegating_uses_tick_to_pick_region(self):
        calculator = ReserveCalculator(CURVE)
        below = calculator.amounts_for(self.interval, state(CURVE.sqrt_price_at_tick(-5), -5))
        above = calculator.amounts_for(self.interval, state(CURVE.sqrt_price_at_tick(5), 5))
        assert below.amount_y.value == 0 and below.amount_x.value > 0
        assert above.amount_x.value == 0 and above.amount_y.value > 0

    def test_independent_matches_delegating_on_consistent_state(self):
        delegated = ReserveCalculator(CURVE, CalculationMode.DELEGATING).amounts_for(self.interval, state())
        independent = ReserveCalculator(CURVE, CalculationMode.INDEPENDENT).amounts_for(self.interval, state())
        assert delegated.amount_x == independent.amount_x
        assert delegated.amount_y == independent.amount_y

    def test_independent_degrades_on_zero_price(self):
        reserves = ReserveCalculator(CURVE, "independent").amounts_for(self.interval, state(sqrt_price=0))
        assert reserves.amount_x.defaulted and reserves.amount_y.defaulted
        assert (reserves.amount_x.value, reserves.amount_y.value) == (0, 0)

    def test_delegating_does_not_degrade(self):
        with pytest.raises(InvalidPriceBound):
            ReserveCalculator(CURVE).amounts_for(self.interval, state(sqrt_price=0))

    def test_cross_check_agrees(self):
        reserves = ReserveCalculator(CURVE, CalculationMode.CROSS_CHECK).amounts_for(self.interval, state())
        assert reserves.discrepancy is None

    def test_cross_check_flags_disagreement(self, caplog):
        # tick says inside the range, sqrt price says above it
        inconsistent = state(sqrt_price=3 * PRICE_ONE, tick=0)
        reserves = ReserveCalculator(CURVE, CalculationMode.CROSS_CHECK).amounts_for(
            self.interval, inconsistent, pool="p"
        )
        assert reserves.discrepancy is not None
        assert reserves.discrepancy.independent[0] == 0
        assert reserves.discrepancy.delegated == (reserves.amount_x.value, reserves.amount_y.value)
        assert "pool=p interval=[-2, 2]" in caplog.text

    def test_cross_check_tolerance(self):
        # a few units apart: price just past the upper bound while the tick still says inside
        inconsistent = state(sqrt_price=CURVE.sqrt_price_at_tick(2) + 6 * 10**18, tick=0)
        strict = ReserveCalculator(CURVE, CalculationMode.CROSS_CHECK)
        loose = ReserveCalculator(CURVE, CalculationMode.CROSS_CHECK, tolerance=10)
        assert strict.amounts_for(self.interval, inconsistent).discrepancy is not None
        assert loose.amounts_for(self.interval, inconsistent).discrepancy is None

    def test_scenario_a(self):
        """One [-10, 10] position around the current price locks both tokens."""
        interval = LiquidityInterval(-10, 10, 1000 * 10**10)
        reserves = ReserveCalculator(CURVE).amounts_for(interval, state())
        assert reserves.amount_x.value > 0
        assert reserves.amount_y.value > 0

    def test_pool_on_upper_tick_holds_no_x(self):
        upper = 20_000
        on_upper = state(sqrt_price=CURVE.sqrt_price_at_tick(upper), tick=upper)
        interval = LiquidityInterval(0, upper, 10**32)

        independent = ReserveCalculator(CURVE, CalculationMode.INDEPENDENT).amounts_for(interval, on_upper)
        assert independent.amount_x == LegAmount(0)

        checked = ReserveCalculator(CURVE, CalculationMode.CROSS_CHECK).amounts_for(interval, on_upper)
        assert checked.discrepancy is None
        assert checked.amount_y == independent.amount_y
