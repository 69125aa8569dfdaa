import logging
from typing import Iterable, List

from reserve_audit.errors import StructuralInvariantViolation
from reserve_audit.models import LiquidityInterval, LiquidityTick

logger = logging.getLogger(__name__)


def reconstruct_intervals(ticks: Iterable[LiquidityTick], pool=None) -> List[LiquidityInterval]:
    """
    Turns one pool's liquidity ticks into the closed intervals they describe.

    Ticks are swept left to right with a stack of ranges still open. A closing
    tick is matched against the most recently opened range first, since that
    range is the innermost one at this point, and may close several ranges (or
    part of one) in a single step.

    Raises StructuralInvariantViolation when the ticks do not pair up.
    """
    ordered = sorted(ticks, key=lambda t: t.index)
    intervals = []
    # [index, remaining liquidity, sign] of ticks still waiting for a closing match
    open_ticks: List[list] = []

    last_index = None
    for tick in ordered:
        if tick.index == last_index:
            raise StructuralInvariantViolation(pool, f"duplicate tick index {tick.index}")
        last_index = tick.index

        if tick.liquidity_change == 0:
            logger.debug("pool=%s skipping empty tick %d", pool, tick.index)
            continue

        if not open_ticks or tick.sign:
            open_ticks.append([tick.index, tick.liquidity_change, tick.sign])
            continue

        remaining = tick.liquidity_change
        while remaining > 0 and open_ticks:
            prev = open_ticks[-1]
            prev_index, prev_remaining, prev_sign = prev
            if not prev_sign:
                raise StructuralInvariantViolation(
                    pool, f"closing tick {prev_index} has no open range below it"
                )

            if remaining >= prev_remaining:
                open_ticks.pop()
                intervals.append(LiquidityInterval(prev_index, tick.index, prev_remaining))
                remaining -= prev_remaining
            else:
                intervals.append(LiquidityInterval(prev_index, tick.index, remaining))
                prev[1] = prev_remaining - remaining
                remaining = 0

        if remaining > 0:
            raise StructuralInvariantViolation(
                pool, f"tick {tick.index} closes {remaining} more liquidity than was opened"
            )

    if open_ticks:
        unmatched = ", ".join(str(index) for index, _, _ in open_ticks)
        raise StructuralInvariantViolation(pool, f"ticks were not emptied, unmatched: {unmatched}")

    return intervals
