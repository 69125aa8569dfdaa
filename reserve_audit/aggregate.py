import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import reduce
from typing import Iterable, List

from reserve_audit.errors import StructuralInvariantViolation
from reserve_audit.models import LiquidityInterval, PoolSnapshot, ReserveRequirement
from reserve_audit.reconstruct import reconstruct_intervals
from reserve_audit.reserves import CurveDiscrepancy, ReserveCalculator

logger = logging.getLogger(__name__)


def combine(a: ReserveRequirement, b: ReserveRequirement) -> ReserveRequirement:
    """Per-token sum of two requirements. Neither input is modified."""
    merged = dict(a)
    for token, amount in b.items():
        merged[token] = merged.get(token, 0) + amount
    return merged


def fold_requirements(requirements: Iterable[ReserveRequirement]) -> ReserveRequirement:
    return reduce(combine, requirements, {})


@dataclass
class PoolAudit:
    pool: str
    requirement: ReserveRequirement
    intervals: List[LiquidityInterval] = field(default_factory=list)
    # (interval, leg, reason) for every leg defaulted to zero
    fallbacks: List[tuple] = field(default_factory=list)
    discrepancies: List[CurveDiscrepancy] = field(default_factory=list)


@dataclass
class AuditResult:
    requirement: ReserveRequirement
    pools: List[PoolAudit]

    @property
    def fallbacks(self) -> List[tuple]:
        return [(audit.pool,) + entry for audit in self.pools for entry in audit.fallbacks]

    @property
    def discrepancies(self) -> List[CurveDiscrepancy]:
        return [d for audit in self.pools for d in audit.discrepancies]


def audit_pool(snapshot: PoolSnapshot, calculator: ReserveCalculator) -> PoolAudit:
    """Reserve requirement of one pool: locked liquidity plus protocol fees."""
    state = snapshot.state
    intervals = reconstruct_intervals(snapshot.ticks, pool=snapshot.name)

    liquidity_x = 0
    liquidity_y = 0
    audit = PoolAudit(pool=snapshot.name, requirement={}, intervals=intervals)
    for interval in intervals:
        reserves = calculator.amounts_for(interval, state, pool=snapshot.name)
        liquidity_x += reserves.amount_x.value
        liquidity_y += reserves.amount_y.value
        for leg, amount in (("x", reserves.amount_x), ("y", reserves.amount_y)):
            if amount.defaulted:
                audit.fallbacks.append((interval, leg, amount.fallback))
        if reserves.discrepancy is not None:
            audit.discrepancies.append(reserves.discrepancy)

    # X and Y can be the same token only in malformed input, combine keeps that correct
    audit.requirement = combine(
        {state.token_x: liquidity_x + state.fee_protocol_token_x},
        {state.token_y: liquidity_y + state.fee_protocol_token_y},
    )
    logger.debug(
        "pool=%s intervals=%d x=%d y=%d", snapshot.name, len(intervals), liquidity_x, liquidity_y
    )
    return audit


def audit_pools(snapshots: Iterable[PoolSnapshot], calculator: ReserveCalculator, workers: int = 1) -> AuditResult:
    """
    Audits every pool and folds their requirements together.
    Pools are independent, so they may run on a thread pool; the fold is done
    in input order either way and gives identical totals.
    """
    snapshots = list(snapshots)
    try:
        if workers <= 1:
            audits = [audit_pool(s, calculator) for s in snapshots]
        else:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                audits = list(executor.map(lambda s: audit_pool(s, calculator), snapshots))
    except StructuralInvariantViolation as e:
        logger.error("pool=%s reason=%s", e.pool, e.reason)
        raise

    requirement = fold_requirements(audit.requirement for audit in audits)
    return AuditResult(requirement=requirement, pools=audits)
