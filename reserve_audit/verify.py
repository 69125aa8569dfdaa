import logging
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from reserve_audit.models import ReserveRequirement

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenCheck:
    token: str
    required: int
    actual: int
    diff: int

    @property
    def shortfall(self) -> bool:
        return self.diff < 0


@dataclass(frozen=True)
class LookupMiss:
    token: str


@dataclass
class VerificationResult:
    checks: List[TokenCheck] = field(default_factory=list)
    misses: List[LookupMiss] = field(default_factory=list)

    @property
    def shortfalls(self) -> List[TokenCheck]:
        return [c for c in self.checks if c.shortfall]

    @property
    def ok(self) -> bool:
        return not self.shortfalls


def verify_reserves(requirement: ReserveRequirement, balances: Mapping[str, Optional[int]]) -> VerificationResult:
    """
    Compares required reserves with custodied balances, token by token.
    Every token is checked; a shortfall only flips the final verdict.
    """
    result = VerificationResult()
    for token, required in requirement.items():
        actual = balances.get(token)
        if actual is None:
            logger.warning("Failed to fetch balance for token=%s", token)
            result.misses.append(LookupMiss(token))
            continue

        check = TokenCheck(token=token, required=required, actual=actual, diff=actual - required)
        result.checks.append(check)
        if check.shortfall:
            logger.error(
                "Invalid balance token=%s required=%d actual=%d diff=%d",
                token, required, actual, check.diff,
            )
        else:
            logger.info("token=%s required=%d actual=%d diff=%d", token, required, actual, check.diff)
    return result
