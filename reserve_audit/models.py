from dataclasses import dataclass, field
from typing import Dict, Iterable, List

# token identifier -> required raw amount
ReserveRequirement = Dict[str, int]


@dataclass(frozen=True)
class LiquidityTick:
    """Position boundary: sign=True opens liquidity at index, sign=False closes it."""
    index: int
    sign: bool
    liquidity_change: int

    def __post_init__(self):
        if self.liquidity_change < 0:
            raise ValueError(f"Tick {self.index} liquidity change must be unsigned, got {self.liquidity_change}")


@dataclass(frozen=True)
class LiquidityInterval:
    lower_index: int
    upper_index: int
    liquidity: int

    def __post_init__(self):
        if self.lower_index >= self.upper_index:
            raise ValueError(
                f"Interval lower {self.lower_index} must be below upper {self.upper_index}"
            )
        if self.liquidity <= 0:
            raise ValueError(f"Interval liquidity must be positive, got {self.liquidity}")


@dataclass(frozen=True)
class FeeTier:
    fee: int
    tick_spacing: int


@dataclass(frozen=True)
class PoolKey:
    token_x: str
    token_y: str
    fee_tier: FeeTier

    def __str__(self) -> str:
        return f"{self.token_x}/{self.token_y}@{self.fee_tier.fee}:{self.fee_tier.tick_spacing}"


@dataclass(frozen=True)
class PoolState:
    token_x: str
    token_y: str
    current_sqrt_price: int
    current_tick_index: int
    fee_protocol_token_x: int = 0
    fee_protocol_token_y: int = 0


@dataclass(frozen=True)
class PoolSnapshot:
    """One pool as handed over by the pool/tick source, at a single point in time."""
    key: PoolKey
    state: PoolState
    ticks: List[LiquidityTick] = field(default_factory=list)

    @property
    def name(self) -> str:
        return str(self.key)


def ticks_from_liquidity_net(entries: Iterable[dict]) -> List[LiquidityTick]:
    """
    Converts Uniswap-style {"tick", "liquidityNet"} records into liquidity ticks.
    Positive net opens, negative net closes, zero net carries nothing and is dropped.
    """
    ticks = []
    for entry in entries:
        net = int(entry["liquidityNet"])
        if net == 0:
            continue
        ticks.append(LiquidityTick(index=int(entry["tick"]), sign=net > 0, liquidity_change=abs(net)))
    ticks.sort(key=lambda t: t.index)
    return ticks
