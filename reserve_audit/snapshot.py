import json
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from reserve_audit.curve import Curve, INVARIANT_CURVE, get_curve
from reserve_audit.errors import SnapshotError
from reserve_audit.models import (
    FeeTier,
    LiquidityTick,
    PoolKey,
    PoolSnapshot,
    PoolState,
    ticks_from_liquidity_net,
)


@dataclass
class AuditSnapshot:
    """Everything one audit run reads: pools, custody address and optional balances."""
    curve: Curve
    pools: List[PoolSnapshot]
    custody: Optional[str] = None
    block: Optional[int] = None
    balances: Optional[Dict[str, Optional[int]]] = field(default=None)


def _int(value, what: str) -> int:
    # Big integers travel as decimal strings
    if isinstance(value, bool) or value is None:
        raise SnapshotError(f"{what}: expected an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise SnapshotError(f"{what}: expected an integer, got {value!r}") from None


def _amount(value, what: str) -> int:
    amount = _int(value, what)
    if amount < 0:
        raise SnapshotError(f"{what}: expected a non-negative amount, got {amount}")
    return amount


def _flag(value, what: str) -> bool:
    if not isinstance(value, bool):
        raise SnapshotError(f"{what}: expected true or false, got {value!r}")
    return value


def _parse_pool(entry: dict, position: int) -> PoolSnapshot:
    where = f"pools[{position}]"
    try:
        key = entry["key"]
        pool = entry["pool"]
        fee_tier = key.get("feeTier", {})
        pool_key = PoolKey(
            token_x=key["tokenX"],
            token_y=key["tokenY"],
            fee_tier=FeeTier(
                fee=_int(fee_tier.get("fee", 0), f"{where}.key.feeTier.fee"),
                tick_spacing=_int(fee_tier.get("tickSpacing", 1), f"{where}.key.feeTier.tickSpacing"),
            ),
        )
        state = PoolState(
            token_x=pool_key.token_x,
            token_y=pool_key.token_y,
            current_sqrt_price=_int(pool["sqrtPrice"], f"{where}.pool.sqrtPrice"),
            current_tick_index=_int(pool["currentTickIndex"], f"{where}.pool.currentTickIndex"),
            fee_protocol_token_x=_amount(pool.get("feeProtocolTokenX", 0), f"{where}.pool.feeProtocolTokenX"),
            fee_protocol_token_y=_amount(pool.get("feeProtocolTokenY", 0), f"{where}.pool.feeProtocolTokenY"),
        )
    except (KeyError, AttributeError, TypeError) as e:
        raise SnapshotError(f"{where}: missing or malformed field {e}") from None

    if "ticks" in entry:
        ticks = []
        for i, tick in enumerate(entry["ticks"]):
            try:
                ticks.append(LiquidityTick(
                    index=_int(tick["index"], f"{where}.ticks[{i}].index"),
                    sign=_flag(tick["sign"], f"{where}.ticks[{i}].sign"),
                    liquidity_change=_amount(tick["liquidityChange"], f"{where}.ticks[{i}].liquidityChange"),
                ))
            except (KeyError, TypeError) as e:
                raise SnapshotError(f"{where}.ticks[{i}]: missing field {e}") from None
        ticks.sort(key=lambda t: t.index)
    elif "liquidityNet" in entry:
        try:
            ticks = ticks_from_liquidity_net(entry["liquidityNet"])
        except (KeyError, TypeError, ValueError) as e:
            raise SnapshotError(f"{where}.liquidityNet: malformed entry {e}") from None
    else:
        raise SnapshotError(f"{where}: needs either 'ticks' or 'liquidityNet'")

    return PoolSnapshot(key=pool_key, state=state, ticks=ticks)


def parse_snapshot(data: dict) -> AuditSnapshot:
    if not isinstance(data, dict) or not isinstance(data.get("pools"), list):
        raise SnapshotError("Snapshot must be an object with a 'pools' list")

    try:
        curve = get_curve(data.get("curve", INVARIANT_CURVE.name))
    except ValueError as e:
        raise SnapshotError(str(e)) from None

    pools = [_parse_pool(entry, i) for i, entry in enumerate(data["pools"])]

    balances = None
    if data.get("balances") is not None:
        balances = {
            token: None if value is None else _amount(value, f"balances.{token}")
            for token, value in data["balances"].items()
        }

    block = data.get("block")
    return AuditSnapshot(
        curve=curve,
        pools=pools,
        custody=data.get("custody"),
        block=None if block is None else _int(block, "block"),
        balances=balances,
    )


def load_snapshot(path: str) -> AuditSnapshot:
    try:
        with open(path) as f:
            data = json.load(f)
    except FileNotFoundError:
        raise SnapshotError(f"Snapshot file {path} not found") from None
    except json.JSONDecodeError as e:
        raise SnapshotError(f"Snapshot file {path} is not valid JSON: {e}") from None
    return parse_snapshot(data)


def snapshot_to_dict(snapshot: AuditSnapshot) -> dict:
    pools = []
    for pool in snapshot.pools:
        pools.append({
            "key": {
                "tokenX": pool.key.token_x,
                "tokenY": pool.key.token_y,
                "feeTier": {"fee": pool.key.fee_tier.fee, "tickSpacing": pool.key.fee_tier.tick_spacing},
            },
            "pool": {
                "sqrtPrice": str(pool.state.current_sqrt_price),
                "currentTickIndex": pool.state.current_tick_index,
                "feeProtocolTokenX": str(pool.state.fee_protocol_token_x),
                "feeProtocolTokenY": str(pool.state.fee_protocol_token_y),
            },
            "ticks": [
                {"index": t.index, "sign": t.sign, "liquidityChange": str(t.liquidity_change)}
                for t in sorted(pool.ticks, key=lambda t: t.index) # Sort for consistency
            ],
        })

    data = {
        "curve": snapshot.curve.name,
        "custody": snapshot.custody,
        "block": snapshot.block,
        "pools": pools,
    }
    if snapshot.balances is not None:
        data["balances"] = {
            token: None if value is None else str(value) for token, value in snapshot.balances.items()
        }
    return data


def dump_snapshot(snapshot: AuditSnapshot, path: str):
    with open(path, "w") as f:
        json.dump(snapshot_to_dict(snapshot), f, indent=2)
