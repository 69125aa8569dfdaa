"""Builders shared by the test modules."""

from reserve_audit.curve import INVARIANT_CURVE
from reserve_audit.ledger import (
    POOLS_MAPPING_SLOT_INDEX,
    TICK_BITMAP_OFFSET,
    TICKS_OFFSET,
    calculate_mapping_slot,
    calculate_nested_mapping_slot,
    offset_slot,
)
from reserve_audit.models import FeeTier, LiquidityTick, PoolKey, PoolSnapshot, PoolState

TOKEN_X = "0x1111111111111111111111111111111111111111"
TOKEN_Y = "0x2222222222222222222222222222222222222222"
TOKEN_Z = "0x3333333333333333333333333333333333333333"

PRICE_ONE = INVARIANT_CURVE.price_denominator


def make_pool(token_x, token_y, ticks, sqrt_price=PRICE_ONE, tick_index=0, fee_x=0, fee_y=0, fee=100):
    state = PoolState(
        token_x=token_x,
        token_y=token_y,
        current_sqrt_price=sqrt_price,
        current_tick_index=tick_index,
        fee_protocol_token_x=fee_x,
        fee_protocol_token_y=fee_y,
    )
    return PoolSnapshot(PoolKey(token_x, token_y, FeeTier(fee=fee, tick_spacing=1)), state, list(ticks))


def position_ticks(lower, upper, liquidity):
    return [LiquidityTick(lower, True, liquidity), LiquidityTick(upper, False, liquidity)]


class FakeCall:
    def __init__(self, value):
        self.value = value

    async def call(self, block_identifier=None):
        if isinstance(self.value, Exception):
            raise self.value
        return self.value


class FakeFunctions:
    def __init__(self, value):
        self.value = value

    def balanceOf(self, owner):
        return FakeCall(self.value)


class FakeContract:
    def __init__(self, value):
        self.functions = FakeFunctions(value)


class FakeEth:
    """Answers balance lookups from `balances` and storage reads from `storage` (slot -> bytes)."""

    def __init__(self, balances=None, native=0, storage=None):
        self.balances = balances or {}
        self.native = native
        self.storage = storage or {}
        self.storage_reads = 0

    def contract(self, address, abi):
        return FakeContract(self.balances[address])

    async def get_balance(self, account, block_identifier=None):
        return self.native

    async def get_storage_at(self, account, position, block_identifier=None):
        self.storage_reads += 1
        return self.storage.get(position, bytes(32))


class FakeWeb3:
    def __init__(self, balances=None, native=0, storage=None):
        self.eth = FakeEth(balances, native, storage)


def pool_manager_storage(pool_id, sqrt_price_x96, tick, lp_fee, tick_spacing, liquidity_net):
    """PoolManager storage words for one pool with the given liquidityNet per tick."""
    state_slot = calculate_mapping_slot(pool_id, POOLS_MAPPING_SLOT_INDEX)
    ticks_slot = offset_slot(state_slot, TICKS_OFFSET)
    bitmap_slot = offset_slot(state_slot, TICK_BITMAP_OFFSET)

    slot0 = sqrt_price_x96 | ((tick % (1 << 24)) << 160) | (lp_fee << 208)
    storage = {int(state_slot, 16): slot0.to_bytes(32, "big")}
    words = {}
    for t, net in liquidity_net.items():
        compressed = t // tick_spacing
        words[compressed // 256] = words.get(compressed // 256, 0) | (1 << (compressed % 256))
        info = (net % (1 << 128)).to_bytes(16, "big") + abs(net).to_bytes(16, "big")
        storage[int(calculate_nested_mapping_slot(t, ticks_slot), 16)] = info
    for word, bits in words.items():
        storage[int(calculate_nested_mapping_slot(word, bitmap_slot), 16)] = bits.to_bytes(32, "big")
    return storage
