import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from eth_abi.packed import encode_packed
from eth_typing import HexStr
from web3 import AsyncWeb3, Web3

from reserve_audit.config import CONCURRENCY
from reserve_audit.curve import UNISWAP_V4_CURVE
from reserve_audit.models import FeeTier, LiquidityTick, PoolKey, PoolSnapshot, PoolState, ticks_from_liquidity_net

logger = logging.getLogger(__name__)

# --- Constants based on V4 Layout ---
POOLS_MAPPING_SLOT_INDEX = 6
TICKS_OFFSET = 4 # Pool.State.ticks offset
TICK_BITMAP_OFFSET = 5 # Pool.State.tickBitmap offset

NATIVE_CURRENCY = "0x0000000000000000000000000000000000000000"

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    }
]


# --- Balance Source ---
async def fetch_balances(
    w3: AsyncWeb3,
    custody: str,
    tokens: Iterable[str],
    block="latest",
    concurrency: int = CONCURRENCY,
) -> Dict[str, Optional[int]]:
    """
    Balance of `custody` for every token, fetched concurrently.
    A token whose lookup fails maps to None.
    """
    custody_addr = Web3.to_checksum_address(custody)
    semaphore = asyncio.Semaphore(concurrency) # Limit concurrent requests
    balances: Dict[str, Optional[int]] = {}

    async def fetch_balance(token: str):
        async with semaphore:
            try:
                if token.lower() == NATIVE_CURRENCY:
                    balance = await w3.eth.get_balance(custody_addr, block_identifier=block)
                else:
                    contract = w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)
                    balance = await contract.functions.balanceOf(custody_addr).call(block_identifier=block)
                balances[token] = int(balance)
            except Exception as e:
                logger.warning("Balance lookup failed for token=%s: %s", token, e)
                balances[token] = None

    await asyncio.gather(*(fetch_balance(token) for token in tokens))
    return balances


# --- Storage Slot Helpers ---
def calculate_mapping_slot(key_hex: str, mapping_slot_index: int) -> HexStr:
    """Storage slot of a bytes32 key in the mapping at `mapping_slot_index`."""
    key_bytes = bytes.fromhex(key_hex[2:] if key_hex.startswith("0x") else key_hex)
    slot_bytes = mapping_slot_index.to_bytes(32, 'big')
    encoded = encode_packed(['bytes32', 'bytes32'], [key_bytes, slot_bytes])
    return HexStr(Web3.to_hex(Web3.keccak(encoded)))


def calculate_nested_mapping_slot(key: int, mapping_base_slot_hex: str) -> HexStr:
    """Slot for an int key (int16 word or int24 tick) within a mapping located at mapping_base_slot_hex."""
    if not isinstance(key, int):
        raise TypeError("Key must be integer for tick/wordPos")
    key_bytes = key.to_bytes(32, 'big', signed=True)
    base_slot_bytes = int(mapping_base_slot_hex, 16).to_bytes(32, 'big')
    encoded = encode_packed(['bytes32', 'bytes32'], [key_bytes, base_slot_bytes])
    return HexStr(Web3.to_hex(Web3.keccak(encoded)))


def offset_slot(slot_hex: str, offset: int) -> HexStr:
    return HexStr(hex(int(slot_hex, 16) + offset))


def _signed(value: int, bits: int) -> int:
    if value >= 1 << (bits - 1):
        value -= 1 << bits
    return value


def decode_slot0(slot_bytes: bytes) -> Tuple[int, int, int, int]:
    """Decodes (sqrtPriceX96, tick, protocolFee, lpFee) from the packed Slot0 word."""
    word = int.from_bytes(slot_bytes, 'big')
    sqrt_price_x96 = word & ((1 << 160) - 1)
    tick = _signed((word >> 160) & ((1 << 24) - 1), 24)
    protocol_fee = (word >> 184) & ((1 << 24) - 1)
    lp_fee = (word >> 208) & ((1 << 24) - 1)
    return sqrt_price_x96, tick, protocol_fee, lp_fee


def decode_tickinfo_slot0(slot0_bytes: bytes) -> Tuple[int, int]:
    """Decodes liquidityNet (int128) and liquidityGross (uint128) from TickInfo slot 0."""
    slot0_bytes = slot0_bytes.rjust(32, b"\x00")
    liq_net = int.from_bytes(slot0_bytes[:16], 'big', signed=True) # Upper 16 bytes
    liq_gross = int.from_bytes(slot0_bytes[16:], 'big', signed=False) # Lower 16 bytes
    return liq_net, liq_gross


def bitmap_word_range(tick_spacing: int) -> Tuple[int, int]:
    # The tick index i can be calculated taking the log, as i = log_{1.0001}(2^128) = 887272.7517970635.
    min_word = UNISWAP_V4_CURVE.min_tick // tick_spacing // 256
    max_word = UNISWAP_V4_CURVE.max_tick // tick_spacing // 256
    return min_word, max_word


def initialized_ticks_from_bitmap(words: Dict[int, int], tick_spacing: int) -> List[int]:
    ticks = []
    for word, bits in words.items():
        for bit in range(256):
            if (bits >> bit) & 1:
                tick = (word * 256 + bit) * tick_spacing
                if UNISWAP_V4_CURVE.min_tick <= tick <= UNISWAP_V4_CURVE.max_tick:
                    ticks.append(tick)
    ticks.sort()
    return ticks


# --- Pool/Tick Source ---
async def fetch_pool_snapshot(
    w3: AsyncWeb3,
    pool_manager: str,
    pool_id: str,
    currency0: str,
    currency1: str,
    tick_spacing: int,
    block="latest",
    fee: int = 0,
    fee_protocol_x: int = 0,
    fee_protocol_y: int = 0,
    concurrency: int = CONCURRENCY,
) -> PoolSnapshot:
    """
    Reads one v4 pool straight from PoolManager storage: slot0, the tick bitmap
    and liquidityNet of every initialized tick.

    Protocol fees accrue per currency on the PoolManager rather than per pool,
    so they are taken from the caller.
    """
    manager = Web3.to_checksum_address(pool_manager)
    semaphore = asyncio.Semaphore(concurrency)

    async def get_storage(slot: str) -> bytes:
        async with semaphore:
            return bytes(await w3.eth.get_storage_at(manager, int(slot, 16), block_identifier=block))

    pool_state_slot = calculate_mapping_slot(pool_id, POOLS_MAPPING_SLOT_INDEX)
    ticks_slot = offset_slot(pool_state_slot, TICKS_OFFSET)
    bitmap_slot = offset_slot(pool_state_slot, TICK_BITMAP_OFFSET)

    sqrt_price_x96, current_tick, _, lp_fee = decode_slot0(await get_storage(pool_state_slot))
    if sqrt_price_x96 == 0:
        raise ValueError(f"Pool {pool_id} is not initialized at block {block}")
    logger.info("pool=%s sqrtPriceX96=%d tick=%d", pool_id, sqrt_price_x96, current_tick)

    # 1. Fetch Bitmap words
    min_word, max_word = bitmap_word_range(tick_spacing)
    words: Dict[int, int] = {}

    async def fetch_bitmap_word(word: int):
        value = int.from_bytes(await get_storage(calculate_nested_mapping_slot(word, bitmap_slot)), 'big')
        if value != 0:
            words[word] = value

    await asyncio.gather(*(fetch_bitmap_word(word) for word in range(min_word, max_word + 1)))
    initialized = initialized_ticks_from_bitmap(words, tick_spacing)
    logger.info("pool=%s non-zero bitmap words=%d initialized ticks=%d", pool_id, len(words), len(initialized))

    # 2. Fetch liquidityNet for each initialized tick
    liquidity_net: Dict[int, int] = {}

    async def fetch_tick_info(tick: int):
        liq_net, _ = decode_tickinfo_slot0(await get_storage(calculate_nested_mapping_slot(tick, ticks_slot)))
        liquidity_net[tick] = liq_net

    await asyncio.gather(*(fetch_tick_info(tick) for tick in initialized))

    ticks: List[LiquidityTick] = ticks_from_liquidity_net(
        {"tick": t, "liquidityNet": net} for t, net in liquidity_net.items()
    )
    state = PoolState(
        token_x=currency0,
        token_y=currency1,
        current_sqrt_price=sqrt_price_x96,
        current_tick_index=current_tick,
        fee_protocol_token_x=fee_protocol_x,
        fee_protocol_token_y=fee_protocol_y,
    )
    key = PoolKey(currency0, currency1, FeeTier(fee=fee or lp_fee, tick_spacing=tick_spacing))
    return PoolSnapshot(key=key, state=state, ticks=ticks)
