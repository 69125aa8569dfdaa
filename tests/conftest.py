import pytest

from tests.helpers import TOKEN_X, TOKEN_Y, make_pool, position_ticks


@pytest.fixture
def balanced_pool():
    # [-2, 2] around tick 0: 99 of each token at 10**12 raw liquidity
    return make_pool(TOKEN_X, TOKEN_Y, position_ticks(-2, 2, 10**12), fee_x=1)
