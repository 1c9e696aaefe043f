import copy

import pytest

from arbiter_sim.uniswapv3_pool import BoundaryIndex, V3Pool


def _prepare_pool(width: int = 600) -> V3Pool:
    pool = V3Pool.at_price(100.0, fee=0.003, tick_spacing=60)
    # symmetric liquidity around the active tick so quotes have depth
    pool.add_liquidity_range(pool.tick - width, pool.tick + width, 50_000.0)
    return pool


def test_swap_to_price_matches_exact_input_swap():
    pool = _prepare_pool()

    trial = copy.deepcopy(pool)
    res = trial.swap_to_price(101.0)
    assert not res.exhausted
    assert trial.price == pytest.approx(101.0, rel=1e-9)

    pool_for_swap = copy.deepcopy(pool)
    res2 = pool_for_swap.swap_y_to_x(res.amount_in)
    assert res2.amount_out == pytest.approx(res.amount_out, rel=1e-9)
    assert pool_for_swap.price == pytest.approx(101.0, rel=1e-9)


def test_swap_to_lower_price_sells_token0():
    pool = _prepare_pool()

    trial = copy.deepcopy(pool)
    res = trial.swap_to_price(99.0)
    assert trial.price == pytest.approx(99.0, rel=1e-9)

    res2 = pool.swap_x_to_y(res.amount_in)
    assert res2.amount_out == pytest.approx(res.amount_out, rel=1e-9)
    assert pool.price == pytest.approx(99.0, rel=1e-9)


def test_reserves_track_curve_and_fee_stays_outside():
    pool = _prepare_pool()
    pool.swap_y_to_x(10.0)
    pool.swap_x_to_y(0.05)

    x, y = pool.curve_amounts()
    assert pool.reserve0 == pytest.approx(x, rel=1e-9)
    assert pool.reserve1 == pytest.approx(y, rel=1e-9)
    assert pool.fees1 == pytest.approx(10.0 * 0.003)
    assert pool.fees0 == pytest.approx(0.05 * 0.003)


def test_swap_past_last_boundary_is_exhausted():
    pool = _prepare_pool(width=120)
    res = pool.swap_y_to_x(1e12)
    assert res.exhausted
    assert pool.L_active == 0.0


def test_empty_band_is_bridged():
    pool = V3Pool.at_price(100.0, fee=0.003, tick_spacing=60)
    t0 = pool.tick
    pool.add_liquidity_range(t0 - 120, t0 + 120, 50_000.0)
    pool.add_liquidity_range(t0 + 600, t0 + 1200, 50_000.0)

    target = 1.0001 ** (t0 + 900)
    res = pool.swap_to_price(target)
    assert not res.exhausted
    assert pool.price == pytest.approx(target, rel=1e-9)
    assert t0 + 600 <= pool.tick < t0 + 1200


def test_boundary_index_lookups():
    bidx = BoundaryIndex({-120: 5.0, 0: 0.0, 120: -5.0})
    assert bidx.next_up(-120) == 120
    assert bidx.prev_down(120) == -120
    assert bidx.at_or_below(120) == 120
    assert bidx.next_up(120) is None


def test_empty_range_rejected():
    pool = V3Pool.at_price(100.0, fee=0.003, tick_spacing=60)
    with pytest.raises(ValueError):
        pool.add_liquidity_range(pool.tick, pool.tick + 10, 1.0)
