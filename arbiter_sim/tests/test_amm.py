import math

import pytest

from arbiter_sim.amm import ImpliedTrade, PortfolioAMM, UniswapV3AMM, build_amm
from arbiter_sim.config import PairConfig, PortfolioConfig, UniswapConfig
from arbiter_sim.errors import InsufficientLiquidity, InvalidConfig


@pytest.fixture
def portfolio() -> PortfolioAMM:
    return PortfolioAMM.from_price(100.0, PortfolioConfig(), PairConfig())


@pytest.fixture
def uniswap() -> UniswapV3AMM:
    return UniswapV3AMM.from_price(100.0, UniswapConfig(), PairConfig())


# ---------------- Portfolio ----------------

def test_portfolio_seeds_on_curve(portfolio):
    assert portfolio.price == pytest.approx(100.0, rel=1e-9)
    assert portfolio.invariant == pytest.approx(0.0, abs=1e-12)
    assert 0.0 < portfolio.reserve_risky < portfolio.liquidity


def test_portfolio_quote_is_pure(portfolio):
    before = portfolio.state
    trade = portfolio.quote(110.0)
    assert portfolio.state == before
    assert trade.asset_in == "token1" and trade.asset_out == "token0"
    assert trade.amount_in > 0 and trade.amount_out > 0


def test_portfolio_apply_reaches_price_and_keeps_invariant(portfolio):
    k0 = portfolio.invariant
    state = portfolio.apply(portfolio.quote(110.0))
    assert state.price == pytest.approx(110.0, rel=1e-9)
    assert state.invariant >= k0


def test_portfolio_invariant_never_decreases(portfolio):
    ks = [portfolio.invariant]
    for price in [105.0, 97.0, 120.0, 80.0, 100.0]:
        portfolio.apply(portfolio.quote(price))
        ks.append(portfolio.invariant)
    assert all(b >= a - 1e-12 for a, b in zip(ks, ks[1:]))
    assert ks[-1] > ks[0]


def test_portfolio_same_price_needs_no_trade(portfolio):
    trade = portfolio.quote(portfolio.price)
    assert trade.amount_in == pytest.approx(0.0, abs=1e-9)
    assert trade.amount_out == pytest.approx(0.0, abs=1e-9)


def test_portfolio_empty_trade_is_a_no_op(portfolio):
    before = portfolio.state
    assert portfolio.apply(ImpliedTrade("token0", "token1", 0.0, 0.0, 100.0)) == before


def test_portfolio_rejects_draining_trade(portfolio):
    before = portfolio.state
    trade = ImpliedTrade("token0", "token1", 1.0, 1e9, 100.0)
    with pytest.raises(InsufficientLiquidity):
        portfolio.apply(trade)
    assert portfolio.state == before


@pytest.mark.parametrize("price", [0.0, -5.0, math.nan, 1e9])
def test_portfolio_quote_outside_curve(portfolio, price):
    with pytest.raises(InsufficientLiquidity) as excinfo:
        portfolio.quote(price)
    assert excinfo.value.operation == "quote"


def test_portfolio_rejects_foreign_assets(portfolio):
    with pytest.raises(ValueError):
        portfolio.apply(ImpliedTrade("weth", "usdc", 1.0, 1.0, 100.0))


# ---------------- Uniswap v3 ----------------

def test_uniswap_quote_is_pure(uniswap):
    before = uniswap.state
    uniswap.quote(103.0)
    assert uniswap.state == before


def test_uniswap_apply_moves_to_quoted_price(uniswap):
    trade = uniswap.quote(103.0)
    state = uniswap.apply(trade)
    assert state.price == pytest.approx(103.0, rel=1e-9)
    assert state.fees1 == pytest.approx(trade.amount_in * 0.003)

    trade = uniswap.quote(95.0)
    assert trade.asset_in == "token0"
    state = uniswap.apply(trade)
    assert state.price == pytest.approx(95.0, rel=1e-9)

    x, y = uniswap.pool.curve_amounts()
    assert state.reserve0 == pytest.approx(x, rel=1e-9)
    assert state.reserve1 == pytest.approx(y, rel=1e-9)


def test_uniswap_price_beyond_liquidity():
    amm = UniswapV3AMM.from_price(100.0, UniswapConfig(range_ticks=120), PairConfig())
    with pytest.raises(InsufficientLiquidity) as excinfo:
        amm.quote(1e6)
    assert excinfo.value.component == "amm.uniswap"


def test_uniswap_failed_apply_leaves_pool_untouched(uniswap):
    before = uniswap.state
    with pytest.raises(InsufficientLiquidity):
        uniswap.apply(ImpliedTrade("token1", "token0", 1e15, 0.0, 0.0))
    assert uniswap.state == before


def test_build_amm_selects_variant(app_config, v3_config):
    assert build_amm(app_config).name == "Portfolio"
    assert build_amm(v3_config).name == "UniswapV3"
    assert build_amm(app_config, "UniswapV3", price=50.0).price == pytest.approx(50.0)
    with pytest.raises(InvalidConfig):
        build_amm(app_config, "Balancer")
