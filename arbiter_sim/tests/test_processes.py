import math

import numpy as np
import pytest

from arbiter_sim.errors import InvalidConfig
from arbiter_sim.processes import PricePath, generate_price_path, num_steps

from conftest import make_sim


def test_gbm_path_length_and_determinism():
    cfg = make_sim(seed=42)
    path = PricePath(cfg)

    points = list(path)
    assert len(points) == 100
    assert [p.step for p in points] == list(range(1, 101))
    assert all(p.price > 0 for p in points)

    again = [p.price for p in PricePath(make_sim(seed=42))]
    assert again == [p.price for p in points]


def test_unit_step_path_is_seed_determined():
    a = PricePath(make_sim(time_step=1.0, horizon=10.0, seed=42))
    b = PricePath(make_sim(time_step=1.0, horizon=10.0, seed=42))
    c = PricePath(make_sim(time_step=1.0, horizon=10.0, seed=43))

    assert [p.step for p in a] == list(range(1, 11))
    assert np.array_equal(a.prices(), b.prices())
    assert not np.array_equal(a.prices(), c.prices())


def test_path_is_restartable():
    path = PricePath(make_sim())
    assert [p.price for p in path] == [p.price for p in path]


def test_different_seed_gives_different_path():
    a = PricePath(make_sim(seed=42)).prices()
    b = PricePath(make_sim(seed=43)).prices()
    assert not np.array_equal(a, b)


def test_gbm_without_volatility_is_pure_drift():
    cfg = make_sim(volatility=0.0, drift=0.1, time_step=0.1, horizon=1.0)
    prices = PricePath(cfg).prices()
    expected = [100.0 * math.exp(0.1 * 0.1 * k) for k in range(1, 11)]
    assert list(prices) == pytest.approx(expected, rel=1e-12)


def test_ou_without_volatility_decays_to_mean():
    cfg = make_sim(process="OU", volatility=0.0, initial_price=110.0, long_run_mean=100.0,
                   mean_reversion_rate=1.0, time_step=0.1, horizon=2.0)
    prices = PricePath(cfg).prices()
    expected = [100.0 + 10.0 * (1.0 - 0.1) ** k for k in range(1, 21)]
    assert list(prices) == pytest.approx(expected, rel=1e-12)


def test_ou_long_run_mean_defaults_to_initial_price():
    cfg = make_sim(process="OU", volatility=0.0, mean_reversion_rate=2.0)
    assert list(PricePath(cfg).prices()) == pytest.approx([100.0] * 100)


def test_num_steps_handles_inexact_ratios():
    assert num_steps(make_sim(time_step=0.1, horizon=1.0)) == 10
    assert num_steps(make_sim(time_step=0.3, horizon=1.0)) == 3


@pytest.mark.parametrize("overrides", [
    {"time_step": 0.0},
    {"horizon": 0.001},
    {"volatility": -0.1},
    {"initial_price": 0.0},
    {"seed": -1},
    {"volatility": math.nan},
    {"drift": math.inf},
    {"process": "OU", "long_run_mean": math.nan},
])
def test_invalid_parameters_raise_before_any_point(overrides):
    with pytest.raises(InvalidConfig) as excinfo:
        PricePath(make_sim(**overrides))
    assert excinfo.value.component == "process"
    assert excinfo.value.operation == "generate"


def test_process_override():
    path = generate_price_path(make_sim(), process="ou")
    assert path.config.process == "OU"
    with pytest.raises(InvalidConfig):
        generate_price_path(make_sim(), process="levy")
