import pathlib
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest
from pydantic import ValidationError

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from xasset.core.config import Settings
from xasset.engine import (
    ConfigurationError,
    Discretization,
    EulerDiscretization,
    ExactDiscretization,
    FunctionalDynamics,
    HighamSalvaging,
    PiecewiseConstantDynamics,
    StateProcess,
)

CORR = [[1.0, 0.3], [0.3, 1.0]]


def _rates_fx() -> PiecewiseConstantDynamics:
    return PiecewiseConstantDynamics(
        sigmas=[[0.01, 0.012], [0.15, 0.12]],
        correlation=CORR,
        times=[1.0],
        drift=[0.0, 0.005],
        factor_names=["USD.rate", "EURUSD.fx"],
    )


def test_contract_basics():
    process = StateProcess(_rates_fx(), "euler", config=Settings())
    assert process.size() == 2
    assert process.discretization is Discretization.EULER
    assert isinstance(process.strategy, EulerDiscretization)
    np.testing.assert_array_equal(process.initial_values(), [0.0, 0.0])


def test_discretization_follows_settings(monkeypatch):
    monkeypatch.setenv("XA_DISCRETIZATION", "exact")
    monkeypatch.setenv("XA_SALVAGING", "higham")
    cfg = Settings()
    process = StateProcess(_rates_fx(), config=cfg)

    assert process.discretization is Discretization.EXACT
    assert isinstance(process.strategy, ExactDiscretization)
    assert isinstance(process.repairer.policy, HighamSalvaging)


def test_settings_reject_out_of_range_values():
    with pytest.raises(ValidationError):
        Settings(psd_tolerance=-1.0)
    with pytest.raises(ValidationError):
        Settings(discretization="milstein")


def test_unknown_discretization_is_rejected():
    with pytest.raises(ConfigurationError):
        StateProcess(_rates_fx(), "milstein", config=Settings())


def test_exact_scenario_through_dispatcher():
    process = StateProcess(
        PiecewiseConstantDynamics(sigmas=[0.01, 0.15], correlation=CORR),
        Discretization.EXACT,
        config=Settings(),
    )
    expected = np.array(
        [
            [0.01**2 * 0.25, 0.01 * 0.15 * 0.3 * 0.25],
            [0.01 * 0.15 * 0.3 * 0.25, 0.15**2 * 0.25],
        ]
    )
    x = process.initial_values()
    np.testing.assert_allclose(process.covariance(0.0, x, 0.25), expected, rtol=0.0, atol=1e-12)
    root = process.diffusion(0.0, x, 0.25)
    np.testing.assert_allclose(root @ root.T, expected, atol=1e-15)
    moments = process.moments(0.0, x, 0.25)
    assert moments.size == 2
    np.testing.assert_array_equal(moments.diffusion, root)


@pytest.mark.parametrize("scheme", ["euler", "exact"])
def test_diffusion_is_psd_on_a_grid(scheme):
    process = StateProcess(_rates_fx(), scheme, config=Settings())
    x = process.initial_values()
    for t in np.linspace(0.0, 3.0, 13):
        root = process.diffusion(t, x, 0.25)
        product = root @ root.T
        np.testing.assert_allclose(product, product.T, atol=1e-15)
        assert np.linalg.eigvalsh(product).min() >= -1e-10


@pytest.mark.parametrize("scheme", ["euler", "exact"])
def test_repeated_calls_are_bit_identical_and_cache_transparent(scheme):
    cached = StateProcess(_rates_fx(), scheme, config=Settings())
    uncached = StateProcess(_rates_fx(), scheme, config=Settings(cache_enabled=False))
    x = cached.initial_values()

    first = cached.diffusion(0.5, x, 0.25).copy()
    np.testing.assert_array_equal(cached.diffusion(0.5, x, 0.25), first)
    np.testing.assert_array_equal(uncached.diffusion(0.5, x, 0.25), first)
    np.testing.assert_array_equal(uncached.drift(0.5, x, 0.25), cached.drift(0.5, x, 0.25))


@pytest.mark.parametrize("scheme", ["euler", "exact"])
def test_flush_after_parameter_change_reflects_new_parameters(scheme):
    dyn = PiecewiseConstantDynamics(sigmas=[0.01, 0.15], correlation=CORR)
    process = StateProcess(dyn, scheme, config=Settings())
    x = process.initial_values()
    before = process.covariance(0.0, x, 1.0).copy()

    dyn.update(sigmas=[0.02, 0.15])
    process.flush_cache()
    after = process.covariance(0.0, x, 1.0)

    assert after[0, 0] == pytest.approx(0.02**2)
    assert before[0, 0] == pytest.approx(0.01**2)
    assert len(process.strategy.cache) == 1


def test_version_change_is_never_served_stale_even_without_flush():
    dyn = PiecewiseConstantDynamics(sigmas=[0.01, 0.15], correlation=CORR)
    process = StateProcess(dyn, "exact", config=Settings())
    process.diffusion(0.0, None, 0.25)

    dyn.update(correlation=[[1.0, -0.3], [-0.3, 1.0]])

    assert process.covariance(0.0, None, 0.25)[0, 1] == pytest.approx(-0.01 * 0.15 * 0.3 * 0.25)


@pytest.mark.parametrize("scheme", ["euler", "exact"])
def test_evolve_applies_the_advance_rule(scheme):
    process = StateProcess(_rates_fx(), scheme, config=Settings())
    x0 = np.array([0.02, 0.1])
    dw = np.array([0.5, -1.5])
    dt = 0.25

    if scheme == "euler":
        expected = x0 + process.drift(0.0, x0) * dt + process.diffusion(0.0, x0) @ dw * np.sqrt(dt)
    else:
        expected = x0 + process.drift(0.0, x0, dt) + process.diffusion(0.0, x0, dt) @ dw
    np.testing.assert_allclose(process.evolve(0.0, x0, dt, dw), expected, atol=1e-15)


def test_concurrent_first_requests_compute_once():
    calls = []
    lock = threading.Lock()

    def vol(t):
        with lock:
            calls.append(t)
        time.sleep(0.02)
        return [0.01, 0.15]

    process = StateProcess(FunctionalDynamics(2, vol, CORR), "euler", config=Settings())
    x = process.initial_values()
    barrier = threading.Barrier(100)

    def request(_):
        barrier.wait()
        return process.diffusion(0.5, x)

    with ThreadPoolExecutor(max_workers=100) as pool:
        results = list(pool.map(request, range(100)))

    assert len(calls) == 1
    assert all(np.array_equal(result, results[0]) for result in results)
    assert process.strategy.cache.size("diffusion") == 1


def test_flush_concurrent_with_requests_leaves_consistent_cache():
    dyn = PiecewiseConstantDynamics(sigmas=[0.01, 0.15], correlation=CORR)
    process = StateProcess(dyn, "exact", config=Settings())

    def request(i):
        if i % 10 == 0:
            process.flush_cache()
        return process.diffusion(0.0, None, 0.25)

    with ThreadPoolExecutor(max_workers=16) as pool:
        results = list(pool.map(request, range(200)))

    assert all(np.array_equal(result, results[0]) for result in results)
    assert len(process.strategy.cache) <= 1


def test_exact_process_answers_the_four_operation_contract():
    process = StateProcess(PiecewiseConstantDynamics(sigmas=[0.01, 0.15]), "exact", config=Settings())
    x = process.initial_values()

    np.testing.assert_array_equal(process.drift(0.0, x), [0.0, 0.0])
    root = process.diffusion(0.0, x)
    np.testing.assert_allclose(root @ root.T, np.diag([0.01**2, 0.15**2]), atol=1e-16)
    assert process.size() == 2


def test_higham_tolerance_is_independent_of_the_perturbation_limit():
    cfg = Settings(higham_tolerance=0.9, max_relative_perturbation=0.1)
    assert cfg.higham_tolerance > cfg.max_relative_perturbation
