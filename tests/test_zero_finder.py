import math

import pytest

from spatialvb_jax.optimisation.zero_finder import (
    BisectionGuesstimator,
    DescendingZeroFinder,
    Function1D,
    LogBisectionGuesstimator,
    ZeroFinderCFG,
)


class _Line(Function1D):
    def __init__(self, root):
        self.root = root
        self.calls = []

    def __call__(self, x):
        self.calls.append(x)
        return self.root - x


def test_finds_root():
    fcn = _Line(2.7)
    cfg = ZeroFinderCFG(initial_guess=0.0, tol_x=1e-8, max_evaluations=200)
    out = DescendingZeroFinder(fcn, cfg, BisectionGuesstimator()).find_zero()

    assert out.converged
    assert out.x == pytest.approx(2.7, abs=1e-7)
    assert out.evaluations == len(fcn.calls)


def test_finds_root_below_guess():
    cfg = ZeroFinderCFG(initial_guess=10.0, tol_x=1e-8, max_evaluations=200)
    out = DescendingZeroFinder(_Line(-3.3), cfg).find_zero()
    assert out.x == pytest.approx(-3.3, abs=1e-7)


def test_log_bisection_ratio_tolerance():
    cfg = ZeroFinderCFG(initial_guess=1.0, search_min=1e-3, search_max=1e6, ratio_tol_x=1.01, max_evaluations=100)
    out = DescendingZeroFinder(lambda x: math.log(50.0 / x), cfg, LogBisectionGuesstimator()).find_zero()
    assert out.converged
    assert out.x == pytest.approx(50.0, rel=0.01)


def test_zero_beyond_bound_returns_bound():
    cfg = ZeroFinderCFG(initial_guess=0.0, search_max=5.0)
    out = DescendingZeroFinder(_Line(10.0), cfg).find_zero()
    assert out.x == 5.0
    assert not out.converged


def test_budget_exhausted_while_expanding():
    fcn = _Line(1e6)
    cfg = ZeroFinderCFG(initial_guess=0.0, max_evaluations=3)
    out = DescendingZeroFinder(fcn, cfg).find_zero()

    assert not out.converged
    assert out.evaluations == 3
    assert out.x == 3.0  # 0, then +1, then +2


def test_budget_exhausted_while_refining():
    cfg = ZeroFinderCFG(initial_guess=0.0, tol_x=1e-12, max_evaluations=6)
    out = DescendingZeroFinder(_Line(2.7), cfg).find_zero()
    assert not out.converged
    assert out.evaluations == 6
    assert abs(out.x - 2.7) < 1.0


def test_faster_guess_is_used():
    class _Cached(_Line):
        def pick_faster_guess(self, guess, lower, upper):
            return 2.0 if lower < 2.0 < upper else None

    fcn = _Cached(2.7)
    cfg = ZeroFinderCFG(initial_guess=0.0, tol_x=1e-3, max_evaluations=50)
    DescendingZeroFinder(fcn, cfg).find_zero()
    assert 2.0 in fcn.calls


def test_guesstimators():
    assert BisectionGuesstimator().guess((1.0, 1.0), (3.0, -1.0)) == 2.0
    assert LogBisectionGuesstimator().guess((1.0, 1.0), (100.0, -1.0)) == pytest.approx(10.0)
    assert LogBisectionGuesstimator().guess((-1.0, 1.0), (3.0, -1.0)) == 1.0


def test_bad_interval_rejected():
    with pytest.raises(ValueError):
        DescendingZeroFinder(_Line(0.0), ZeroFinderCFG(search_min=1.0, search_max=1.0))
