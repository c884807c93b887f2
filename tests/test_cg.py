from __future__ import annotations

from typing import Optional

import numpy as np
import pytest

from hessfree.caches import DeltaPool
from hessfree.cg import CGSolver, CGState, ConvergenceCriteria
from hessfree.least_squares import LeastSquaresLearner
from hessfree.param_delta import ParamDelta, Parameter
from hessfree.samples import vector_sample_set


class _DiagonalQuadratic:
    """``q(d) = 0.5 d.A d - b.d`` with diagonal ``A``; the true cost adds ``penalty * |d|^4``."""

    def __init__(self, param: Parameter, diag: np.ndarray, b: np.ndarray, penalty: float = 0.0) -> None:
        self.param = param
        self.diag = np.asarray(diag, dtype=np.float64)
        self.b = np.asarray(b, dtype=np.float64)
        self.penalty = penalty

    def _vec(self, delta: ParamDelta) -> np.ndarray:
        vec = delta.get(self.param)
        return np.zeros_like(self.b) if vec is None else vec

    def quad(self, delta, samples) -> float:
        d = self._vec(delta)
        return float(0.5 * d @ (self.diag * d) - self.b @ d)

    def quad_grad(self, delta, samples, out: Optional[ParamDelta] = None) -> ParamDelta:
        if out is None:
            out = ParamDelta.zeros([self.param])
        d = self._vec(delta)
        out[self.param] += self.diag * d - self.b
        return out

    def quad_hessian(self, delta, x, samples, out: Optional[ParamDelta] = None):
        if out is None:
            out = ParamDelta.zeros([self.param])
        out[self.param] += self.diag * self._vec(delta)
        return out, self.quad(x, samples)

    def objective(self, delta, samples) -> float:
        d = self._vec(delta)
        return self.quad(delta, samples) + self.penalty * float(d @ d) ** 2


def _ill_conditioned(size: int = 50, penalty: float = 0.0):
    param = Parameter(np.zeros(size))
    diag = np.logspace(0, 3, size)
    b = np.random.default_rng(0).normal(size=size)
    return param, _DiagonalQuadratic(param, diag, b, penalty)


def _run(solver: CGSolver) -> int:
    steps = 0
    while solver.step():
        steps += 1
    return steps


def test_quadratic_values_decrease_monotonically() -> None:
    param, objective = _ill_conditioned()
    solver = CGSolver(objective, [], [param], criteria=ConvergenceCriteria(min_k=1000), max_iterations=30)
    _run(solver)
    values = solver.quad_values
    assert len(values) == solver.iteration + 1
    assert values[0] == pytest.approx(0.0)
    for prev, cur in zip(values, values[1:]):
        assert cur <= prev + 1e-12
    assert solver.state is CGState.EXHAUSTED


def test_analytic_model_values_match_direct_evaluation() -> None:
    param, objective = _ill_conditioned(size=12)
    solver = CGSolver(objective, [], [param], criteria=ConvergenceCriteria(min_k=1000), max_iterations=5)
    _run(solver)
    assert solver.quad_values[-1] == pytest.approx(objective.quad(solver.solution, []), rel=1e-9)


def test_backtracking_checkpoints_follow_exponential_schedule() -> None:
    param, objective = _ill_conditioned()
    solver = CGSolver(
        objective,
        [],
        [param],
        criteria=ConvergenceCriteria(min_k=1000),
        backtrack_rate=1.3,
        max_iterations=12,
    )
    _run(solver)
    assert solver.iteration == 12
    assert [it for it, _ in solver.checkpoints] == [1, 2, 3, 4, 5, 7, 9, 11]


def test_best_picks_lowest_true_cost_candidate() -> None:
    param, objective = _ill_conditioned(penalty=5.0)
    solver = CGSolver(objective, [], [param], criteria=ConvergenceCriteria(min_k=1000), max_iterations=15)
    _run(solver)
    candidates = [value for _, value in solver.checkpoints] + [solver.solution_objective()]
    best = solver.best()
    assert objective.objective(best, []) == pytest.approx(min(candidates))


def test_best_prefers_most_recent_on_ties() -> None:
    class _Flat(_DiagonalQuadratic):
        def objective(self, delta, samples) -> float:
            return 1.0

    param = Parameter(np.zeros(20))
    objective = _Flat(param, np.logspace(0, 2, 20), np.ones(20))
    solver = CGSolver(objective, [], [param], criteria=ConvergenceCriteria(min_k=1000), max_iterations=6)
    _run(solver)
    assert solver.checkpoints
    assert solver.best() is solver.solution


def test_converges_to_least_squares_solution() -> None:
    rng = np.random.default_rng(3)
    inputs = rng.normal(size=(40, 3))
    outputs = inputs @ rng.normal(size=(3, 2)) + rng.normal(0.0, 0.05, size=(40, 2))
    samples = vector_sample_set(inputs, outputs)
    learner = LeastSquaresLearner(3, 2, max_concurrency=1, seed=3)
    objective = learner.make_objective()
    solver = CGSolver(objective, samples, learner.parameters(), max_iterations=60)
    _run(solver)
    assert solver.done
    solver.solution.add_to_vars()

    design = np.hstack([inputs, np.ones((40, 1))])
    exact, *_ = np.linalg.lstsq(design, outputs, rcond=None)
    fitted = learner.predict(inputs)
    assert np.allclose(fitted, design @ exact, atol=1e-5)


def test_converges_by_relative_progress() -> None:
    param, objective = _ill_conditioned(size=200)
    solver = CGSolver(objective, [], [param], max_iterations=500)
    _run(solver)
    assert solver.state is CGState.CONVERGED
    assert solver.iteration > 10


def test_zero_residual_converges_without_iterating() -> None:
    param = Parameter(np.zeros(4))
    objective = _DiagonalQuadratic(param, np.ones(4), np.zeros(4))
    solver = CGSolver(objective, [], [param])
    assert solver.step() is False
    assert solver.state is CGState.CONVERGED
    assert solver.iteration == 0
    assert not solver.best()[param].any()


def test_exact_warm_start_converges_immediately() -> None:
    param = Parameter(np.zeros(4))
    b = np.array([1.0, -2.0, 0.5, 3.0])
    objective = _DiagonalQuadratic(param, np.ones(4), b)
    warm = ParamDelta()
    warm[param] = b.copy()
    solver = CGSolver(objective, [], [param], solution=warm)
    assert solver.step() is False
    assert solver.state is CGState.CONVERGED
    assert solver.release() is warm


def test_non_positive_curvature_ends_the_run() -> None:
    param = Parameter(np.zeros(3))
    objective = _DiagonalQuadratic(param, -np.ones(3), np.ones(3))
    solver = CGSolver(objective, [], [param])
    assert solver.step() is False
    assert solver.state is CGState.EXHAUSTED
    assert solver.iteration == 0
    assert not solver.solution[param].any()


def test_release_returns_temporaries_to_pool_and_hands_back_solution() -> None:
    param, objective = _ill_conditioned()
    pool = DeltaPool()
    solver = CGSolver(
        objective, [], [param], criteria=ConvergenceCriteria(min_k=1000), max_iterations=8, pool=pool
    )
    _run(solver)
    snapshots = len(solver.checkpoints)
    final = solver.solution
    released = solver.release()
    assert released is final
    assert solver.solution is None
    # residual, direction and curvature product plus one vector per snapshot
    assert pool.vectors.size(len(param)) == 3 + snapshots
    assert solver.release() is None


def test_ui_sees_start_and_every_iteration() -> None:
    class _UI:
        def __init__(self) -> None:
            self.starts = []
            self.iterations = []

        def log_cg_start(self, residual_mag2, objective_value) -> None:
            self.starts.append((residual_mag2, objective_value))

        def log_cg_iteration(self, step_size, quad_value) -> None:
            self.iterations.append((step_size, quad_value))

    param, objective = _ill_conditioned()
    ui = _UI()
    solver = CGSolver(objective, [], [param], criteria=ConvergenceCriteria(min_k=1000), max_iterations=7, ui=ui)
    _run(solver)
    assert len(ui.starts) == 1
    assert ui.starts[0][0] == pytest.approx(float(objective.b @ objective.b))
    assert len(ui.iterations) == 7
    assert all(step > 0.0 for step, _ in ui.iterations)
    assert [q for _, q in ui.iterations] == pytest.approx(solver.quad_values[1:])


def test_zero_criteria_fall_back_to_defaults() -> None:
    criteria = ConvergenceCriteria(min_k=0.0, k_scale=0.0, epsilon=0.0)
    assert criteria == ConvergenceCriteria()
    assert criteria.window(5) == 10.0
    assert criteria.window(200) == pytest.approx(20.0)
