"""Truncated Conjugate Gradient for Hessian-Free optimization.

Minimizes a quadratic model ``q(d)`` without a preconditioner, following the
recipe of Martens (2010):

- relative-progress termination: with ``k = max(min_k, k_scale * i)``, stop once
  ``(q_i - q_{i-k}) / q_i < k * epsilon`` where values are measured relative
  to the true cost at the center and ``q_i`` has already dropped below it;
- backtracking checkpoints at iterations ``ceil(rate^n)``, so candidate
  solutions are spaced exponentially across the run;
- ``best()`` picks the candidate with the lowest true cost, which guards
  against overshooting with a badly damped model.

Zero residual and non-positive curvature along the search direction end the
run normally; they are not errors.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from .caches import DeltaPool
from .interfaces import Objective, SampleSet, UI
from .param_delta import ParamDelta, Parameter

__all__ = [
    "CGState",
    "CGSolver",
    "ConvergenceCriteria",
    "DEFAULT_BACKTRACK_RATE",
]

DEFAULT_CONVERGENCE_MIN_K = 10.0
DEFAULT_CONVERGENCE_K_SCALE = 0.1
DEFAULT_CONVERGENCE_EPSILON = 0.0005
DEFAULT_BACKTRACK_RATE = 1.3


class CGState(Enum):
    UNINITIALIZED = "uninitialized"
    ITERATING = "iterating"
    CONVERGED = "converged"
    EXHAUSTED = "exhausted"


@dataclass
class ConvergenceCriteria:
    """Relative-change termination parameters from Martens (2010).

    Zero values fall back to the paper's defaults.
    """

    min_k: float = DEFAULT_CONVERGENCE_MIN_K
    k_scale: float = DEFAULT_CONVERGENCE_K_SCALE
    epsilon: float = DEFAULT_CONVERGENCE_EPSILON

    def __post_init__(self) -> None:
        assert self.min_k >= 0.0 and self.k_scale >= 0.0 and self.epsilon >= 0.0, (
            "convergence parameters must be non-negative"
        )
        self.min_k = self.min_k or DEFAULT_CONVERGENCE_MIN_K
        self.k_scale = self.k_scale or DEFAULT_CONVERGENCE_K_SCALE
        self.epsilon = self.epsilon or DEFAULT_CONVERGENCE_EPSILON

    def window(self, iteration: int) -> float:
        return max(self.min_k, self.k_scale * iteration)

    def converged(self, quad_values: Sequence[float], start: float) -> bool:
        """Check the relative-progress test on a history of model values.

        ``quad_values[i]`` is the model value after ``i`` iterations.
        """
        iteration = len(quad_values) - 1
        k = self.window(iteration)
        if iteration <= k:
            return False
        current = quad_values[-1] - start
        if current >= 0.0:
            return False
        old = quad_values[iteration - int(k)] - start
        return (current - old) / current < k * self.epsilon


class CGSolver:
    """Step-wise CG solver for a single mini-batch's quadratic model.

    Args:
        objective: The (damped) model to minimize; must also evaluate the true
            cost for backtracking.
        samples: Mini-batch the model is evaluated on.
        parameters: Parameters the deltas range over.
        solution: Optional warm start. The solver takes ownership of it.
        criteria: Termination parameters.
        backtrack_rate: Growth factor between checkpoint iterations (> 1).
        max_iterations: Optional hard cap; reaching it marks the run exhausted.
        pool: Source of every temporary delta.
        ui: Optional sink for CG progress.
    """

    def __init__(
        self,
        objective: Objective,
        samples: SampleSet,
        parameters: Sequence[Parameter],
        solution: Optional[ParamDelta] = None,
        criteria: Optional[ConvergenceCriteria] = None,
        backtrack_rate: float = DEFAULT_BACKTRACK_RATE,
        max_iterations: Optional[int] = None,
        pool: Optional[DeltaPool] = None,
        ui: Optional[UI] = None,
    ) -> None:
        assert backtrack_rate > 1.0, "backtrack_rate must exceed 1"
        assert max_iterations is None or max_iterations > 0, "max_iterations must be positive"
        self.objective = objective
        self.samples = samples
        self.parameters = list(parameters)
        self.solution = solution
        self.criteria = criteria if criteria is not None else ConvergenceCriteria()
        self.backtrack_rate = float(backtrack_rate)
        self.max_iterations = max_iterations
        self.pool = pool if pool is not None else DeltaPool()
        self.ui = ui

        self.state = CGState.UNINITIALIZED
        self.iteration = 0
        self.quad_values: List[float] = []
        self.start_objective = 0.0
        self.checkpoints: List[Tuple[int, float]] = []

        self._residual: Optional[ParamDelta] = None
        self._direction: Optional[ParamDelta] = None
        self._projected: Optional[ParamDelta] = None
        self._residual_mag2 = 0.0
        self._next_checkpoint = 1.0
        self._snapshots: List[ParamDelta] = []
        self._solution_objective: Optional[float] = None

    @property
    def done(self) -> bool:
        return self.state in (CGState.CONVERGED, CGState.EXHAUSTED)

    def step(self) -> bool:
        """Run one CG iteration; returns ``False`` once the run is over."""
        if self.done:
            return False
        if self.state is CGState.UNINITIALIZED:
            self._initialize()
            if self._residual_mag2 == 0.0:
                self.state = CGState.CONVERGED
                return False

        assert self.solution is not None and self._residual is not None and self._direction is not None
        self._projected = self._zeroed(self._projected)
        projected, quad_value = self.objective.quad_hessian(
            self._direction, self.solution, self.samples, self._projected
        )
        self._record_current(quad_value)
        curvature = self._direction.dot(projected)
        if curvature <= 0.0:
            self.state = CGState.EXHAUSTED
            return False

        step_size = self._residual_mag2 / curvature
        slope = -self._direction.dot(self._residual)
        self.solution.add_delta(self._direction, step_size)
        self._solution_objective = None
        self.iteration += 1
        new_quad = quad_value + step_size * slope + 0.5 * step_size * step_size * curvature
        self.quad_values.append(new_quad)
        if self.ui is not None:
            self.ui.log_cg_iteration(step_size, new_quad)

        if self.criteria.converged(self.quad_values, self.start_objective):
            self.state = CGState.CONVERGED
            return False

        old_mag2 = self._residual_mag2
        self._residual.add_delta(projected, -step_size)
        self._residual_mag2 = self._residual.magnitude2()
        beta = self._residual_mag2 / old_mag2
        self._direction.scale(beta).add_delta(self._residual)

        self._update_checkpoints()
        if self._residual_mag2 == 0.0:
            self.state = CGState.CONVERGED
            return False
        if self.max_iterations is not None and self.iteration >= self.max_iterations:
            self.state = CGState.EXHAUSTED
            return False
        return True

    def best(self) -> ParamDelta:
        """Lowest true-cost candidate; ties go to the most recent one.

        The returned delta still belongs to the solver until ``release()``.
        """
        if self.solution is None:
            self._initialize()
        assert self.solution is not None
        best = self.solution
        best_value = self.solution_objective()
        for snapshot, (_, value) in zip(reversed(self._snapshots), reversed(self.checkpoints)):
            if value < best_value:
                best, best_value = snapshot, value
        return best

    def solution_objective(self) -> float:
        """True cost at the current iterate (cached until the next step)."""
        assert self.solution is not None, "solver has no iterate yet"
        if self._solution_objective is None:
            self._solution_objective = self.objective.objective(self.solution, self.samples)
        return self._solution_objective

    def release(self) -> Optional[ParamDelta]:
        """Return every temporary to the pool except the final iterate.

        The final iterate is handed back for use as the next warm start.
        """
        for temp in (self._residual, self._direction, self._projected):
            if temp is not None:
                self.pool.release(temp)
        for snapshot in self._snapshots:
            self.pool.release(snapshot)
        self._residual = self._direction = self._projected = None
        self._snapshots = []
        self.checkpoints = []
        solution, self.solution = self.solution, None
        return solution

    def _initialize(self) -> None:
        if self.solution is None:
            self.solution = self.pool.alloc(self.parameters)
        self._residual = self.objective.quad_grad(
            self.solution, self.samples, self.pool.alloc(self.parameters)
        ).scale(-1.0)
        self._direction = self._residual.copy_into(self.pool.alloc(self.parameters))
        self._residual_mag2 = self._residual.magnitude2()
        self.start_objective = self.objective.objective(ParamDelta(), self.samples)
        self.state = CGState.ITERATING
        if self.ui is not None:
            self.ui.log_cg_start(self._residual_mag2, self.start_objective)

    def _record_current(self, quad_value: float) -> None:
        if len(self.quad_values) == self.iteration:
            self.quad_values.append(quad_value)
        else:
            self.quad_values[self.iteration] = quad_value

    def _update_checkpoints(self) -> None:
        if self.iteration < math.ceil(self._next_checkpoint):
            return
        assert self.solution is not None
        snapshot = self.solution.copy_into(self.pool.alloc(self.parameters))
        self._snapshots.append(snapshot)
        self.checkpoints.append((self.iteration, self.solution_objective()))
        while math.ceil(self._next_checkpoint) <= self.iteration:
            self._next_checkpoint *= self.backtrack_rate

    def _zeroed(self, delta: Optional[ParamDelta]) -> ParamDelta:
        if delta is None:
            return self.pool.alloc(self.parameters)
        for vec in delta.values():
            vec.fill(0.0)
        return delta
