"""Levenberg–Marquardt style damping for Hessian-Free learners.

``DampingLearner`` wraps another learner, adds ``coeff * n * ||delta||^2`` to
every quadratic model it hands out (``n`` being the batch size, since the
cost is a per-sample sum) and rescales ``coeff`` after each update using the
reduction-ratio heuristic from Martens (2010):

    rho = (f(delta) - f(0)) / (q(delta) - q(0))

    rho < 0.25  ->  coeff *= 3/2
    rho > 0.75  ->  coeff *= 2/3
"""

from __future__ import annotations

import math
import warnings
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .interfaces import Learner, Objective, SampleSet, UI
from .param_delta import ParamDelta, Parameter

__all__ = ["DampingLearner", "DampedObjective", "DEFAULT_DAMPING_COEFF", "trust_ratio"]

DEFAULT_DAMPING_COEFF = 1.0

RAISE_THRESHOLD = 0.25
LOWER_THRESHOLD = 0.75
RAISE_FACTOR = 3.0 / 2.0
LOWER_FACTOR = 2.0 / 3.0


def trust_ratio(objective: Objective, delta: ParamDelta, samples: SampleSet) -> float:
    """Actual over predicted change in cost for ``delta``; NaN if undefined."""
    center = objective.objective(ParamDelta(), samples)
    real_offset = objective.objective(delta, samples)
    quad_offset = objective.quad(delta, samples)
    denom = quad_offset - center
    if denom == 0.0:
        return float("nan")
    return (real_offset - center) / denom


def _add_present(res: ParamDelta, delta: ParamDelta, s: float) -> ParamDelta:
    """Add ``s * delta`` into ``res``; parameters absent from ``delta`` count as zero."""
    for param, vec in delta.items():
        assert param in res, f"result is missing {param!r}"
        assert res[param].shape == vec.shape, f"length mismatch for {param!r}"
        res[param] += s * vec
    return res


@dataclass
class DampedObjective:
    """Adds ``coeff * n * ||delta||^2`` to a wrapped objective's quadratic model."""

    wrapped: Objective
    coeff: float

    def quad(self, delta: ParamDelta, samples: SampleSet) -> float:
        res = self.wrapped.quad(delta, samples)
        return res + len(samples) * self.coeff * delta.magnitude2()

    def quad_grad(
        self,
        delta: ParamDelta,
        samples: SampleSet,
        out: Optional[ParamDelta] = None,
    ) -> ParamDelta:
        res = self.wrapped.quad_grad(delta, samples, out)
        return _add_present(res, delta, 2 * len(samples) * self.coeff)

    def quad_hessian(
        self,
        delta: ParamDelta,
        x: ParamDelta,
        samples: SampleSet,
        out: Optional[ParamDelta] = None,
    ) -> Tuple[ParamDelta, float]:
        res, value = self.wrapped.quad_hessian(delta, x, samples, out)
        scaler = len(samples) * self.coeff
        _add_present(res, delta, 2 * scaler)
        return res, value + scaler * x.magnitude2()

    def objective(self, delta: ParamDelta, samples: SampleSet) -> float:
        return self.wrapped.objective(delta, samples)


@dataclass
class DampingLearner:
    """Wraps a learner in the damping mechanism of Martens (2010).

    Args:
        wrapped: The learner whose objectives get damped.
        damping_coeff: Coefficient for the squared-delta term. Zero means
            "unset" and is replaced by ``DEFAULT_DAMPING_COEFF`` on the first
            ``make_objective`` call.
        use_quad_min: Judge the model with the last CG iterate instead of the
            backtracked adjustment.
        ui: Optional sink for damping updates.
    """

    wrapped: Learner
    damping_coeff: float = 0.0
    use_quad_min: bool = False
    ui: Optional[UI] = None
    last_trust: Optional[float] = field(default=None, init=False)
    _last_objective: Optional[Objective] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        assert self.damping_coeff >= 0.0, "damping_coeff must be non-negative"

    def parameters(self) -> List[Parameter]:
        return self.wrapped.parameters()

    def make_objective(self) -> DampedObjective:
        if self.damping_coeff == 0.0:
            self.damping_coeff = DEFAULT_DAMPING_COEFF
        self._last_objective = self.wrapped.make_objective()
        return DampedObjective(wrapped=self._last_objective, coeff=self.damping_coeff)

    def adjust(self, adjustment: ParamDelta, quad_min: ParamDelta, samples: SampleSet) -> None:
        assert self._last_objective is not None, "make_objective() must be called before adjust()"
        judged = quad_min if self.use_quad_min else adjustment
        # Must run before the wrapped learner moves the parameters.
        trust = trust_ratio(self._last_objective, judged, samples)

        self.wrapped.adjust(adjustment, quad_min, samples)

        self.last_trust = trust
        message = None
        if not math.isfinite(trust):
            warnings.warn(
                f"reduction ratio is {trust}; damping left at {self.damping_coeff:g}",
                RuntimeWarning,
                stacklevel=2,
            )
        elif trust < RAISE_THRESHOLD:
            self.damping_coeff *= RAISE_FACTOR
            message = f"raised damping to {self.damping_coeff:f}"
        elif trust > LOWER_THRESHOLD:
            self.damping_coeff *= LOWER_FACTOR
            message = f"lowered damping to {self.damping_coeff:f}"
        if self.ui is not None:
            self.ui.log_damping(trust, self.damping_coeff)
            if message is not None:
                self.ui.log("DampingLearner", message)
