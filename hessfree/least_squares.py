"""Linear least-squares learner backed by plain numpy.

The per-sample cost ``0.5 * ||W x + b - y||^2`` is already quadratic in the
parameters, so the quadratic model here is exact: its curvature is the true
Hessian ``J^T J`` and ``quad(d) == objective(d)`` for every ``d``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np

from .caches import DeltaPool
from .concurrent_objective import ConcurrentObjective
from .interfaces import SampleSet
from .param_delta import ParamDelta, Parameter

__all__ = ["LeastSquaresObjective", "LeastSquaresLearner", "stack_samples"]


def stack_samples(samples: SampleSet) -> Tuple[np.ndarray, np.ndarray]:
    """Join ``VectorSample``-like items into ``(inputs, outputs)`` matrices."""
    assert len(samples) > 0, "cannot stack an empty sample set"
    ins = np.stack([np.asarray(samples[i].input, dtype=np.float64) for i in range(len(samples))])
    outs = np.stack([np.asarray(samples[i].output, dtype=np.float64) for i in range(len(samples))])
    return ins, outs


@dataclass
class LeastSquaresObjective:
    """``WrappedObjective`` for ``y ~ W x + b`` centered at construction time."""

    weights: Parameter
    biases: Parameter
    input_size: int
    output_size: int
    _w0: np.ndarray = field(init=False, repr=False)
    _b0: np.ndarray = field(init=False, repr=False)

    def __post_init__(self) -> None:
        assert len(self.weights) == self.input_size * self.output_size, "weight size mismatch"
        assert len(self.biases) == self.output_size, "bias size mismatch"
        self._w0 = self.weights.vector.reshape(self.output_size, self.input_size).copy()
        self._b0 = self.biases.vector.copy()

    def parameters(self) -> List[Parameter]:
        return [self.weights, self.biases]

    def quad(self, delta: ParamDelta, samples: SampleSet) -> float:
        if len(samples) == 0:
            return 0.0
        ins, outs = stack_samples(samples)
        w, b = self._offset(delta)
        err = ins @ w.T + b - outs
        return 0.5 * float(np.sum(err * err))

    def quad_grad(
        self,
        delta: ParamDelta,
        samples: SampleSet,
        out: Optional[ParamDelta] = None,
    ) -> ParamDelta:
        if out is None:
            out = ParamDelta.zeros(self.parameters())
        if len(samples) == 0:
            return out
        ins, outs = stack_samples(samples)
        w, b = self._offset(delta)
        err = ins @ w.T + b - outs
        out[self.weights] += (err.T @ ins).reshape(-1)
        out[self.biases] += err.sum(axis=0)
        return out

    def quad_hessian(
        self,
        delta: ParamDelta,
        x: ParamDelta,
        samples: SampleSet,
        out: Optional[ParamDelta] = None,
    ) -> Tuple[ParamDelta, float]:
        if out is None:
            out = ParamDelta.zeros(self.parameters())
        if len(samples) == 0:
            return out, 0.0
        ins, outs = stack_samples(samples)
        dw, db = self._components(delta)
        jd = ins @ dw.T + db
        out[self.weights] += (jd.T @ ins).reshape(-1)
        out[self.biases] += jd.sum(axis=0)

        w, b = self._offset(x)
        err = ins @ w.T + b - outs
        return out, 0.5 * float(np.sum(err * err))

    def objective_at_zero(self, samples: SampleSet) -> float:
        if len(samples) == 0:
            return 0.0
        ins, outs = stack_samples(samples)
        w = self.weights.vector.reshape(self.output_size, self.input_size)
        err = ins @ w.T + self.biases.vector - outs
        return 0.5 * float(np.sum(err * err))

    def _components(self, delta: ParamDelta) -> Tuple[np.ndarray, np.ndarray]:
        dw = delta.get(self.weights)
        db = delta.get(self.biases)
        dw_mat = (
            np.zeros_like(self._w0) if dw is None else dw.reshape(self.output_size, self.input_size)
        )
        return dw_mat, (np.zeros_like(self._b0) if db is None else db)

    def _offset(self, delta: ParamDelta) -> Tuple[np.ndarray, np.ndarray]:
        dw, db = self._components(delta)
        return self._w0 + dw, self._b0 + db


@dataclass
class LeastSquaresLearner:
    """Linear regression learner producing concurrent least-squares objectives."""

    input_size: int
    output_size: int
    max_sub_batch: int = 0
    max_concurrency: int = 0
    pool: DeltaPool = field(default_factory=DeltaPool)
    seed: Optional[int] = None
    weights: Parameter = field(init=False)
    biases: Parameter = field(init=False)

    def __post_init__(self) -> None:
        assert self.input_size > 0 and self.output_size > 0, "layer sizes must be positive"
        rng = np.random.default_rng(self.seed)
        scale = 1.0 / np.sqrt(self.input_size)
        self.weights = Parameter(
            rng.normal(0.0, scale, size=self.input_size * self.output_size), name="weights"
        )
        self.biases = Parameter(np.zeros(self.output_size), name="biases")

    def parameters(self) -> List[Parameter]:
        return [self.weights, self.biases]

    def make_objective(self) -> ConcurrentObjective:
        return ConcurrentObjective(
            wrapped=LeastSquaresObjective(
                self.weights, self.biases, self.input_size, self.output_size
            ),
            max_concurrency=self.max_concurrency,
            max_sub_batch=self.max_sub_batch,
            pool=self.pool,
        )

    def adjust(self, adjustment: ParamDelta, quad_min: ParamDelta, samples: SampleSet) -> None:
        adjustment.add_to_vars()

    def predict(self, inputs: np.ndarray) -> np.ndarray:
        w = self.weights.vector.reshape(self.output_size, self.input_size)
        return np.asarray(inputs, dtype=np.float64) @ w.T + self.biases.vector
