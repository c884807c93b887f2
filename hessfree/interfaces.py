"""Interfaces for Hessian-Free optimization.

Exposes typed Protocols for quadratic objectives, learners, sample sets and
the UI sink. Concrete implementations live in the sibling modules.
"""

from __future__ import annotations

from typing import Any, List, Optional, Protocol, Tuple, runtime_checkable

from .param_delta import ParamDelta, Parameter

__all__ = [
    "SampleSet",
    "QuadObjective",
    "Objective",
    "WrappedObjective",
    "Learner",
    "UI",
]


@runtime_checkable
class SampleSet(Protocol):
    """Ordered, indexable, sliceable collection of training samples."""

    def __len__(self) -> int:
        ...

    def __getitem__(self, index: int) -> Any:
        ...

    def subset(self, start: int, end: int) -> "SampleSet":
        """Return samples ``[start, end)`` in their current order."""
        ...

    def shuffle(self, rng: Any = None) -> None:
        """Permute the samples in place."""
        ...


@runtime_checkable
class QuadObjective(Protocol):
    """Quadratic approximation of a cost centered at the current parameters.

    Implementations must be pure for fixed parameters: CG queries the value,
    the gradient and the curvature product of the same model and relies on
    them agreeing.
    """

    def quad(self, delta: ParamDelta, samples: SampleSet) -> float:
        """Evaluate the quadratic model at ``delta``."""
        ...

    def quad_grad(
        self,
        delta: ParamDelta,
        samples: SampleSet,
        out: Optional[ParamDelta] = None,
    ) -> ParamDelta:
        """Gradient of the model at ``delta``, summed into ``out`` when given."""
        ...

    def quad_hessian(
        self,
        delta: ParamDelta,
        x: ParamDelta,
        samples: SampleSet,
        out: Optional[ParamDelta] = None,
    ) -> Tuple[ParamDelta, float]:
        """Curvature product with ``delta`` plus the model's value at ``x``.

        The vector is summed into ``out`` when given.
        """
        ...


@runtime_checkable
class Objective(QuadObjective, Protocol):
    """A quadratic model that can also evaluate the true cost."""

    def objective(self, delta: ParamDelta, samples: SampleSet) -> float:
        """True cost at ``delta``; an empty delta means the center."""
        ...


@runtime_checkable
class WrappedObjective(QuadObjective, Protocol):
    """Like ``Objective`` but the true cost is only available at the center."""

    def parameters(self) -> List[Parameter]:
        """Parameters the gradient and curvature products are taken over."""
        ...

    def objective_at_zero(self, samples: SampleSet) -> float:
        """True cost using the live parameter vectors."""
        ...


@runtime_checkable
class Learner(Protocol):
    """Something with parameters that can build objectives around them."""

    def parameters(self) -> List[Parameter]:
        ...

    def make_objective(self) -> Objective:
        """Build an objective centered at the current parameters.

        Called once before every ``adjust``.
        """
        ...

    def adjust(self, adjustment: ParamDelta, quad_min: ParamDelta, samples: SampleSet) -> None:
        """Apply an accepted update.

        ``adjustment`` is the (backtracked) delta to apply; ``quad_min`` is the
        last CG iterate. ``samples`` is the mini-batch both were computed on.
        """
        ...


@runtime_checkable
class UI(Protocol):
    """Sink for training events plus a non-blocking stop poll."""

    def log_cg_start(self, residual_mag2: float, objective_value: float) -> None:
        ...

    def log_cg_iteration(self, step_size: float, quad_value: float) -> None:
        ...

    def log_new_mini_batch(self, epoch: int, batch: int) -> None:
        ...

    def log_damping(self, trust: float, coeff: float) -> None:
        ...

    def log(self, sender: str, message: str) -> None:
        ...

    def should_stop(self) -> bool:
        ...
