"""Outer mini-batch loop for Hessian-Free training."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import numpy as np

from .caches import DeltaPool
from .cg import DEFAULT_BACKTRACK_RATE, CGSolver, ConvergenceCriteria
from .interfaces import Learner, SampleSet, UI
from .param_delta import ParamDelta
from .ui import NullUI

__all__ = ["Trainer", "TrainerState"]


class TrainerState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class Trainer:
    """Runs Hessian-Free on a learner until the UI asks to stop.

    Every epoch shuffles ``samples`` and walks it in contiguous mini-batches.
    Each mini-batch gets a fresh objective from the learner, a CG run warm
    started from the previous run's final iterate, and a single ``adjust``
    with the best candidate CG found. A stop request aborts the current
    mini-batch without touching the parameters.

    Args:
        learner: Learner to train (usually a ``DampingLearner``).
        samples: Full training set; shuffled in place every epoch.
        batch_size: Mini-batch size.
        ui: Event sink and stop poll; ``None`` means ``NullUI``.
        convergence: CG termination parameters.
        backtrack_rate: CG checkpoint spacing.
        warm_start_decay: Factor applied to the warm start before reuse.
        max_cg_iterations: Optional cap on CG iterations per mini-batch.
        pool: Delta pool shared by every CG run.
        rng: Generator used for shuffling.
    """

    learner: Learner
    samples: SampleSet
    batch_size: int
    ui: Optional[UI] = None
    convergence: Optional[ConvergenceCriteria] = None
    backtrack_rate: float = DEFAULT_BACKTRACK_RATE
    warm_start_decay: float = 1.0
    max_cg_iterations: Optional[int] = None
    pool: DeltaPool = field(default_factory=DeltaPool)
    rng: np.random.Generator = field(default_factory=np.random.default_rng)

    state: TrainerState = field(default=TrainerState.IDLE, init=False)
    epoch: int = field(default=0, init=False)
    batch: int = field(default=0, init=False)
    _warm_start: Optional[ParamDelta] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        assert self.batch_size > 0, "batch_size must be positive"
        assert 0.0 <= self.warm_start_decay <= 1.0, "warm_start_decay must be in [0, 1]"
        if self.ui is None:
            self.ui = NullUI()

    def train(self) -> None:
        """Train until a stop is requested."""
        assert len(self.samples) > 0, "cannot train on an empty sample set"
        ui = self.ui
        assert ui is not None
        self.state = TrainerState.RUNNING
        try:
            while True:
                self.samples.shuffle(self.rng)
                for batch, start in enumerate(range(0, len(self.samples), self.batch_size)):
                    self.batch = batch
                    if ui.should_stop():
                        return
                    ui.log_new_mini_batch(self.epoch, self.batch)
                    end = min(start + self.batch_size, len(self.samples))
                    if not self.train_batch(self.samples.subset(start, end)):
                        return
                self.epoch += 1
        finally:
            self._discard_warm_start()
            self.state = TrainerState.STOPPED

    def train_batch(self, batch: SampleSet) -> bool:
        """Optimize one mini-batch; returns ``False`` if a stop aborted it."""
        ui = self.ui
        assert ui is not None
        objective = self.learner.make_objective()
        solver = CGSolver(
            objective,
            batch,
            self.learner.parameters(),
            solution=self._take_warm_start(),
            criteria=self.convergence,
            backtrack_rate=self.backtrack_rate,
            max_iterations=self.max_cg_iterations,
            pool=self.pool,
            ui=ui,
        )
        while solver.step():
            if ui.should_stop():
                leftover = solver.release()
                if leftover is not None:
                    self.pool.release(leftover)
                return False

        best = solver.best()
        self.learner.adjust(best, solver.solution, batch)
        self._warm_start = solver.release()
        return True

    def _take_warm_start(self) -> Optional[ParamDelta]:
        warm, self._warm_start = self._warm_start, None
        if warm is not None and self.warm_start_decay != 1.0:
            warm.scale(self.warm_start_decay)
        return warm

    def _discard_warm_start(self) -> None:
        if self._warm_start is not None:
            self.pool.release(self._warm_start)
            self._warm_start = None
