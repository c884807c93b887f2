from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from cf_logging.metrics_log import log_records
from hessfree.interfaces import UI
from hessfree.ui import NullUI


@dataclass
class TrainingTracker:
    """UI that records training events to a Polars CSV and forwards them.

    Every event becomes one row with the same columns; fields an event does
    not carry are NaN. ``should_stop`` is delegated to ``inner``.

    Usage:
        tracker = TrainingTracker(name="hf_trace", run_id="demo", inner=ConsoleUI())
        Trainer(learner, samples, batch_size=50, ui=tracker).train()
        tracker.flush()
    """
    name: str
    run_id: str
    inner: Optional[UI] = None
    flush_every: int = 0
    buffer: List[Dict[str, Any]] = field(default_factory=list)
    epoch: int = 0
    batch: int = 0
    cg_iteration: int = 0
    start_time: Optional[float] = None

    def __post_init__(self) -> None:
        if self.inner is None:
            self.inner = NullUI()
        assert self.flush_every >= 0, "flush_every must be non-negative"

    def log_cg_start(self, residual_mag2: float, objective_value: float) -> None:
        self.cg_iteration = 0
        self._record("cg_start", residual2=residual_mag2, objective=objective_value)
        self.inner.log_cg_start(residual_mag2, objective_value)

    def log_cg_iteration(self, step_size: float, quad_value: float) -> None:
        self.cg_iteration += 1
        self._record("cg_iteration", step_size=step_size, quad=quad_value)
        self.inner.log_cg_iteration(step_size, quad_value)

    def log_new_mini_batch(self, epoch: int, batch: int) -> None:
        self.epoch = int(epoch)
        self.batch = int(batch)
        self._record("mini_batch")
        self.inner.log_new_mini_batch(epoch, batch)

    def log_damping(self, trust: float, coeff: float) -> None:
        self._record("damping", trust=trust, damping=coeff)
        self.inner.log_damping(trust, coeff)

    def log(self, sender: str, message: str) -> None:
        self.inner.log(sender, message)

    def should_stop(self) -> bool:
        return self.inner.should_stop()

    def flush(self) -> None:
        if self.buffer:
            log_records(self.name, self.buffer)
            self.buffer.clear()

    def _record(self, event: str, **values: float) -> None:
        now = time.perf_counter()
        if self.start_time is None:
            self.start_time = now
        nan = float("nan")
        row: Dict[str, Any] = {
            "run_id": self.run_id,
            "event": event,
            "epoch": self.epoch,
            "batch": self.batch,
            "cg_iteration": self.cg_iteration,
            "elapsed": float(now - self.start_time),
            "residual2": float(values.get("residual2", nan)),
            "objective": float(values.get("objective", nan)),
            "step_size": float(values.get("step_size", nan)),
            "quad": float(values.get("quad", nan)),
            "trust": float(values.get("trust", nan)),
            "damping": float(values.get("damping", nan)),
        }
        self.buffer.append(row)
        if self.flush_every and len(self.buffer) >= self.flush_every:
            self.flush()
