"""Train a small model with Hessian-Free and log the trace to Polars CSV.

Two synthetic tasks:
- ``mlp``: Gaussian blobs classified by a tanh network with a log-softmax
  output and dot cost (torch backend);
- ``linear``: noisy linear regression solved by the numpy least-squares
  learner.

The run stops after ``--batches`` mini-batches or on Ctrl+C. Rows land in
``logs/<name>.csv`` and can be plotted with
``experiments/plots/plot_training_trace.py``.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass, field
from typing import List, Tuple

import numpy as np

from cf_logging.observability import TrainingTracker
from hessfree.cg import ConvergenceCriteria
from hessfree.damping import DampingLearner
from hessfree.interfaces import Learner, UI
from hessfree.least_squares import LeastSquaresLearner
from hessfree.samples import SliceSampleSet, vector_sample_set
from hessfree.trainer import Trainer
from hessfree.ui import ConsoleUI, NullUI


@dataclass
class BatchBudgetUI:
    """Forwards events to ``inner`` and asks to stop once ``max_batches`` are done."""

    inner: UI = field(default_factory=NullUI)
    max_batches: int = 20
    batches: int = 0

    def log_cg_start(self, residual_mag2: float, objective_value: float) -> None:
        self.inner.log_cg_start(residual_mag2, objective_value)

    def log_cg_iteration(self, step_size: float, quad_value: float) -> None:
        self.inner.log_cg_iteration(step_size, quad_value)

    def log_new_mini_batch(self, epoch: int, batch: int) -> None:
        self.batches += 1
        self.inner.log_new_mini_batch(epoch, batch)

    def log_damping(self, trust: float, coeff: float) -> None:
        self.inner.log_damping(trust, coeff)

    def log(self, sender: str, message: str) -> None:
        self.inner.log(sender, message)

    def should_stop(self) -> bool:
        return self.batches > self.max_batches or self.inner.should_stop()


def make_blobs(n: int, classes: int, dim: int, seed: int) -> SliceSampleSet:
    rng = np.random.default_rng(seed)
    centers = rng.normal(0.0, 2.0, size=(classes, dim))
    labels = rng.integers(0, classes, size=n)
    inputs = centers[labels] + rng.normal(0.0, 0.7, size=(n, dim))
    outputs = np.eye(classes)[labels]
    return vector_sample_set(inputs, outputs)


def make_regression(n: int, dim: int, out_dim: int, seed: int) -> SliceSampleSet:
    rng = np.random.default_rng(seed)
    w = rng.normal(size=(out_dim, dim))
    b = rng.normal(size=out_dim)
    inputs = rng.normal(size=(n, dim))
    outputs = inputs @ w.T + b + rng.normal(0.0, 0.1, size=(n, out_dim))
    return vector_sample_set(inputs, outputs)


def build(model: str, hidden: int, sub_batch: int, workers: int, seed: int) -> Tuple[Learner, SliceSampleSet]:
    if model == "linear":
        samples = make_regression(400, dim=8, out_dim=3, seed=seed)
        learner: Learner = LeastSquaresLearner(
            8, 3, max_sub_batch=sub_batch, max_concurrency=workers, seed=seed
        )
        return learner, samples
    from hessfree.torch_backend import NeuralNetLearner, build_network

    samples = make_blobs(600, classes=4, dim=6, seed=seed)
    layers = build_network([6, hidden, 4], hidden_activation="tanh", seed=seed)
    learner = NeuralNetLearner(
        layers,
        output="log_softmax",
        cost="dot",
        max_sub_batch=sub_batch,
        max_concurrency=workers,
    )
    return learner, samples


def run(
    model: str = "mlp",
    batches: int = 20,
    batch_size: int = 100,
    hidden: int = 16,
    sub_batch: int = 0,
    workers: int = 0,
    damping: float = 1.0,
    seed: int = 0,
    name: str = "hf_trace",
    verbose: bool = False,
) -> List[float]:
    base, samples = build(model, hidden, sub_batch, workers, seed)
    inner: UI = ConsoleUI() if verbose else NullUI()
    budget = BatchBudgetUI(inner=inner, max_batches=batches)
    tracker = TrainingTracker(name=name, run_id=f"{model}-seed{seed}", inner=budget)
    learner = DampingLearner(base, damping_coeff=damping, ui=tracker)
    trainer = Trainer(
        learner,
        samples,
        batch_size=batch_size,
        ui=tracker,
        convergence=ConvergenceCriteria(),
        rng=np.random.default_rng(seed),
    )
    objectives: List[float] = []
    try:
        trainer.train()
    finally:
        if isinstance(inner, ConsoleUI):
            inner.close()
        objectives = [row["objective"] for row in tracker.buffer if row["event"] == "cg_start"]
        tracker.flush()
    return objectives


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--model", choices=["mlp", "linear"], default="mlp")
    parser.add_argument("--batches", type=int, default=20)
    parser.add_argument("--batch_size", type=int, default=100)
    parser.add_argument("--hidden", type=int, default=16)
    parser.add_argument("--sub_batch", type=int, default=0)
    parser.add_argument("--workers", type=int, default=0)
    parser.add_argument("--damping", type=float, default=1.0)
    parser.add_argument("--seed", type=int, default=0)
    parser.add_argument("--name", type=str, default="hf_trace")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    objectives = run(
        model=args.model,
        batches=args.batches,
        batch_size=args.batch_size,
        hidden=args.hidden,
        sub_batch=args.sub_batch,
        workers=args.workers,
        damping=args.damping,
        seed=args.seed,
        name=args.name,
        verbose=args.verbose,
    )
    if objectives:
        print(f"mini-batch cost: first={objectives[0]:.4f}, last={objectives[-1]:.4f}")
    print(f"trace written to logs/{args.name}.csv")


if __name__ == "__main__":
    main()
