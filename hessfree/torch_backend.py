"""Gauss–Newton objectives for dense networks via PyTorch autograd.

The network's layers are linearized around the center parameters while the
output layer and cost are expanded to second order, which yields a
positive semi-definite curvature model whenever the output layer and cost
match (Schraudolph 2002). Writing ``z(theta)`` for the last layer's
pre-output activations, ``J`` for its Jacobian at the center, ``L`` for the
output stage plus cost, ``g = dL/dz`` and ``H = d2L/dz2``:

    quad(d)           = L(z0) + g.(J d) + 0.5 (J d).H(J d)
    quad_grad(d)      = J^T (g + H J d)
    quad_hessian(d,x) = (J^T H J d, quad(x))

``J^T v`` is a plain backward pass. ``J d`` differentiates ``J^T w`` with
respect to a dummy ``w`` (double backward), and ``H u`` differentiates
``dL/dz`` along ``u``. Only reverse mode is used, so every call can run in
its own thread. Costs are sums over samples.

Usage:
    layers = build_network([5, 2, 3], hidden_activation="tanh", seed=123)
    learner = NeuralNetLearner(layers, output="log_softmax", cost="dot")
    objective = learner.make_objective()

Torch is required for this module; install with `pip install torch`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Tuple

import numpy as np

from .caches import DeltaPool
from .concurrent_objective import ConcurrentObjective
from .interfaces import SampleSet
from .least_squares import stack_samples
from .param_delta import ParamDelta, Parameter

__all__ = [
    "DenseLayer",
    "GaussNewtonNN",
    "NeuralNetLearner",
    "build_network",
    "ACTIVATIONS",
    "OUTPUT_LAYERS",
    "COSTS",
]

ACTIVATIONS = ("identity", "tanh", "sigmoid", "relu")
OUTPUT_LAYERS = (None, "log_softmax")
COSTS = ("dot", "sigmoid_ce", "squared")


def _require_torch() -> Any:
    try:
        import torch
    except Exception as exc:  # pragma: no cover - optional dependency
        raise RuntimeError(
            "PyTorch is required for the torch backend. Install with `pip install torch`."
        ) from exc
    return torch


@dataclass
class DenseLayer:
    """Fully connected layer ``act(W x + b)`` with its own parameters."""

    input_count: int
    output_count: int
    activation: str = "identity"
    weights: Parameter = field(init=False)
    biases: Parameter = field(init=False)

    def __post_init__(self) -> None:
        assert self.input_count > 0 and self.output_count > 0, "layer sizes must be positive"
        if self.activation not in ACTIVATIONS:
            raise ValueError(f"Unsupported activation {self.activation!r}; expected one of {ACTIVATIONS}")
        self.weights = Parameter(np.zeros(self.input_count * self.output_count), name="weights")
        self.biases = Parameter(np.zeros(self.output_count), name="biases")

    def parameters(self) -> List[Parameter]:
        return [self.weights, self.biases]

    def randomize(self, rng: np.random.Generator) -> None:
        scale = 1.0 / np.sqrt(self.input_count)
        self.weights.vector[:] = rng.normal(0.0, scale, size=len(self.weights))
        self.biases.vector[:] = rng.normal(0.0, scale, size=len(self.biases))


def build_network(
    sizes: Sequence[int],
    hidden_activation: str = "tanh",
    seed: Optional[int] = None,
) -> List[DenseLayer]:
    """Stack dense layers; every layer but the last uses ``hidden_activation``."""
    assert len(sizes) >= 2, "need at least an input and an output size"
    rng = np.random.default_rng(seed)
    layers: List[DenseLayer] = []
    for idx, (n_in, n_out) in enumerate(zip(sizes[:-1], sizes[1:])):
        last = idx == len(sizes) - 2
        layer = DenseLayer(int(n_in), int(n_out), "identity" if last else hidden_activation)
        layer.randomize(rng)
        layers.append(layer)
    return layers


def _activate(h: "torch.Tensor", activation: str) -> "torch.Tensor":
    if activation == "tanh":
        return h.tanh()
    if activation == "sigmoid":
        return h.sigmoid()
    if activation == "relu":
        return h.relu()
    return h


def _forward(layers: Sequence[DenseLayer], params: Sequence["torch.Tensor"], ins: "torch.Tensor") -> "torch.Tensor":
    h = ins
    for idx, layer in enumerate(layers):
        w = params[2 * idx].reshape(layer.output_count, layer.input_count)
        b = params[2 * idx + 1]
        h = _activate(h @ w.T + b, layer.activation)
    return h


def _output_cost(output: Optional[str], cost: str, targets: "torch.Tensor") -> Callable[["torch.Tensor"], "torch.Tensor"]:
    softplus = _require_torch().nn.functional.softplus

    def fn(z: "torch.Tensor") -> "torch.Tensor":
        out = z.log_softmax(dim=-1) if output == "log_softmax" else z
        if cost == "dot":
            return -(targets * out).sum()
        if cost == "sigmoid_ce":
            return (softplus(out) - targets * out).sum()
        diff = out - targets
        return 0.5 * (diff * diff).sum()

    return fn


@dataclass
class GaussNewtonNN:
    """``WrappedObjective`` for a dense network's Gauss–Newton model.

    The center is the parameter values at construction; ``objective_at_zero``
    reads the live parameters instead.

    Args:
        layers: Layers to linearize (all of the network).
        output: Output layer applied before the cost, ``None`` or ``"log_softmax"``.
        cost: ``"dot"`` (negative dot product with the target), ``"sigmoid_ce"``
            (sigmoid cross-entropy on logits) or ``"squared"`` (half squared error).
    """

    layers: List[DenseLayer]
    output: Optional[str] = None
    cost: str = "squared"
    _center: Tuple["torch.Tensor", ...] = field(init=False, repr=False)
    _torch: Any = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._torch = torch = _require_torch()
        if self.output not in OUTPUT_LAYERS:
            raise ValueError(f"Unsupported output layer {self.output!r}; expected one of {OUTPUT_LAYERS}")
        if self.cost not in COSTS:
            raise ValueError(f"Unsupported cost {self.cost!r}; expected one of {COSTS}")
        assert self.layers, "GaussNewtonNN needs at least one layer"
        self._center = tuple(torch.tensor(p.vector, dtype=torch.float64) for p in self.parameters())

    def parameters(self) -> List[Parameter]:
        return [p for layer in self.layers for p in layer.parameters()]

    def quad(self, delta: ParamDelta, samples: SampleSet) -> float:
        if len(samples) == 0:
            return 0.0
        ins, loss = self._batch(samples)
        params, z0 = self._linearize(ins)
        u = self._jvp(params, z0, self._tangents(delta))
        base, g, (hu,) = self._expansion(loss, z0, [u])
        return float(base + (g * u).sum() + 0.5 * (u * hu).sum())

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
        ins, loss = self._batch(samples)
        params, z0 = self._linearize(ins)
        u = self._jvp(params, z0, self._tangents(delta))
        _, g, (hu,) = self._expansion(loss, z0, [u])
        self._accumulate(out, self._vjp(params, z0, g + hu))
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
        ins, loss = self._batch(samples)
        params, z0 = self._linearize(ins)
        u_d = self._jvp(params, z0, self._tangents(delta))
        u_x = self._jvp(params, z0, self._tangents(x))
        base, g, (hu_d, hu_x) = self._expansion(loss, z0, [u_d, u_x])
        self._accumulate(out, self._vjp(params, z0, hu_d))
        value = base + (g * u_x).sum() + 0.5 * (u_x * hu_x).sum()
        return out, float(value)

    def objective_at_zero(self, samples: SampleSet) -> float:
        if len(samples) == 0:
            return 0.0
        torch = self._torch
        ins, loss = self._batch(samples)
        live = tuple(torch.as_tensor(p.vector, dtype=torch.float64) for p in self.parameters())
        with torch.no_grad():
            return float(loss(_forward(self.layers, live, ins)))

    def _batch(self, samples: SampleSet) -> Tuple["torch.Tensor", Callable[["torch.Tensor"], "torch.Tensor"]]:
        torch = self._torch
        ins, outs = stack_samples(samples)
        targets = torch.as_tensor(outs, dtype=torch.float64)
        return torch.as_tensor(ins, dtype=torch.float64), _output_cost(self.output, self.cost, targets)

    def _linearize(self, ins: "torch.Tensor") -> Tuple[Tuple["torch.Tensor", ...], "torch.Tensor"]:
        """Fresh leaf copies of the center and the network output built from them."""
        params = tuple(c.detach().clone().requires_grad_(True) for c in self._center)
        return params, _forward(self.layers, params, ins)

    def _vjp(self, params: Sequence["torch.Tensor"], z: "torch.Tensor", w: "torch.Tensor") -> Tuple["torch.Tensor", ...]:
        return self._torch.autograd.grad(z, params, grad_outputs=w, retain_graph=True)

    def _jvp(self, params: Sequence["torch.Tensor"], z: "torch.Tensor", tangents: Sequence["torch.Tensor"]) -> "torch.Tensor":
        # J^T w is linear in w, so its derivative along the tangents is J d.
        grad = self._torch.autograd.grad
        dummy = self._torch.zeros_like(z, requires_grad=True)
        jt = grad(z, params, grad_outputs=dummy, create_graph=True, retain_graph=True)
        return grad(jt, dummy, grad_outputs=tuple(tangents), retain_graph=True)[0]

    def _expansion(
        self,
        loss: Callable[["torch.Tensor"], "torch.Tensor"],
        z0: "torch.Tensor",
        directions: Sequence["torch.Tensor"],
    ) -> Tuple["torch.Tensor", "torch.Tensor", List["torch.Tensor"]]:
        """Return ``L(z0)``, ``dL/dz`` and ``d2L/dz2 @ u`` for every ``u`` in ``directions``."""
        torch = self._torch
        zz = z0.detach().requires_grad_(True)
        value = loss(zz)
        (g,) = torch.autograd.grad(value, zz, create_graph=True)
        products = []
        for u in directions:
            if g.requires_grad:
                (hu,) = torch.autograd.grad(g, zz, grad_outputs=u, retain_graph=True, allow_unused=True)
            else:
                hu = None
            products.append(torch.zeros_like(zz) if hu is None else hu)
        return value.detach(), g.detach(), products

    def _tangents(self, delta: ParamDelta) -> Tuple["torch.Tensor", ...]:
        torch = self._torch
        res = []
        for param, center in zip(self.parameters(), self._center):
            vec = delta.get(param)
            if vec is None:
                res.append(torch.zeros_like(center))
            else:
                assert vec.shape == center.shape, f"length mismatch for {param!r}"
                res.append(torch.as_tensor(vec, dtype=torch.float64))
        return tuple(res)

    def _accumulate(self, out: ParamDelta, grads: Sequence["torch.Tensor"]) -> None:
        for param, grad in zip(self.parameters(), grads):
            out[param] += grad.detach().numpy()


@dataclass
class NeuralNetLearner:
    """Learner that wraps a dense network in concurrent Gauss–Newton objectives."""

    layers: List[DenseLayer]
    output: Optional[str] = None
    cost: str = "squared"
    max_sub_batch: int = 0
    max_concurrency: int = 0
    pool: DeltaPool = field(default_factory=DeltaPool)

    def parameters(self) -> List[Parameter]:
        return [p for layer in self.layers for p in layer.parameters()]

    def make_objective(self) -> ConcurrentObjective:
        return ConcurrentObjective(
            wrapped=GaussNewtonNN(self.layers, output=self.output, cost=self.cost),
            max_concurrency=self.max_concurrency,
            max_sub_batch=self.max_sub_batch,
            pool=self.pool,
        )

    def adjust(self, adjustment: ParamDelta, quad_min: ParamDelta, samples: SampleSet) -> None:
        adjustment.add_to_vars()

    def predict(self, inputs: np.ndarray) -> np.ndarray:
        """Network output (after the output layer) for a batch of inputs."""
        torch = _require_torch()
        params = tuple(torch.as_tensor(p.vector, dtype=torch.float64) for p in self.parameters())
        with torch.no_grad():
            z = _forward(self.layers, params, torch.as_tensor(np.atleast_2d(inputs), dtype=torch.float64))
            if self.output == "log_softmax":
                z = z.log_softmax(dim=-1)
        return z.numpy()
