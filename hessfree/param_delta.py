"""Parameters and displacements in parameter space.

A ``Parameter`` owns a mutable float64 vector and is hashed by identity, so
the same numeric values held by two parameters never collide as mapping keys.
A ``ParamDelta`` maps parameters to displacement vectors and carries the
handful of vector operations Conjugate Gradient needs.
"""

from __future__ import annotations

from typing import Iterable, List, Optional

import numpy as np

__all__ = ["Parameter", "ParamDelta"]


class Parameter:
    """A learnable vector owned by a model.

    The optimizer reads and writes ``vector`` but never creates or destroys
    parameters. ``name`` is only used for display.
    """

    __slots__ = ("vector", "name")

    def __init__(self, vector: np.ndarray | Iterable[float], name: Optional[str] = None) -> None:
        arr = np.asarray(vector, dtype=np.float64)
        assert arr.ndim == 1, "parameter vectors must be one-dimensional"
        self.vector = arr.copy()
        self.name = name

    def __len__(self) -> int:
        return int(self.vector.shape[0])

    def __repr__(self) -> str:
        label = self.name if self.name is not None else hex(id(self))
        return f"Parameter({label}, size={len(self)})"


class ParamDelta(dict):
    """Mapping ``Parameter -> ndarray`` describing ``theta - theta0``.

    In-place operations (``scale``, ``add_delta``) mutate the receiver and
    return it; only call them on deltas you own exclusively.
    """

    @classmethod
    def zeros(cls, params: Iterable[Parameter]) -> "ParamDelta":
        res = cls()
        for param in params:
            res[param] = np.zeros(len(param), dtype=np.float64)
        return res

    def variables(self) -> List[Parameter]:
        return list(self.keys())

    def copy(self) -> "ParamDelta":
        res = ParamDelta()
        for param, vec in self.items():
            res[param] = np.array(vec, dtype=np.float64, copy=True)
        return res

    def copy_into(self, other: "ParamDelta") -> "ParamDelta":
        """Overwrite ``other``'s vectors with this delta's values."""
        for param, vec in self.items():
            self._check_operand(other, param, vec)
            other[param][:] = vec
        return other

    def dot(self, other: "ParamDelta") -> float:
        total = 0.0
        for param, vec in self.items():
            self._check_operand(other, param, vec)
            total += float(np.dot(vec, other[param]))
        return total

    def magnitude2(self) -> float:
        return float(sum(float(np.dot(vec, vec)) for vec in self.values()))

    def scale(self, s: float) -> "ParamDelta":
        for vec in self.values():
            vec *= s
        return self

    def add_delta(self, other: "ParamDelta", s: float = 1.0) -> "ParamDelta":
        """Compute ``self += s * other`` in place.

        Both deltas must cover the same parameters with equal lengths.
        """
        assert len(other) == len(self), "operands cover different parameters"
        for param, own in self.items():
            self._check_operand(other, param, own)
            vec = other[param]
            if s == 1.0:
                own += vec
            else:
                own += s * vec
        return self

    def add_to_vars(self, s: float = 1.0) -> None:
        """Apply the displacement to the live parameter vectors."""
        for param, vec in self.items():
            assert param.vector.shape == vec.shape, f"length mismatch for {param!r}"
            param.vector += s * vec

    @staticmethod
    def _check_operand(other: "ParamDelta", param: Parameter, vec: np.ndarray) -> None:
        assert param in other, f"operand is missing {param!r}"
        assert other[param].shape == vec.shape, f"length mismatch for {param!r}"
