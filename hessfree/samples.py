"""In-memory sample sets."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, List, Optional, Sequence

import numpy as np

__all__ = ["VectorSample", "SliceSampleSet", "vector_sample_set"]


@dataclass(frozen=True, eq=False)
class VectorSample:
    """A single (input, expected output) pair."""

    input: np.ndarray
    output: np.ndarray


@dataclass
class SliceSampleSet:
    """A list-backed sample set.

    ``subset`` returns a new set over the same sample objects, so shuffling a
    subset never reorders its parent.
    """

    samples: List[Any] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.samples)

    def __getitem__(self, index: int) -> Any:
        return self.samples[index]

    def __iter__(self) -> Iterator[Any]:
        return iter(self.samples)

    def subset(self, start: int, end: int) -> "SliceSampleSet":
        assert 0 <= start <= end <= len(self.samples), "subset bounds out of range"
        return SliceSampleSet(self.samples[start:end])

    def shuffle(self, rng: Optional[np.random.Generator] = None) -> None:
        gen = rng if rng is not None else np.random.default_rng()
        order = gen.permutation(len(self.samples))
        self.samples = [self.samples[int(i)] for i in order]


def vector_sample_set(inputs: Sequence[Sequence[float]], outputs: Sequence[Sequence[float]]) -> SliceSampleSet:
    """Pair up inputs and expected outputs."""
    assert len(inputs) == len(outputs), "inputs/outputs length mismatch"
    return SliceSampleSet([
        VectorSample(np.asarray(x, dtype=np.float64), np.asarray(y, dtype=np.float64))
        for x, y in zip(inputs, outputs)
    ])
