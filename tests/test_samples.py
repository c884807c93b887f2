from __future__ import annotations

import numpy as np
import pytest

from hessfree.interfaces import SampleSet
from hessfree.samples import SliceSampleSet, vector_sample_set


def test_vector_sample_set_pairs_inputs_and_outputs() -> None:
    samples = vector_sample_set([[1.0, 2.0], [3.0, 4.0]], [[0.0], [1.0]])
    assert isinstance(samples, SampleSet)
    assert len(samples) == 2
    assert np.array_equal(samples[1].input, [3.0, 4.0])
    assert samples[1].output.dtype == np.float64
    with pytest.raises(AssertionError):
        vector_sample_set([[1.0]], [])


def test_subset_is_contiguous_and_shares_samples() -> None:
    samples = vector_sample_set([[float(i)] for i in range(6)], [[0.0]] * 6)
    sub = samples.subset(2, 5)
    assert len(sub) == 3
    assert sub[0] is samples[2]
    assert len(samples.subset(4, 4)) == 0
    with pytest.raises(AssertionError):
        samples.subset(3, 7)


def test_shuffle_permutes_in_place_and_spares_subsets() -> None:
    samples = vector_sample_set([[float(i)] for i in range(20)], [[0.0]] * 20)
    original = list(samples)
    sub = samples.subset(0, 5)
    sub_before = list(sub)
    samples.shuffle(np.random.default_rng(0))
    assert sorted(id(s) for s in samples) == sorted(id(s) for s in original)
    assert [s.input[0] for s in samples] != [s.input[0] for s in original]
    assert list(sub) == sub_before


def test_shuffle_is_reproducible_with_seeded_generator() -> None:
    a = SliceSampleSet(list(range(10)))
    b = SliceSampleSet(list(range(10)))
    a.shuffle(np.random.default_rng(42))
    b.shuffle(np.random.default_rng(42))
    assert list(a) == list(b)
