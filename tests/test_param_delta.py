from __future__ import annotations

import math

import numpy as np
import pytest

from hessfree.param_delta import ParamDelta, Parameter


def _delta(params, *vectors) -> ParamDelta:
    res = ParamDelta()
    for param, vec in zip(params, vectors):
        res[param] = np.asarray(vec, dtype=np.float64)
    return res


def test_parameters_are_keyed_by_identity() -> None:
    a = Parameter([1.0, 2.0])
    b = Parameter([1.0, 2.0])
    delta = ParamDelta.zeros([a, b])
    assert len(delta) == 2
    delta[a][0] = 5.0
    assert delta[b][0] == 0.0


def test_parameter_copies_its_input() -> None:
    source = np.array([1.0, 2.0, 3.0])
    param = Parameter(source)
    source[0] = 99.0
    assert param.vector[0] == 1.0
    assert len(param) == 3


def test_dot_scale_and_magnitude() -> None:
    a, b = Parameter(np.zeros(2)), Parameter(np.zeros(3))
    x = _delta([a, b], [1.0, 2.0], [0.0, -1.0, 3.0])
    y = _delta([a, b], [2.0, 0.5], [1.0, 1.0, 1.0])
    assert math.isclose(x.dot(y), 2.0 + 1.0 + 0.0 - 1.0 + 3.0)
    assert math.isclose(x.magnitude2(), 1.0 + 4.0 + 1.0 + 9.0)
    assert x.scale(2.0) is x
    assert math.isclose(x.magnitude2(), 4.0 * 15.0)


def test_add_delta_scales_other_and_chains() -> None:
    a = Parameter(np.zeros(2))
    x = _delta([a], [1.0, 1.0])
    y = _delta([a], [2.0, -4.0])
    res = x.add_delta(y, 0.5)
    assert res is x
    assert np.allclose(x[a], [2.0, -1.0])
    assert np.allclose(y[a], [2.0, -4.0])


def test_copy_is_independent_and_copy_into_overwrites() -> None:
    a = Parameter(np.zeros(3))
    x = _delta([a], [1.0, 2.0, 3.0])
    y = x.copy()
    y[a][0] = 10.0
    assert x[a][0] == 1.0

    target = ParamDelta.zeros([a])
    out = x.copy_into(target)
    assert out is target
    assert np.array_equal(target[a], x[a])
    assert target[a] is not x[a]


def test_add_to_vars_moves_live_parameters() -> None:
    a = Parameter([1.0, 1.0])
    _delta([a], [0.5, -0.5]).add_to_vars()
    assert np.allclose(a.vector, [1.5, 0.5])
    _delta([a], [1.0, 1.0]).add_to_vars(-2.0)
    assert np.allclose(a.vector, [-0.5, -1.5])


def test_mismatched_operands_fail_preconditions() -> None:
    a, b = Parameter(np.zeros(2)), Parameter(np.zeros(2))
    x = _delta([a], [1.0, 2.0])
    missing = _delta([b], [1.0, 2.0])
    short = _delta([a], [1.0])
    with pytest.raises(AssertionError):
        x.dot(missing)
    with pytest.raises(AssertionError):
        x.dot(short)
    with pytest.raises(AssertionError):
        x.add_delta(missing)
    with pytest.raises(AssertionError):
        x.add_delta(short)


def test_variables_lists_keys_in_insertion_order() -> None:
    a, b = Parameter(np.zeros(1)), Parameter(np.zeros(4))
    assert ParamDelta.zeros([b, a]).variables() == [b, a]


def test_add_delta_rejects_operand_missing_a_receiver_key() -> None:
    a, b = Parameter(np.zeros(2)), Parameter(np.zeros(3))
    both = ParamDelta.zeros([a, b])
    only_a = _delta([a], [1.0, 1.0])
    with pytest.raises(AssertionError):
        both.add_delta(only_a)
    with pytest.raises(AssertionError):
        only_a.add_delta(both)
    assert not both[a].any()
