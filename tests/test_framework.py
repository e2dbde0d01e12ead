from __future__ import annotations

import os

import numpy as np
import pytest

import sys
sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from errors import DimensionMismatch, NotScalarOrNotBinary
from framework import (apply_broadcast, compute_broadcast_shape, scan_elementwise,
                       scan_separable, select_processing_dimension)
from nd_array import DataType, StridedArray


def test_broadcast_shape_folds_left_to_right():
    assert compute_broadcast_shape([(3, 1, 5), (1, 4), (3,)]) == (3, 4, 5)
    assert compute_broadcast_shape([(2, 3, 4), (2, 3, 4)]) == (2, 3, 4)
    assert compute_broadcast_shape([(7,)]) == (7,)


def test_broadcast_shape_order_independent():
    a, b, c = (3, 1, 5), (1, 4), (3, 4, 1)
    ref = compute_broadcast_shape([a, b, c])
    assert compute_broadcast_shape([c, a, b]) == ref
    assert compute_broadcast_shape([b, c, a]) == ref


def test_broadcast_mismatch_reports_shapes():
    with pytest.raises(DimensionMismatch) as exc:
        compute_broadcast_shape([(3, 4), (2, 4)])
    assert exc.value.dim == 0
    assert (2, 4) in exc.value.shapes
    with pytest.raises(ValueError):
        compute_broadcast_shape([])


def test_broadcast_accepts_arrays_and_descriptors():
    a = StridedArray((4, 1), DataType.UINT8)
    b = np.zeros((1, 6))
    assert compute_broadcast_shape([a, b]) == (4, 6)


def test_apply_broadcast_zero_stride_and_marker():
    a = StridedArray.from_numpy(np.arange(3, dtype=np.int32).reshape(3, 1))
    handle = a.handle
    apply_broadcast(a, (3, 4, 2))
    assert a.sizes == [3, 4, 2]
    assert a.broadcast == [False, True, True]
    assert a.strides[1] == 0 and a.strides[2] == 0
    assert a.handle == handle
    assert a.numpy()[2, 3, 1] == 2


def test_apply_broadcast_rejects_non_singleton():
    a = StridedArray((3, 2), DataType.UINT8)
    with pytest.raises(DimensionMismatch):
        apply_broadcast(a, (3, 5))


def test_processing_dimension_prefers_smallest_stride():
    assert select_processing_dimension(StridedArray((100, 200))) == 1
    assert select_processing_dimension(StridedArray((10, 20))) == 1


def test_processing_dimension_skips_short_inner_dimension():
    # innermost line of 10 pixels is short and the outer one is longer
    assert select_processing_dimension(StridedArray((1000, 10))) == 0


def test_processing_dimension_ties_and_numpy():
    a = StridedArray((100, 100))
    a.strides = [1, 1]
    assert select_processing_dimension(a) == 0
    assert select_processing_dimension(StridedArray((5,))) == 0
    assert select_processing_dimension(np.zeros((100, 200)).T) == 0


def test_scan_elementwise_broadcasts():
    a = np.arange(3, dtype=np.int32).reshape(3, 1)
    b = np.arange(4, dtype=np.float64).reshape(1, 4)
    ref = a + b
    for n_threads in (1, 3):
        res = scan_elementwise(lambda x, y: x + y, [a, b], n_threads=n_threads)
        assert res.dtype == np.float64
        np.testing.assert_array_equal(res, ref)


def test_scan_elementwise_zero_d_and_out():
    res = scan_elementwise(lambda x: x * 2, [np.array(3.0)])
    assert res.shape == ()
    assert res[()] == 6.0

    out = StridedArray()
    scan_elementwise(lambda x: x > 1, [np.arange(4)], out_dtype=np.bool_, out=out)
    assert out.forged
    assert out.dtype is DataType.BIN
    np.testing.assert_array_equal(out.numpy(), [False, False, True, True])


def test_scan_elementwise_output_is_fresh_with_broadcast_operands():
    a = StridedArray.from_numpy(np.arange(3, dtype=np.float64).reshape(3, 1))
    out = StridedArray()
    res = scan_elementwise(lambda x, y: x * y, [a, np.full((1, 5), 2.0)], out=out)
    assert res.flags.writeable and res.flags.c_contiguous
    assert not out.has_broadcast
    assert out.is_contiguous
    np.testing.assert_array_equal(out.numpy(), np.arange(3.0).reshape(3, 1) * 2.0 * np.ones((1, 5)))
    # operands are broadcast on private views only
    assert list(a.sizes) == [3, 1] and not a.has_broadcast


def test_scan_elementwise_requires_scalar_operands():
    t = StridedArray.from_numpy(np.zeros((2, 2, 3)), tensor_dims=1)
    out = StridedArray()
    with pytest.raises(NotScalarOrNotBinary):
        scan_elementwise(lambda x: x, [t], out=out)
    assert not out.forged


def test_scan_separable_runs_each_dimension():
    x = np.arange(30, dtype=np.float64).reshape(5, 6)
    ref = np.cumsum(np.cumsum(x, axis=0), axis=1)
    for n_threads in (1, 2):
        res = scan_separable(np.cumsum, x, n_threads=n_threads)
        np.testing.assert_allclose(res, ref)
    only_rows = scan_separable(np.cumsum, x, dims=[1])
    np.testing.assert_allclose(only_rows, np.cumsum(x, axis=1))
    with pytest.raises(ValueError):
        scan_separable(np.cumsum, x, dims=[2])
