from __future__ import annotations

import heapq
import os

import numpy as np
import pytest

import sys
sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from errors import (DimensionalityNotSupported, DimensionMismatch, NotImplementedCombination,
                    NotScalarOrNotBinary)
from nd_array import StridedArray
from neighbors import Metric, chamfer_offsets, offset_lengths
from regions import (get_object_labels, grow_regions, grow_regions_weighted, relabel,
                     small_objects_remove)


def test_relabel_contiguous_and_order_preserving():
    lab = np.array([[0, 5, 5], [9, 0, 2]], dtype=np.uint16)
    out = relabel(lab)
    assert out.dtype == np.uint32
    np.testing.assert_array_equal(out, [[0, 2, 2], [3, 0, 1]])


def test_relabel_random_preserves_partition():
    rng = np.random.default_rng(5)
    lab = rng.choice(np.array([0, 3, 8, 40, 41, 1000], dtype=np.uint32), size=(12, 9))
    out = relabel(lab, out=StridedArray())
    u = np.unique(out[out > 0])
    np.testing.assert_array_equal(u, np.arange(1, u.size + 1))
    for v in np.unique(lab):
        vals = np.unique(out[lab == v])
        assert vals.size == 1
    # order preserving
    src = np.unique(lab[lab > 0])
    dst = [int(out[lab == v][0]) for v in src]
    assert dst == sorted(dst)


def test_relabel_rejects_signed():
    with pytest.raises(NotScalarOrNotBinary):
        relabel(np.zeros((2, 2), dtype=np.int32))


def test_get_object_labels():
    lab = np.array([[0, 3], [3, 7]], dtype=np.uint8)
    np.testing.assert_array_equal(get_object_labels(lab), [3, 7])
    np.testing.assert_array_equal(get_object_labels(lab, background="include"), [0, 3, 7])
    mask = np.array([[True, True], [False, False]])
    np.testing.assert_array_equal(get_object_labels(lab, mask=mask), [3])
    np.testing.assert_array_equal(get_object_labels(lab, mask=np.array([[False], [True]])), [3, 7])
    np.testing.assert_array_equal(get_object_labels(lab, mask=np.zeros((2, 2), dtype=bool)), [])
    with pytest.raises(DimensionMismatch):
        get_object_labels(lab, mask=np.ones(3, dtype=bool))
    with pytest.raises(ValueError):
        get_object_labels(lab, background="maybe")


def test_get_object_labels_non_contiguous():
    big = np.arange(24, dtype=np.uint16).reshape(4, 6) % 5
    s = StridedArray.from_numpy(big[:, ::2])
    assert not s.is_contiguous
    np.testing.assert_array_equal(get_object_labels(s), [1, 2, 3, 4])


def _three_sizes() -> np.ndarray:
    m = np.zeros((10, 10), dtype=bool)
    m[0, 0] = True
    m[0:2, 5:7] = True
    m[5:8, 5:8] = True
    return m


def test_small_objects_remove_binary():
    m = _three_sizes()
    once = small_objects_remove(m, 4)
    assert once.dtype == np.bool_
    assert not once[0, 0]
    assert once[0:2, 5:7].all() and once[5:8, 5:8].all()
    np.testing.assert_array_equal(small_objects_remove(once, 4), once)


def test_small_objects_remove_labels_measure_each_region():
    lab = np.array([[1, 1, 2],
                    [1, 1, 2],
                    [0, 0, 0]], dtype=np.uint8)
    out = small_objects_remove(lab, 3)
    np.testing.assert_array_equal(out, [[1, 1, 0], [1, 1, 0], [0, 0, 0]])
    assert out.dtype == np.uint8
    # the same pixels as one binary object survive
    assert small_objects_remove(lab > 0, 3).sum() == 6


def test_small_objects_remove_rejects_float():
    with pytest.raises(NotScalarOrNotBinary):
        small_objects_remove(np.zeros((3, 3)), 2)


def test_grow_stops_at_collision():
    lab = np.array([1, 0, 0, 0, 0, 0, 2], dtype=np.uint8)
    np.testing.assert_array_equal(grow_regions(lab, connectivity=1, iterations=1),
                                  [1, 1, 0, 0, 0, 2, 2])
    np.testing.assert_array_equal(grow_regions(lab, connectivity=1),
                                  [1, 1, 1, 0, 2, 2, 2])
    even = np.array([1, 0, 0, 0, 0, 2], dtype=np.uint8)
    np.testing.assert_array_equal(grow_regions(even, connectivity=1), [1, 1, 1, 2, 2, 2])


def test_grow_within_mask():
    lab = np.array([1, 0, 0, 0, 0, 0, 0], dtype=np.uint16)
    mask = np.array([1, 1, 1, 0, 1, 1, 1], dtype=bool)
    np.testing.assert_array_equal(grow_regions(lab, mask=mask, connectivity=1),
                                  [1, 1, 1, 0, 0, 0, 0])


def test_grow_connectivity_shapes():
    lab = np.zeros((9, 9), dtype=np.uint8)
    lab[4, 4] = 1
    assert np.count_nonzero(grow_regions(lab, connectivity=1, iterations=2)) == 13
    assert np.count_nonzero(grow_regions(lab, connectivity=2, iterations=2)) == 25
    assert np.count_nonzero(grow_regions(lab, connectivity=-1, iterations=1)) == 5
    assert np.count_nonzero(grow_regions(lab, connectivity=-1, iterations=2)) == 21
    assert np.count_nonzero(grow_regions(lab, connectivity=-2, iterations=1)) == 9


def test_grow_monotone_and_stable():
    rng = np.random.default_rng(2)
    lab = np.zeros((20, 20), dtype=np.uint16)
    idx = rng.choice(lab.size, size=6, replace=False)
    lab.ravel()[idx] = np.arange(1, 7)
    prev = lab
    for n in range(1, 6):
        cur = grow_regions(lab, connectivity=2, iterations=n)
        kept = prev != 0
        np.testing.assert_array_equal(cur[kept], prev[kept])
        prev = cur
    final = grow_regions(lab, connectivity=2)
    np.testing.assert_array_equal(grow_regions(final, connectivity=2, iterations=1), final)


def test_alternating_connectivity_dimensionality():
    with pytest.raises(DimensionalityNotSupported):
        grow_regions(np.array([1, 0, 0], dtype=np.uint8))
    with pytest.raises(DimensionalityNotSupported):
        grow_regions(np.zeros((2, 2, 2, 2), dtype=np.uint8), connectivity=-1)


def test_weighted_growth_uniform_grey():
    lab = np.array([1, 0, 0, 0, 0, 0, 0, 2], dtype=np.uint8)
    out = grow_regions_weighted(lab, np.ones(8))
    assert out.dtype == np.uint32
    np.testing.assert_array_equal(out, [1, 1, 1, 1, 2, 2, 2, 2])


def test_weighted_growth_follows_grey():
    lab = np.array([1, 0, 0, 0, 0, 0, 0, 2], dtype=np.uint8)
    grey = np.array([1, 10, 10, 1, 1, 1, 1, 1], dtype=np.float32)
    out, dist = grow_regions_weighted(lab, grey, return_distance=True)
    np.testing.assert_array_equal(out, [1, 1, 2, 2, 2, 2, 2, 2])
    np.testing.assert_allclose(dist[[0, 1, 2, 7]], [0.0, 5.5, 9.5, 0.0])


def test_weighted_growth_connected_metric_2d():
    lab = np.zeros((5, 5), dtype=np.uint16)
    lab[0, 0] = 1
    lab[4, 4] = 2
    out = grow_regions_weighted(lab, np.ones((5, 5)), metric=Metric("connected", 1))
    assert np.all(out > 0)
    assert out[1, 1] == 1 and out[3, 3] == 2


def _weighted_reference(lab, grey, metric):
    """Plain heapq Dijkstra over coordinate tuples."""
    offs, weights = metric.neighborhood(lab.ndim)
    out = lab.astype(np.uint32)
    dist = np.full(lab.shape, np.inf)
    heap = []
    for p in zip(*np.nonzero(lab)):
        dist[p] = 0.0
        heap.append((0.0, tuple(int(v) for v in p), int(lab[p])))
    heapq.heapify(heap)
    done = np.zeros(lab.shape, dtype=bool)
    while heap:
        d, p, l = heapq.heappop(heap)
        if done[p]:
            continue
        done[p] = True
        out[p] = l
        for o, w in zip(offs, weights):
            q = tuple(int(a + b) for a, b in zip(p, o))
            if any(v < 0 or v >= s for v, s in zip(q, lab.shape)) or done[q]:
                continue
            c = d + w * 0.5 * (grey[p] + grey[q])
            if c < dist[q]:
                dist[q] = c
                heapq.heappush(heap, (c, q, l))
    return out, dist


def test_weighted_growth_matches_reference_3d():
    rng = np.random.default_rng(21)
    lab = np.zeros((7, 6, 5), dtype=np.uint16)
    idx = rng.choice(lab.size, size=5, replace=False)
    lab.ravel()[idx] = np.arange(1, 6)
    grey = rng.random(lab.shape) + 0.1
    for metric in (Metric("chamfer", 2), Metric("chamfer", 3, (1.0, 2.0, 0.5)), Metric("connected", 1)):
        out, dist = grow_regions_weighted(lab, grey, metric=metric, return_distance=True)
        ref, ref_dist = _weighted_reference(lab, grey, metric)
        np.testing.assert_array_equal(out, ref)
        np.testing.assert_allclose(dist, ref_dist)


def test_weighted_growth_without_seeds():
    lab = np.zeros((3, 4), dtype=np.uint8)
    out, dist = grow_regions_weighted(lab, np.ones((3, 4)), return_distance=True)
    assert out.dtype == np.uint32
    assert not out.any()
    assert np.isinf(dist).all()


def test_weighted_growth_anisotropic_pixel_size():
    lab = np.zeros((5, 5), dtype=np.uint8)
    lab[0, 0] = 1
    lab[4, 4] = 2
    grey = np.ones((5, 5))
    # expensive steps along the second axis favour the seed that reaches along the first
    out = grow_regions_weighted(lab, grey, metric=Metric("chamfer", 2, (1.0, 3.0)))
    assert out[0, 4] == 2 and out[4, 0] == 1
    out = grow_regions_weighted(lab, grey, metric=Metric("chamfer", 2, (3.0, 1.0)))
    assert out[0, 4] == 1 and out[4, 0] == 2


def test_chamfer_neighborhoods():
    offs = {tuple(int(v) for v in o) for o in chamfer_offsets(2, 3)}
    assert len(offs) == 16
    for knight in ((1, 2), (2, 1), (-1, 2), (2, -1), (-2, -1)):
        assert knight in offs
    for skipped in ((2, 2), (0, 2), (-2, 0), (0, 0)):
        assert skipped not in offs
    assert {tuple(int(v) for v in o) for o in chamfer_offsets(2, 1)} == {(-1, 0), (0, -1), (0, 1), (1, 0)}
    assert len(chamfer_offsets(3, 2)) == 26

    lengths = offset_lengths(np.array([[1, 2], [1, 0]]), (1.0, 0.5))
    np.testing.assert_allclose(lengths, [np.sqrt(2.0), 1.0])
    offs, weights = Metric("chamfer", 3, 2.0).neighborhood(2)
    np.testing.assert_allclose(weights, 2.0 * np.sqrt((offs ** 2).sum(axis=1)))
    with pytest.raises(ValueError):
        Metric("euclid").neighborhood(2)
    with pytest.raises(ValueError):
        chamfer_offsets(2, 0)


def test_weighted_growth_errors():
    lab = np.array([1, 0, 2], dtype=np.uint8)
    with pytest.raises(NotImplementedCombination):
        grow_regions_weighted(lab, np.ones(3), mask=np.ones(3, dtype=bool))
    with pytest.raises(NotScalarOrNotBinary):
        grow_regions_weighted(lab, np.ones(3, dtype=np.complex128))
    with pytest.raises(DimensionMismatch):
        grow_regions_weighted(lab, np.ones(4))
    with pytest.raises(ValueError):
        grow_regions_weighted(lab, np.array([1.0, -1.0, 1.0]))
