"""
regions.py

Post-processing and growth of labeled regions.

- Label images are unsigned integer arrays; 0 is background.
- Every operation writes a fresh output array, so inputs may alias each
  other (or the output passed by the caller) without copy-on-write concerns.
- Growth stops where different labels meet: a background pixel reached by two
  or more labels in the same step stays background.
"""

from __future__ import annotations

import heapq
from typing import Optional, Tuple

import numpy as np
from numba import njit

from errors import DimensionMismatch, NotImplementedCombination, NotScalarOrNotBinary
from framework import compute_broadcast_shape, scan_elementwise
from local_label import _c_strides, label
from measurement import measure
from nd_array import LABEL_DTYPE, StridedArray, as_ndarray, tensor_shape_of
from neighbors import Metric, connectivity_sequence, neighbor_offsets


def _check_labels(labels) -> np.ndarray:
    tshape = tensor_shape_of(labels)
    arr = as_ndarray(labels)
    if tshape or arr.dtype.kind != "u":
        raise NotScalarOrNotBinary(arr.dtype, tshape, expected="unsigned integer label")
    return arr


def _check_mask(mask, shape) -> Optional[np.ndarray]:
    if mask is None:
        return None
    tshape = tensor_shape_of(mask)
    m = as_ndarray(mask)
    if tshape or m.dtype != np.bool_:
        raise NotScalarOrNotBinary(m.dtype, tshape)
    if compute_broadcast_shape([shape, m.shape]) != tuple(shape):
        raise DimensionMismatch([shape, m.shape])
    return np.broadcast_to(m, shape)


def relabel(labels, out: StridedArray | None = None) -> np.ndarray:
    """Renumber labels to 1..K keeping their relative order; 0 stays 0."""
    arr = _check_labels(labels)
    u = np.unique(arr)
    u = u[u != 0]

    def line(x):
        return np.where(x != 0, np.searchsorted(u, x) + 1, 0)

    res = scan_elementwise(line, [arr], out_dtype=LABEL_DTYPE)
    if out is not None:
        out.adopt(res)
    return res


def get_object_labels(labels, mask=None, background: str = "exclude") -> np.ndarray:
    """Sorted distinct labels present in ``labels`` (within ``mask`` if given).

    background="include" also reports 0 when present. A StridedArray that is
    not contiguous is copied first: correct, but costs a full copy.
    """
    if background not in ("include", "exclude"):
        raise ValueError(f"background must be 'include' or 'exclude', got {background!r}")
    if isinstance(labels, StridedArray) and labels.forged and not labels.is_contiguous:
        labels = labels.copy()
    arr = _check_labels(labels)
    m = _check_mask(mask, arr.shape)
    u = np.unique(arr if m is None else arr[m])
    if background == "exclude":
        u = u[u != 0]
    return u


def small_objects_remove(in_, threshold: int, connectivity: int = 0) -> np.ndarray:
    """Remove objects with fewer than ``threshold`` pixels.

    Binary input: labeled with ``connectivity`` and ``min_size=threshold``,
    then binarized again. This is an area opening.

    Label input: each label's pixel count is measured independently and small
    labels are set to 0; survivors are not renumbered and ``connectivity`` is
    ignored. When labeled regions touch, a small region next to a large one is
    still removed, so this is NOT an area opening of the union of the regions.
    """
    tshape = tensor_shape_of(in_)
    arr = as_ndarray(in_)
    if tshape:
        raise NotScalarOrNotBinary(arr.dtype, tshape, expected="binary or label")
    if arr.dtype == np.bool_:
        labels, _ = label(arr, connectivity=connectivity, min_size=int(threshold))
        return labels > 0
    if arr.dtype.kind != "u":
        raise NotScalarOrNotBinary(arr.dtype, tshape, expected="binary or label")
    out = arr.copy()
    if threshold <= 0 or arr.size == 0:
        return out
    m = measure(arr, features=["Size"])
    small = m.object_ids[m["Size"][:, 0] < threshold]
    if small.size:
        out[np.isin(arr, small)] = 0
    return out


def _shifted(a: np.ndarray, offset) -> np.ndarray:
    """out[p] = a[p + offset], zero outside the array."""
    out = np.zeros_like(a)
    dst, src = [], []
    for n, o in zip(a.shape, offset):
        o = int(o)
        if o >= n or -o >= n:
            return out
        if o >= 0:
            dst.append(slice(0, n - o))
            src.append(slice(o, n))
        else:
            dst.append(slice(-o, n))
            src.append(slice(0, n + o))
    out[tuple(dst)] = a[tuple(src)]
    return out


def grow_regions(labels, mask=None, connectivity: int = -1, iterations: int = 0) -> np.ndarray:
    """Grow all labeled regions simultaneously, ``iterations`` steps (0 = until stable).

    A background pixel is claimed only when all labeled neighbors agree; pixels
    touched by two different labels in the same step stay background. With a
    mask, growth is confined to it. Negative connectivity alternates between
    face and full adjacency (2-D and 3-D only); the array edge is a hard stop.
    """
    arr = _check_labels(labels)
    cur = arr.copy()
    if arr.ndim == 0 or arr.size == 0:
        return cur
    m = _check_mask(mask, arr.shape)
    seq = connectivity_sequence(arr.ndim, connectivity)
    neighborhoods = [neighbor_offsets(arr.ndim, c) for c in seq]

    step = 0
    idle = 0
    while True:
        offs = neighborhoods[step % len(neighborhoods)]
        first = np.zeros_like(cur)
        conflict = np.zeros(cur.shape, dtype=bool)
        for o in offs:
            nb = _shifted(cur, o)
            has = nb != 0
            conflict |= has & (first != 0) & (nb != first)
            take = has & (first == 0)
            first[take] = nb[take]
        claim = (cur == 0) & (first != 0) & ~conflict
        if m is not None:
            claim &= m
        step += 1
        if claim.any():
            cur[claim] = first[claim]
            idle = 0
        else:
            idle += 1
        if iterations > 0:
            if step >= iterations:
                break
        elif idle >= len(neighborhoods):
            break
    return cur


@njit(nogil=True, cache=True)
def _grow_weighted(out, g, shape, offs, weights, seeds, dist):
    """Dijkstra over a flat row-major grid; ``out`` and ``dist`` are updated in place.

    Heap items are (distance, push order, index, label), all float64 so the
    tuples stay homogeneous; ties pop in push order.
    """
    nd = shape.size
    strides = _c_strides(shape)
    heap = [(0.0, 0.0, float(seeds[0]), float(out[seeds[0]]))]
    dist[seeds[0]] = 0.0
    for s in range(1, seeds.size):
        i = seeds[s]
        heap.append((0.0, float(s), float(i), float(out[i])))
        dist[i] = 0.0
    heapq.heapify(heap)
    seq = seeds.size
    done = np.zeros(out.size, dtype=np.bool_)
    coords = np.zeros(nd, dtype=np.int64)
    while len(heap) > 0:
        d, _, fidx, flab = heapq.heappop(heap)
        idx = int(fidx)
        if done[idx]:
            continue
        done[idx] = True
        out[idx] = int(flab)
        rem = idx
        for k in range(nd):
            coords[k] = rem // strides[k]
            rem -= coords[k] * strides[k]
        for t in range(offs.shape[0]):
            nidx = 0
            inside = True
            for k in range(nd):
                c = coords[k] + offs[t, k]
                if c < 0 or c >= shape[k]:
                    inside = False
                    break
                nidx += c * strides[k]
            if not inside or done[nidx]:
                continue
            cand = d + weights[t] * 0.5 * (g[idx] + g[nidx])
            if cand < dist[nidx]:
                dist[nidx] = cand
                heapq.heappush(heap, (cand, float(seq), float(nidx), flab))
                seq += 1


def grow_regions_weighted(labels, grey, mask=None, metric: Metric | None = None,
                          return_distance: bool = False):
    """Grow labeled regions by grey-weighted geodesic distance.

    Every labeled pixel is a seed at distance 0. A step from p to neighbor q
    costs metric_weight * (grey[p] + grey[q]) / 2, and each background pixel is
    claimed by the region that reaches it first. Output is uint32 labels
    (plus the distance map when ``return_distance``). Masked growth is not
    implemented.
    """
    if mask is not None:
        raise NotImplementedCombination("grow_regions_weighted does not support a mask yet")
    arr = _check_labels(labels)
    gt = tensor_shape_of(grey)
    g = as_ndarray(grey)
    if gt or g.dtype.kind not in "iuf":
        raise NotScalarOrNotBinary(g.dtype, gt, expected="real scalar")
    if g.shape != arr.shape:
        raise DimensionMismatch([arr.shape, g.shape])
    g = np.ascontiguousarray(g, dtype=np.float64).ravel()
    if g.size and g.min() < 0:
        raise ValueError("grey values must be non-negative")
    metric = metric or Metric("chamfer", 2)

    out = np.ascontiguousarray(arr, dtype=LABEL_DTYPE).ravel().copy()
    dist = np.full(out.size, np.inf)
    seeds = np.flatnonzero(out)
    if arr.ndim == 0 or seeds.size == 0:
        return _weighted_result(out, dist, arr.shape, return_distance)
    offs, weights = metric.neighborhood(arr.ndim)
    shape = np.asarray(arr.shape, dtype=np.int64)
    _grow_weighted(out, g, shape, offs, np.asarray(weights, dtype=np.float64), seeds.astype(np.int64), dist)
    return _weighted_result(out, dist, arr.shape, return_distance)


def _weighted_result(out: np.ndarray, dist: np.ndarray, shape: Tuple[int, ...], return_distance: bool):
    out = out.reshape(shape)
    if return_distance:
        return out, dist.reshape(shape)
    return out
