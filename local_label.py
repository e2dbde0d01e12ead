from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Sequence, Tuple

import numpy as np
from numba import njit

from disjoint_set import DisjointSet, uf_find, uf_union
from errors import NotScalarOrNotBinary, UnsupportedBoundaryCondition
from nd_array import LABEL_DTYPE, StridedArray, as_ndarray, tensor_shape_of
from neighbors import causal_offsets, neighbor_offsets

_HARD_STOP = ("", "default")
_PERIODIC = "periodic"


@njit(cache=True)
def _c_strides(shape):
    nd = shape.size
    strides = np.empty(nd, dtype=np.int64)
    step = 1
    for d in range(nd - 1, -1, -1):
        strides[d] = step
        step *= shape[d]
    return strides


@njit(cache=True)
def _advance(coords, shape):
    for d in range(shape.size - 1, -1, -1):
        coords[d] += 1
        if coords[d] < shape[d]:
            return
        coords[d] = 0


@njit(nogil=True, cache=True)
def _ccl_raster(mask_flat, shape, neigh):
    """First pass of two-pass union-find CCL over a row-major raster.

    Only causal neighbors (already visited) are examined. Returns provisional
    labels (0 = background), the union-find parent/size arrays, and the number
    of provisional ids issued plus one.
    """
    n = mask_flat.size
    nd = shape.size
    strides = _c_strides(shape)
    labels = np.zeros(n, dtype=np.int64)
    parent = np.arange(n + 1, dtype=np.int64)
    size = np.ones(n + 1, dtype=np.int64)
    coords = np.zeros(nd, dtype=np.int64)
    next_label = 1
    for idx in range(n):
        if mask_flat[idx]:
            lbl = 0
            for t in range(neigh.shape[0]):
                nidx = 0
                inside = True
                for d in range(nd):
                    c = coords[d] + neigh[t, d]
                    if c < 0 or c >= shape[d]:
                        inside = False
                        break
                    nidx += c * strides[d]
                if not inside:
                    continue
                nb = labels[nidx]
                if nb != 0:
                    if lbl == 0:
                        lbl = nb
                    elif nb != lbl:
                        uf_union(parent, size, lbl, nb)
            if lbl == 0:
                lbl = next_label
                next_label += 1
            labels[idx] = lbl
        _advance(coords, shape)
    return labels, parent, size, next_label


@njit(nogil=True, cache=True)
def _merge_seams(labels, shape, neigh, tile, periodic, parent, size):
    """Union labels of causal neighbor pairs that cross a tile seam or wrap around.

    With ``tile`` equal to ``shape`` only the periodic wrap-around pairs remain.
    """
    n = labels.size
    nd = shape.size
    strides = _c_strides(shape)
    coords = np.zeros(nd, dtype=np.int64)
    for idx in range(n):
        l = labels[idx]
        if l != 0:
            for t in range(neigh.shape[0]):
                nidx = 0
                valid = True
                crossing = False
                for d in range(nd):
                    c = coords[d] + neigh[t, d]
                    if c < 0 or c >= shape[d]:
                        if not periodic[d]:
                            valid = False
                            break
                        c = (c + shape[d]) % shape[d]
                        crossing = True
                    elif c // tile[d] != coords[d] // tile[d]:
                        crossing = True
                    nidx += c * strides[d]
                if not valid or not crossing:
                    continue
                nb = labels[nidx]
                if nb != 0 and nb != l:
                    uf_union(parent, size, l, nb)
        _advance(coords, shape)


@njit(nogil=True, cache=True)
def _resolve(labels, parent, n_ids):
    """Second pass: flatten to roots and number roots 1..K in raster order."""
    remap = np.zeros(n_ids, dtype=np.int64)
    out = np.zeros(labels.size, dtype=np.uint32)
    k = 0
    for idx in range(labels.size):
        l = labels[idx]
        if l != 0:
            r = uf_find(parent, l)
            if remap[r] == 0:
                k += 1
                remap[r] = k
            out[idx] = remap[r]
    return out, k


def _periodic_dims(boundary_condition, ndim: int) -> np.ndarray:
    if boundary_condition is None:
        return np.zeros(ndim, dtype=np.bool_)
    if isinstance(boundary_condition, str):
        names = [boundary_condition] * ndim
    else:
        names = list(boundary_condition)
        if len(names) == 0:
            names = [""] * ndim
        elif len(names) == 1:
            names = names * ndim
        elif len(names) != ndim:
            raise ValueError(f"boundary_condition has {len(names)} entries for a {ndim}-D image")
    out = np.zeros(ndim, dtype=np.bool_)
    for d, name in enumerate(names):
        name = (name or "").lower()
        if name == _PERIODIC:
            out[d] = True
        elif name not in _HARD_STOP:
            raise UnsupportedBoundaryCondition(name)
    return out


def _check_binary(mask) -> np.ndarray:
    tshape = tensor_shape_of(mask)
    arr = as_ndarray(mask)
    if tshape or arr.dtype != np.bool_:
        raise NotScalarOrNotBinary(arr.dtype, tshape)
    return arr


def _filter_sizes(labels: np.ndarray, k: int, min_size: int, max_size: int) -> int:
    """Zero out components outside [min_size, max_size] in place; return survivors."""
    if k == 0 or (min_size <= 0 and max_size <= 0):
        return k
    cnt = np.bincount(labels.ravel(), minlength=k + 1)
    bad = np.zeros(k + 1, dtype=bool)
    if min_size > 0:
        bad |= cnt < min_size
    if max_size > 0:
        bad |= cnt > max_size
    bad[0] = False
    if bad.any():
        labels[bad[labels]] = 0
    return k - int(np.count_nonzero(bad))


def label(mask,
          connectivity: int = 0,
          min_size: int = 0,
          max_size: int = 0,
          boundary_condition=None,
          out: StridedArray | None = None) -> Tuple[np.ndarray, int]:
    """Label connected components of a binary N-D mask.

    - connectivity: 0 (full) .. ndim; 1 is face adjacency.
    - min_size / max_size: pixel-count bounds, 0 disables. Filtered objects are
      set to 0; survivors keep their label (not renumbered).
    - boundary_condition: None or "periodic", or one entry per dimension.

    Returns (labels, n) where labels is uint32 of the mask's shape, numbered
    1..M in raster order of first appearance, and n counts the survivors.
    The optional ``out`` array receives the result only on success.
    """
    arr = _check_binary(mask)
    if arr.ndim == 0:
        labels = np.zeros((), dtype=LABEL_DTYPE)
        if out is not None:
            out.adopt(labels)
        return labels, 0
    periodic = _periodic_dims(boundary_condition, arr.ndim)
    neigh = causal_offsets(neighbor_offsets(arr.ndim, connectivity))
    shape = np.asarray(arr.shape, dtype=np.int64)

    flat = np.ascontiguousarray(arr).ravel()
    prov, parent, size, n_ids = _ccl_raster(flat, shape, neigh)
    ds = DisjointSet.from_arrays(parent, size, n_ids)
    if periodic.any():
        _merge_seams(prov, shape, neigh, shape, periodic, ds.parent, ds.size)
    labels, k = _resolve(prov, ds.parent, len(ds))
    labels = labels.reshape(arr.shape)
    k = _filter_sizes(labels, k, int(min_size), int(max_size))
    if out is not None:
        out.adopt(labels)
    return labels, k


def _tile_slices(shape: Sequence[int], tile_shape: Sequence[int]):
    ranges = [range(0, n, t) for n, t in zip(shape, tile_shape)]
    out = []
    for starts in np.ndindex(*[len(r) for r in ranges]):
        out.append(tuple(slice(r[s], min(r[s] + t, n))
                         for r, s, t, n in zip(ranges, starts, tile_shape, shape)))
    return out


def _label_tile(tile: np.ndarray, neigh: np.ndarray) -> Tuple[np.ndarray, int]:
    flat = np.ascontiguousarray(tile).ravel()
    prov, parent, _size, n_ids = _ccl_raster(flat, np.asarray(tile.shape, dtype=np.int64), neigh)
    tl, k = _resolve(prov, parent, n_ids)
    return tl.reshape(tile.shape), k


def label_tiled(mask,
                tile_shape: Sequence[int],
                connectivity: int = 0,
                min_size: int = 0,
                max_size: int = 0,
                boundary_condition=None,
                n_threads: int = 1) -> Tuple[np.ndarray, int]:
    """Partitioned labeling: independent per-tile CCL, then a serial stitch.

    Tiles are labeled independently (optionally on worker threads, the kernels
    release the GIL). Merging across tile seams touches one shared union-find
    forest and therefore runs serially. Output equals ``label`` for the same
    arguments.
    """
    arr = _check_binary(mask)
    if arr.ndim == 0:
        return np.zeros((), dtype=LABEL_DTYPE), 0
    tile_shape = [int(t) for t in tile_shape]
    if len(tile_shape) != arr.ndim or any(t < 1 for t in tile_shape):
        raise ValueError(f"tile_shape must have {arr.ndim} positive entries, got {tile_shape}")
    periodic = _periodic_dims(boundary_condition, arr.ndim)
    neigh = causal_offsets(neighbor_offsets(arr.ndim, connectivity))

    # Pass 1: per-tile labeling with local compaction
    tiles = _tile_slices(arr.shape, tile_shape)
    if n_threads > 1 and len(tiles) > 1:
        with ThreadPoolExecutor(max_workers=int(n_threads)) as pool:
            results = list(pool.map(lambda s: _label_tile(arr[s], neigh), tiles))
    else:
        results = [_label_tile(arr[s], neigh) for s in tiles]

    prov = np.zeros(arr.shape, dtype=np.int64)
    gbase = 0
    for s, (tl, kt) in zip(tiles, results):
        if kt > 0:
            t = tl.astype(np.int64)
            t[t > 0] += gbase
            prov[s] = t
            gbase += kt

    # Pass 2: serial merge across tile faces, edges and corners
    shape = np.asarray(arr.shape, dtype=np.int64)
    ds = DisjointSet(gbase + 1)
    flat = prov.ravel()
    _merge_seams(flat, shape, neigh, np.asarray(tile_shape, dtype=np.int64), periodic, ds.parent, ds.size)
    labels, k = _resolve(flat, ds.parent, len(ds))
    labels = labels.reshape(arr.shape)
    k = _filter_sizes(labels, k, int(min_size), int(max_size))
    return labels, k
