"""
framework.py

Broadcasting and line-dispatch substrate for elementwise and separable
operations over N-D strided arrays.

- Shapes are reconciled with singleton expansion: after right-padding with
  1s, each dimension pair must match or contain a 1.
- Work is dispatched as 1-D lines along a *processing dimension*; lines are
  split into disjoint groups, one per worker thread, so no two threads ever
  write the same output pixel.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from errors import DimensionMismatch, NotScalarOrNotBinary
from nd_array import DataType, StridedArray, tensor_shape_of

# Lines shorter than this are not worth a dispatch; prefer a longer dimension.
# A good value depends on cache size, tune as needed.
SMALL_IMAGE = 63


def _sizes_of(operand) -> List[int]:
    if isinstance(operand, StridedArray):
        return list(operand.sizes)
    if isinstance(operand, np.ndarray):
        return list(operand.shape)
    return [int(s) for s in operand]


def _expand_size(size: List[int], size2: Sequence[int]):
    if len(size) < len(size2):
        size.extend([1] * (len(size2) - len(size)))
    for d, n2 in enumerate(size2):
        if size[d] != n2:
            if size[d] == 1:
                size[d] = int(n2)
            elif n2 != 1:
                raise DimensionMismatch([list(size), list(size2)], dim=d)


def compute_broadcast_shape(operands: Sequence) -> Tuple[int, ...]:
    """Common shape of all operands, folded left to right."""
    if len(operands) == 0:
        raise ValueError("compute_broadcast_shape needs at least one operand")
    size = _sizes_of(operands[0])
    for op in operands[1:]:
        _expand_size(size, _sizes_of(op))
    return tuple(size)


def apply_broadcast(array: StridedArray, target_shape: Sequence[int]) -> StridedArray:
    """Expand ``array`` in place to ``target_shape``; storage is never reallocated."""
    target = [int(s) for s in target_shape]
    if array.ndim > len(target):
        raise DimensionMismatch([array.sizes, target], message=(
            f"Cannot broadcast a {array.ndim}-D array to {len(target)} dimensions"))
    array.expand_dimensionality(len(target))
    for d, n in enumerate(target):
        if array.sizes[d] != n:
            if array.sizes[d] != 1:
                raise DimensionMismatch([array.sizes, target], dim=d)
            array.expand_singleton_dimension(d, n)
    return array


def select_processing_dimension(array) -> int:
    """Pick the dimension inner loops should run along.

    Smallest stride wins, except when that dimension is short (<= SMALL_IMAGE)
    and a longer one exists. First dimension wins ties. This is a heuristic.
    """
    if isinstance(array, StridedArray):
        strides = [abs(s) for s in array.strides]
        sizes = array.sizes
    else:
        array = np.asarray(array)
        strides = [abs(s) // array.itemsize for s in array.strides]
        sizes = list(array.shape)
    dim = 0
    for d in range(1, len(strides)):
        if strides[d] < strides[dim]:
            if sizes[d] > SMALL_IMAGE or sizes[d] > sizes[dim]:
                dim = d
        elif sizes[dim] <= SMALL_IMAGE and sizes[d] > sizes[dim]:
            dim = d
    return dim


def _line_indices(shape: Sequence[int], dim: int) -> List[tuple]:
    ortho = [n for d, n in enumerate(shape) if d != dim]
    out = []
    for idx in np.ndindex(*ortho):
        full = list(idx)
        full.insert(dim, slice(None))
        out.append(tuple(full))
    return out


def _run_lines(lines: List[tuple], body: Callable[[tuple], None], n_threads: int):
    if n_threads <= 1 or len(lines) < 2:
        for idx in lines:
            body(idx)
        return

    def work(chunk):
        for idx in chunk:
            body(idx)

    n = min(int(n_threads), len(lines))
    bounds = np.linspace(0, len(lines), n + 1).astype(int)
    with ThreadPoolExecutor(max_workers=n) as pool:
        futures = [pool.submit(work, lines[bounds[t]:bounds[t + 1]]) for t in range(n)]
        for f in futures:
            f.result()


def _as_operand(op) -> StridedArray:
    if isinstance(op, StridedArray):
        return op.view()
    return StridedArray.from_numpy(np.asarray(op))


def scan_elementwise(func: Callable[..., np.ndarray],
                     operands: Sequence,
                     out_dtype=None,
                     n_threads: int = 1,
                     out: Optional[StridedArray] = None) -> np.ndarray:
    """Apply ``func`` line by line over the broadcast of scalar ``operands``.

    ``func`` receives one 1-D array per operand (all of equal length) and
    returns the output line. The result is a freshly allocated array; when
    ``out`` is given it adopts the result only after every line succeeded.
    """
    arrays = [_as_operand(op) for op in operands]
    for a in arrays:
        if not a.is_scalar:
            raise NotScalarOrNotBinary(a.dtype, a.tensor_shape, expected="scalar")
    shape = compute_broadcast_shape(arrays)
    for a in arrays:
        apply_broadcast(a, shape)
    if out_dtype is None:
        out_dtype = np.result_type(*[a.dtype.numpy_dtype for a in arrays])
    result = StridedArray(shape, DataType.from_numpy(out_dtype)).forge()
    res = result.numpy()
    views = [a.numpy() for a in arrays]

    if len(shape) == 0:
        line = func(*[v.reshape(1) for v in views])
        res[()] = np.asarray(line).reshape(())
    elif res.size:
        dim = select_processing_dimension(result)

        def body(idx):
            res[idx] = func(*[v[idx] for v in views])

        _run_lines(_line_indices(shape, dim), body, n_threads)

    if out is not None:
        out.adopt(res)
    return res


def scan_separable(func: Callable[[np.ndarray], np.ndarray],
                   array,
                   dims: Optional[Sequence[int]] = None,
                   out_dtype=None,
                   n_threads: int = 1) -> np.ndarray:
    """Apply a 1-D line filter along each of ``dims`` in turn.

    Every pass reads from the previous buffer and writes a new one, so the
    input may alias anything.
    """
    if tensor_shape_of(array):
        raise NotScalarOrNotBinary(getattr(array, "dtype", None), tensor_shape_of(array), expected="scalar")
    src = np.asarray(array.numpy() if isinstance(array, StridedArray) else array)
    if dims is None:
        dims = range(src.ndim)
    dims = [int(d) for d in dims]
    for d in dims:
        if not 0 <= d < src.ndim:
            raise ValueError(f"Dimension {d} out of range for a {src.ndim}-D array")
    cur = np.array(src, dtype=out_dtype or src.dtype, copy=True)
    for d in dims:
        if cur.size == 0:
            break
        nxt = np.empty_like(cur)

        def body(idx, cur=cur, nxt=nxt):
            nxt[idx] = func(cur[idx])

        _run_lines(_line_indices(cur.shape, d), body, n_threads)
        cur = nxt
    return cur
