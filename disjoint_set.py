from __future__ import annotations

import numpy as np
from numba import njit


@njit(inline='always')
def uf_find(parent, x):
    while parent[x] != x:
        parent[x] = parent[parent[x]]
        x = parent[x]
    return x


@njit(inline='always')
def uf_union(parent, size, a, b):
    ra = uf_find(parent, a)
    rb = uf_find(parent, b)
    if ra == rb:
        return ra
    if size[ra] < size[rb]:
        ra, rb = rb, ra
    parent[rb] = ra
    size[ra] += size[rb]
    return ra


@njit(cache=True)
def _flatten(parent, n):
    out = np.empty(n, dtype=np.int64)
    for i in range(n):
        out[i] = uf_find(parent, i)
    return out


class DisjointSet:
    """Union-find over the elements 0..n-1 (arena of parent / set-size indices).

    Path halving in ``find`` and union by size keep operations near constant
    amortized time. Elements are created with ``make_set`` or up front.
    """

    __slots__ = ("parent", "size", "n")

    def __init__(self, n: int = 0):
        cap = max(int(n), 8)
        self.parent = np.arange(cap, dtype=np.int64)
        self.size = np.ones(cap, dtype=np.int64)
        self.n = int(n)

    @classmethod
    def from_arrays(cls, parent: np.ndarray, size: np.ndarray, n: int | None = None) -> "DisjointSet":
        """Wrap a forest built by a numba kernel; the arrays are shared, not copied."""
        if parent.shape != size.shape:
            raise ValueError("parent and size arrays must have the same shape")
        ds = cls.__new__(cls)
        ds.parent = parent
        ds.size = size
        ds.n = int(parent.shape[0] if n is None else n)
        return ds

    def __len__(self) -> int:
        return self.n

    def _grow(self, cap: int):
        old = self.parent.shape[0]
        parent = np.arange(cap, dtype=np.int64)
        parent[:old] = self.parent
        size = np.ones(cap, dtype=np.int64)
        size[:old] = self.size
        self.parent, self.size = parent, size

    def make_set(self) -> int:
        if self.n >= self.parent.shape[0]:
            self._grow(2 * self.parent.shape[0])
        x = self.n
        self.parent[x] = x
        self.size[x] = 1
        self.n += 1
        return x

    def _check(self, x: int) -> int:
        x = int(x)
        if not 0 <= x < self.n:
            raise IndexError(f"element {x} not in disjoint set of {self.n} elements")
        return x

    def find(self, x: int) -> int:
        return int(uf_find(self.parent, self._check(x)))

    def union(self, a: int, b: int) -> int:
        return int(uf_union(self.parent, self.size, self._check(a), self._check(b)))

    def same(self, a: int, b: int) -> bool:
        return self.find(a) == self.find(b)

    def set_size(self, x: int) -> int:
        return int(self.size[self.find(x)])

    def roots(self) -> np.ndarray:
        """Root of every element (fully compressed)."""
        return _flatten(self.parent, self.n)

    def num_sets(self) -> int:
        r = self.roots()
        return int(np.count_nonzero(r == np.arange(self.n)))

    def dense_ids(self) -> np.ndarray:
        """Map each element to 0..K-1, sets numbered in order of first appearance."""
        r = self.roots()
        _, first, inv = np.unique(r, return_index=True, return_inverse=True)
        order = np.argsort(np.argsort(first))
        return order[inv].astype(np.int64)
