from __future__ import annotations

import itertools
from math import gcd
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from errors import DimensionalityNotSupported


def full_connectivity(connectivity: int, ndim: int) -> int:
    """Map 0 (full connectivity) to ``ndim``; validate the range [0, ndim]."""
    if connectivity < 0 or connectivity > ndim:
        raise ValueError(f"connectivity must be in [0, {ndim}] for a {ndim}-D image, got {connectivity}")
    return ndim if connectivity == 0 else int(connectivity)


def neighbor_offsets(ndim: int, connectivity: int = 0) -> np.ndarray:
    """Return all neighbor offsets for the requested connectivity.

    Offsets are shaped (M, ndim); an offset belongs to the neighborhood when it
    has at most ``connectivity`` non-zero entries (0 meaning ``ndim``).
    """
    c = full_connectivity(connectivity, ndim)
    offs = [o for o in itertools.product((-1, 0, 1), repeat=ndim)
            if 0 < sum(1 for v in o if v != 0) <= c]
    return np.asarray(offs, dtype=np.int64).reshape(-1, ndim)


def causal_offsets(offsets: np.ndarray) -> np.ndarray:
    """Keep offsets that point to pixels already visited by a row-major raster scan.

    That is the half of the neighborhood whose first non-zero entry is negative.
    """
    keep = []
    for o in offsets:
        nz = np.flatnonzero(o)
        if nz.size and o[nz[0]] < 0:
            keep.append(o)
    return np.asarray(keep, dtype=np.int64).reshape(-1, offsets.shape[1])


def connectivity_sequence(ndim: int, connectivity: int) -> List[int]:
    """Connectivities to cycle through, one per iteration.

    Non-negative values give a single connectivity. Negative values request
    alternating connectivity, defined for 2-D and 3-D only: -1 alternates
    1, ndim, 1, ...; -ndim alternates ndim, 1, ndim, ...
    """
    if connectivity >= 0:
        return [full_connectivity(connectivity, ndim)]
    if ndim not in (2, 3):
        raise DimensionalityNotSupported(ndim, (2, 3))
    first = -int(connectivity)
    if first not in (1, ndim):
        raise ValueError(f"alternating connectivity must be -1 or -{ndim} for a {ndim}-D image")
    other = ndim if first == 1 else 1
    return [first, other]


def chamfer_offsets(ndim: int, order: int) -> np.ndarray:
    """Neighborhood of a chamfer metric.

    order 1: face neighbors; order 2: the full 3^N neighborhood; order k > 2:
    offsets within radius k-1 whose entries share no common factor (order 3
    adds the knight moves).
    """
    if order < 1:
        raise ValueError(f"chamfer order must be >= 1, got {order}")
    if order == 1:
        return neighbor_offsets(ndim, 1)
    radius = order - 1
    offs = []
    for o in itertools.product(range(-radius, radius + 1), repeat=ndim):
        a = [abs(v) for v in o if v != 0]
        if not a:
            continue
        g = 0
        for v in a:
            g = gcd(g, v)
        if g == 1:
            offs.append(o)
    return np.asarray(offs, dtype=np.int64).reshape(-1, ndim)


def offset_lengths(offsets: np.ndarray, pixel_size: Sequence[float] | float | None = None) -> np.ndarray:
    """Physical Euclidean length of each offset."""
    ndim = offsets.shape[1]
    if pixel_size is None:
        ps = np.ones(ndim, dtype=np.float64)
    else:
        ps = np.broadcast_to(np.asarray(pixel_size, dtype=np.float64), (ndim,))
    return np.sqrt(((offsets.astype(np.float64) * ps) ** 2).sum(axis=1))


@dataclass
class Metric:
    """Distance model for grey-weighted growth.

    - kind: "chamfer" (neighborhood of radius order-1, weights are physical
      offset lengths) or "connected" (neighborhood given by connectivity
      ``order``, every step weighs 1)
    - order: chamfer order or connectivity
    - pixel_size: per-axis scale (scalar applies to every axis)
    """

    kind: str = "chamfer"
    order: int = 2
    pixel_size: Optional[Sequence[float] | float] = None

    def neighborhood(self, ndim: int) -> Tuple[np.ndarray, np.ndarray]:
        kind = self.kind.lower()
        if kind == "chamfer":
            offs = chamfer_offsets(ndim, int(self.order))
            return offs, offset_lengths(offs, self.pixel_size)
        if kind == "connected":
            offs = neighbor_offsets(ndim, int(self.order))
            return offs, np.ones(offs.shape[0], dtype=np.float64)
        raise ValueError(f"Unknown metric kind {self.kind!r}; use 'chamfer' or 'connected'")
