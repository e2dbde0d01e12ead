from __future__ import annotations

from typing import List, Sequence

import numpy as np

from errors import DimensionalityNotSupported, NotScalarOrNotBinary
from measurement import (PIXEL_UNITS, CompositeFeature, DirectFeature,
                         ValueInformation, common_units, object_rows, power_units,
                         register_feature)


def _require_scalar_grey(label: np.ndarray, grey: np.ndarray | None):
    if grey is not None and grey.ndim != label.ndim:
        raise NotScalarOrNotBinary(grey.dtype, grey.shape[label.ndim:], expected="scalar grey")


def _selected(label: np.ndarray, object_ids: np.ndarray):
    rows = object_rows(label, object_ids)
    sel = rows >= 0
    return rows[sel], sel


def _coordinate(shape: Sequence[int], d: int, sel: np.ndarray) -> np.ndarray:
    c = np.arange(shape[d], dtype=np.float64).reshape([-1 if k == d else 1 for k in range(len(shape))])
    return np.broadcast_to(c, shape).ravel()[sel]


def _axis_info(prefix: str, ndim: int, units: str) -> List[ValueInformation]:
    return [ValueInformation(f"{prefix}{d}", units) for d in range(ndim)]


@register_feature
class Size(DirectFeature):
    name = "Size"
    description = "Number of pixels in the object"

    def initialize(self, label, grey, n_objects, pixel_size):
        return [ValueInformation("", PIXEL_UNITS)]

    def compute(self, label, grey, object_ids, pixel_size):
        r, _ = _selected(label, object_ids)
        return np.bincount(r, minlength=object_ids.size).astype(np.float64)


@register_feature
class Center(DirectFeature):
    name = "Center"
    description = "Coordinates of the geometric mean of the object"

    def initialize(self, label, grey, n_objects, pixel_size):
        units, _ = common_units(pixel_size)
        return _axis_info("dim", label.ndim, units)

    def compute(self, label, grey, object_ids, pixel_size):
        _, scale = common_units(pixel_size)
        r, sel = _selected(label, object_ids)
        n = object_ids.size
        cnt = np.bincount(r, minlength=n).astype(np.float64)
        out = np.zeros((n, label.ndim), dtype=np.float64)
        for d in range(label.ndim):
            x = _coordinate(label.shape, d, sel) * scale[d]
            out[:, d] = np.bincount(r, weights=x, minlength=n) / (cnt + 1e-300)
        return out


@register_feature
class BoundingBox(DirectFeature):
    name = "BoundingBox"
    description = "Per-axis index range [min, max) covered by the object"

    def initialize(self, label, grey, n_objects, pixel_size):
        out = []
        for d in range(label.ndim):
            out.append(ValueInformation(f"dim{d}_min", PIXEL_UNITS))
            out.append(ValueInformation(f"dim{d}_max", PIXEL_UNITS))
        return out

    def compute(self, label, grey, object_ids, pixel_size):
        r, sel = _selected(label, object_ids)
        n = object_ids.size
        out = np.zeros((n, 2 * label.ndim), dtype=np.float64)
        for d in range(label.ndim):
            x = _coordinate(label.shape, d, sel)
            lo = np.full(n, np.inf)
            hi = np.full(n, -np.inf)
            np.minimum.at(lo, r, x)
            np.maximum.at(hi, r, x + 1)
            out[:, 2 * d] = lo
            out[:, 2 * d + 1] = hi
        return out


@register_feature
class Mass(DirectFeature):
    name = "Mass"
    description = "Sum of the grey values within the object"
    needs_grey = True

    def initialize(self, label, grey, n_objects, pixel_size):
        _require_scalar_grey(label, grey)
        return [ValueInformation("", "")]

    def compute(self, label, grey, object_ids, pixel_size):
        r, sel = _selected(label, object_ids)
        w = grey.ravel()[sel].astype(np.float64, copy=False)
        return np.bincount(r, weights=w, minlength=object_ids.size)


class _GreyExtremum(DirectFeature):
    needs_grey = True
    _ufunc = None
    _fill = 0.0

    def initialize(self, label, grey, n_objects, pixel_size):
        _require_scalar_grey(label, grey)
        return [ValueInformation("", "")]

    def compute(self, label, grey, object_ids, pixel_size):
        r, sel = _selected(label, object_ids)
        out = np.full(object_ids.size, self._fill)
        self._ufunc.at(out, r, grey.ravel()[sel].astype(np.float64, copy=False))
        out[~np.isfinite(out)] = np.nan
        return out


@register_feature
class Minimum(_GreyExtremum):
    name = "Minimum"
    description = "Minimum grey value within the object"
    _ufunc = np.minimum
    _fill = np.inf


@register_feature
class Maximum(_GreyExtremum):
    name = "Maximum"
    description = "Maximum grey value within the object"
    _ufunc = np.maximum
    _fill = -np.inf


def _tensor_pairs(ndim: int):
    """Packing order of a symmetric tensor: diagonal first, then upper triangle."""
    pairs = [(d, d) for d in range(ndim)]
    pairs += [(d, e) for d in range(ndim) for e in range(d + 1, ndim)]
    return pairs


@register_feature
class GreyMu(DirectFeature):
    name = "GreyMu"
    description = "Elements of the grey-weighted inertia tensor"
    needs_grey = True

    def initialize(self, label, grey, n_objects, pixel_size):
        _require_scalar_grey(label, grey)
        units, _ = common_units(pixel_size)
        return [ValueInformation(f"{d}{e}", power_units(units, 2)) for d, e in _tensor_pairs(label.ndim)]

    def compute(self, label, grey, object_ids, pixel_size):
        _, scale = common_units(pixel_size)
        r, sel = _selected(label, object_ids)
        n = object_ids.size
        nd = label.ndim
        w = grey.ravel()[sel].astype(np.float64, copy=False)
        W = np.bincount(r, weights=w, minlength=n)
        xc = []
        for d in range(nd):
            x = _coordinate(label.shape, d, sel) * scale[d]
            mu = np.bincount(r, weights=w * x, minlength=n) / (W + 1e-300)
            xc.append(x - mu[r])
        # Central second moments, then inertia = trace(C) * I - C
        C = np.zeros((n, nd, nd), dtype=np.float64)
        for d in range(nd):
            for e in range(d, nd):
                C[:, d, e] = np.bincount(r, weights=w * xc[d] * xc[e], minlength=n) / (W + 1e-300)
                C[:, e, d] = C[:, d, e]
        tr = np.trace(C, axis1=1, axis2=2)
        pairs = _tensor_pairs(nd)
        out = np.zeros((n, len(pairs)), dtype=np.float64)
        for k, (d, e) in enumerate(pairs):
            out[:, k] = (tr if d == e else 0.0) - C[:, d, e]
        return out


@register_feature
class GreyInertia(CompositeFeature):
    name = "GreyInertia"
    description = "Grey-weighted moments of inertia of the object, largest first"

    def initialize(self, label, grey, n_objects, pixel_size):
        _require_scalar_grey(label, grey)
        self._nd = label.ndim
        units, _ = common_units(pixel_size)
        return _axis_info("lambda", self._nd, power_units(units, 2))

    def dependencies(self):
        return ["GreyMu"]

    def compose(self, dependencies, output):
        mu = dependencies["GreyMu"]
        nd = self._nd
        T = np.zeros((nd, nd), dtype=np.float64)
        for k, (d, e) in enumerate(_tensor_pairs(nd)):
            T[d, e] = mu[k]
            T[e, d] = mu[k]
        vals = np.linalg.eigvalsh(T)
        output[:] = vals[::-1]


@register_feature
class GreyDimensionsCube(CompositeFeature):
    name = "GreyDimensionsCube"
    description = "Extent along the principal axes of a cube (grey-weighted)"

    def initialize(self, label, grey, n_objects, pixel_size):
        _require_scalar_grey(label, grey)
        nd = label.ndim
        if nd not in (2, 3):
            raise DimensionalityNotSupported(nd, (2, 3))
        self._nd = nd
        # Prefixes count as different units; mixed axes fall back to pixels.
        units, _ = common_units(pixel_size)
        return _axis_info("axis", nd, units)

    def dependencies(self):
        return ["GreyInertia"]

    def compose(self, dependencies, output):
        lam = dependencies["GreyInertia"]
        if self._nd == 2:
            v = (12.0 * lam[0], 12.0 * lam[1])
        else:
            v = (6.0 * (lam[0] + lam[1] - lam[2]),
                 6.0 * (lam[0] - lam[1] + lam[2]),
                 6.0 * (-lam[0] + lam[1] + lam[2]))
        output[:] = np.sqrt(np.maximum(v, 0.0))


@register_feature
class Mean(CompositeFeature):
    name = "Mean"
    description = "Mean grey value within the object"

    def dependencies(self):
        return ["Mass", "Size"]

    def compose(self, dependencies, output):
        size = dependencies["Size"][0]
        output[0] = dependencies["Mass"][0] / size if size > 0 else np.nan


@register_feature
class PhysicalSize(CompositeFeature):
    name = "PhysicalSize"
    description = "Area or volume of the object in physical units"

    def initialize(self, label, grey, n_objects, pixel_size):
        units, scale = common_units(pixel_size)
        self._pixel = float(np.prod(scale)) if scale.size else 1.0
        return [ValueInformation("", power_units(units, label.ndim))]

    def dependencies(self):
        return ["Size"]

    def compose(self, dependencies, output):
        output[0] = dependencies["Size"][0] * self._pixel


__all__ = [
    "Size", "Center", "BoundingBox", "Mass", "Minimum", "Maximum",
    "GreyMu", "GreyInertia", "GreyDimensionsCube", "Mean", "PhysicalSize",
]
