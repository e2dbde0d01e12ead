"""
measurement.py

Per-object measurement with dependency-resolved composite features.

- A *direct* feature computes its values from the label (and grey) image for
  all objects at once; the pixel work is delegated to a MeasurementHost.
- A *composite* feature lists the features it depends on and composes its
  values for one object from theirs. It never looks at pixels.

A FeatureSet pulls in missing dependencies, rejects dependency cycles and
fixes a topological evaluation order once, when it is built. ``measure`` then
runs ``initialize`` once per feature (output arity, names and units), fills in
direct features, and composes the composite ones object by object in that
order, so every prerequisite is complete before it is read.

Primary API
-----------

    from measurement import measure

    m = measure(labels, grey, features=["Size", "GreyDimensionsCube"])
    m["GreyDimensionsCube"]      # (n_objects, ndim) array
    m.value_info("Size")         # [ValueInformation(name="", units="px")]
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from errors import (DimensionMismatch, FeatureDependencyCycle, NotScalarOrNotBinary,
                    UnknownFeature)
from nd_array import as_ndarray, tensor_shape_of

PIXEL_UNITS = "px"


@dataclass
class PhysicalQuantity:
    magnitude: float = 1.0
    units: str = PIXEL_UNITS

    @property
    def is_physical(self) -> bool:
        return self.units not in ("", PIXEL_UNITS)


@dataclass
class ValueInformation:
    name: str = ""
    units: str = ""


def common_units(pixel_size: Sequence[PhysicalQuantity]) -> Tuple[str, np.ndarray]:
    """Return (units, per-axis scale).

    Physical units are used only when every axis is physical with the same
    units string; otherwise measurements fall back to pixels (scale 1).
    """
    nd = len(pixel_size)
    if nd and all(p.is_physical for p in pixel_size) and len({p.units for p in pixel_size}) == 1:
        return pixel_size[0].units, np.array([p.magnitude for p in pixel_size], dtype=np.float64)
    return PIXEL_UNITS, np.ones(nd, dtype=np.float64)


def power_units(units: str, n: int) -> str:
    return units if n == 1 else f"{units}^{n}"


class Feature:
    name: str = ""
    description: str = ""
    needs_grey: bool = False
    role: str = ""

    def initialize(self, label: np.ndarray, grey, n_objects: int,
                   pixel_size: Sequence[PhysicalQuantity]) -> List[ValueInformation]:
        return [ValueInformation()]


class DirectFeature(Feature):
    role = "direct"

    def compute(self, label: np.ndarray, grey, object_ids: np.ndarray,
                pixel_size: Sequence[PhysicalQuantity]) -> np.ndarray:
        raise NotImplementedError


class CompositeFeature(Feature):
    role = "composite"

    def dependencies(self) -> List[str]:
        return []

    def compose(self, dependencies: "DependencyValues", output: np.ndarray):
        raise NotImplementedError


class DependencyValues:
    """Already-computed values of a composite's dependencies for one object."""

    def __init__(self, object_id: int, values: Dict[str, np.ndarray]):
        self.object_id = object_id
        self._values = values

    def __getitem__(self, name: str) -> np.ndarray:
        try:
            return self._values[name]
        except KeyError:
            raise UnknownFeature(name) from None

    def __iter__(self):
        return iter(self._values.items())

    def __contains__(self, name: str) -> bool:
        return name in self._values


_REGISTRY: Dict[str, type] = {}


def register_feature(cls: type) -> type:
    if not cls.name:
        raise ValueError(f"{cls.__name__} has no feature name")
    _REGISTRY[cls.name] = cls
    return cls


def known_features() -> List[str]:
    import features  # noqa: F401  (registers the built-in features)
    return sorted(_REGISTRY)


def create_feature(name: str) -> Feature:
    import features  # noqa: F401
    cls = _REGISTRY.get(name)
    if cls is None:
        raise UnknownFeature(name)
    return cls()


class FeatureSet:
    def __init__(self, features: Iterable):
        self._features: Dict[str, Feature] = {}
        self.requested: List[str] = []
        for f in features:
            feat = create_feature(f) if isinstance(f, str) else f
            if feat.name in self._features:
                continue
            self._features[feat.name] = feat
            self.requested.append(feat.name)

        pending = list(self._features.values())
        while pending:
            feat = pending.pop()
            if isinstance(feat, CompositeFeature):
                for dep in feat.dependencies():
                    if dep not in self._features:
                        self._features[dep] = create_feature(dep)
                        pending.append(self._features[dep])
        self.order = self._topological_order()

    def _topological_order(self) -> List[str]:
        order: List[str] = []
        state: Dict[str, int] = {}
        path: List[str] = []

        def visit(name: str):
            s = state.get(name, 0)
            if s == 2:
                return
            if s == 1:
                raise FeatureDependencyCycle(path[path.index(name):] + [name])
            state[name] = 1
            path.append(name)
            feat = self._features[name]
            if isinstance(feat, CompositeFeature):
                for dep in sorted(feat.dependencies()):
                    visit(dep)
            path.pop()
            state[name] = 2
            order.append(name)

        for name in sorted(self._features):
            visit(name)
        return order

    def __contains__(self, name: str) -> bool:
        return name in self._features

    def __getitem__(self, name: str) -> Feature:
        return self._features[name]

    def __len__(self) -> int:
        return len(self._features)

    @property
    def needs_grey(self) -> bool:
        return any(f.needs_grey for f in self._features.values())

    def direct(self) -> List[str]:
        return [n for n in self.order if isinstance(self._features[n], DirectFeature)]

    def composite(self) -> List[str]:
        return [n for n in self.order if isinstance(self._features[n], CompositeFeature)]


def object_rows(label: np.ndarray, object_ids: np.ndarray) -> np.ndarray:
    """Row index into ``object_ids`` for every pixel, -1 where the label is not listed."""
    lab = label.ravel()
    n = object_ids.size
    if n == 0:
        return np.full(lab.shape, -1, dtype=np.int64)
    idx = np.searchsorted(object_ids, lab)
    idx_c = np.minimum(idx, n - 1)
    return np.where(object_ids[idx_c] == lab, idx_c, -1).astype(np.int64)


class MeasurementHost:
    """Supplies object ids and direct feature values."""

    def object_ids(self, label: np.ndarray) -> np.ndarray:
        u = np.unique(label)
        return u[u != 0]

    def compute(self, feature: DirectFeature, label: np.ndarray, grey, object_ids: np.ndarray,
                pixel_size: Sequence[PhysicalQuantity]) -> np.ndarray:
        raise NotImplementedError


class ArrayMeasurementHost(MeasurementHost):
    """Computes direct features from in-memory arrays."""

    def compute(self, feature, label, grey, object_ids, pixel_size):
        return feature.compute(label, grey, object_ids, pixel_size)


class PrecomputedHost(MeasurementHost):
    """Serves direct values computed elsewhere, keyed by feature name."""

    def __init__(self, object_ids: Sequence[int], values: Dict[str, np.ndarray]):
        ids = np.asarray(object_ids)
        order = np.argsort(ids, kind="stable")
        self._ids = ids[order]
        self._values = {}
        for k, v in values.items():
            v = np.asarray(v, dtype=np.float64)
            if v.shape[0] != ids.size:
                raise DimensionMismatch([v.shape, (ids.size,)], dim=0)
            self._values[k] = v[order]

    def object_ids(self, label):
        return self._ids

    def compute(self, feature, label, grey, object_ids, pixel_size):
        if feature.name not in self._values:
            raise UnknownFeature(feature.name)
        v = self._values[feature.name]
        rows = np.minimum(np.searchsorted(self._ids, object_ids), max(self._ids.size - 1, 0))
        if object_ids.size and (self._ids.size == 0 or np.any(self._ids[rows] != object_ids)):
            raise KeyError("Requested objects missing from precomputed values")
        return v[rows]


class Measurement:
    def __init__(self, object_ids: np.ndarray, order: List[str], columns: Dict[str, slice],
                 info: Dict[str, List[ValueInformation]], values: np.ndarray, requested: List[str]):
        self.object_ids = object_ids
        self._order = order
        self._columns = columns
        self._info = info
        self._values = values
        self.requested = requested

    def __len__(self) -> int:
        return int(self.object_ids.size)

    def __contains__(self, name: str) -> bool:
        return name in self._columns

    def features(self) -> List[str]:
        return list(self._order)

    def values(self, name: str) -> np.ndarray:
        if name not in self._columns:
            raise UnknownFeature(name)
        return self._values[:, self._columns[name]].copy()

    __getitem__ = values

    def value_info(self, name: str) -> List[ValueInformation]:
        if name not in self._info:
            raise UnknownFeature(name)
        return list(self._info[name])

    def row(self, object_id: int) -> Dict[str, np.ndarray]:
        hit = np.flatnonzero(self.object_ids == object_id)
        if hit.size == 0:
            raise KeyError(f"Object {object_id} not measured")
        i = int(hit[0])
        return {n: self._values[i, self._columns[n]].copy() for n in self._order}

    def to_dict(self) -> Dict[str, np.ndarray]:
        out = {"label_ids": self.object_ids.copy()}
        for n in self._order:
            out[n] = self.values(n)
        return out


def _pixel_size(pixel_size, ndim: int) -> List[PhysicalQuantity]:
    if pixel_size is None:
        items = [PhysicalQuantity()] * ndim
    elif isinstance(pixel_size, (PhysicalQuantity, int, float)):
        items = [pixel_size] * ndim
    elif isinstance(pixel_size, tuple) and len(pixel_size) == 2 and isinstance(pixel_size[1], str):
        items = [pixel_size] * ndim
    else:
        items = list(pixel_size)
        if len(items) == 1:
            items = items * ndim
    if len(items) != ndim:
        raise DimensionMismatch([(len(items),), (ndim,)], message=(
            f"pixel_size has {len(items)} entries for a {ndim}-D image"))
    out = []
    for p in items:
        if isinstance(p, PhysicalQuantity):
            out.append(p)
        elif isinstance(p, tuple):
            out.append(PhysicalQuantity(float(p[0]), str(p[1])))
        else:
            out.append(PhysicalQuantity(float(p), PIXEL_UNITS))
    return out


def measure(label,
            grey=None,
            features: Iterable = ("Size",),
            object_ids: Optional[Sequence[int]] = None,
            pixel_size=None,
            host: Optional[MeasurementHost] = None) -> Measurement:
    """Measure ``features`` for every object of ``label``.

    - label: unsigned integer label image (0 is background)
    - grey: optional grey image of the same spatial shape (required by grey features)
    - object_ids: objects to measure; defaults to every label present
    - pixel_size: None, a number, a (magnitude, units) pair, or one entry per axis
    - host: MeasurementHost for direct features (default: computed from arrays)
    """
    tshape = tensor_shape_of(label)
    lab = as_ndarray(label)
    if tshape or lab.dtype.kind != "u":
        raise NotScalarOrNotBinary(lab.dtype, tshape, expected="unsigned integer label")
    g = None
    if grey is not None:
        # Tensor grey images carry their tensor dimensions after the spatial ones.
        g = as_ndarray(grey)
        if g.ndim < lab.ndim or g.shape[:lab.ndim] != lab.shape:
            raise DimensionMismatch([lab.shape, g.shape])

    fs = features if isinstance(features, FeatureSet) else FeatureSet(features)
    if fs.needs_grey and g is None:
        raise ValueError("A grey image is required by: " +
                         ", ".join(n for n in fs.order if fs[n].needs_grey))
    ps = _pixel_size(pixel_size, lab.ndim)
    host = host or ArrayMeasurementHost()
    if object_ids is None:
        ids = np.asarray(host.object_ids(lab))
    else:
        ids = np.unique(np.asarray(object_ids))
    n = int(ids.size)

    # Schema negotiation, once per run
    info: Dict[str, List[ValueInformation]] = {}
    columns: Dict[str, slice] = {}
    col = 0
    for name in fs.order:
        vi = list(fs[name].initialize(lab, g, n, ps))
        info[name] = vi
        columns[name] = slice(col, col + len(vi))
        col += len(vi)
    values = np.zeros((n, col), dtype=np.float64)

    for name in fs.direct():
        v = np.asarray(host.compute(fs[name], lab, g, ids, ps), dtype=np.float64)
        width = columns[name].stop - columns[name].start
        values[:, columns[name]] = v.reshape(n, width)

    composite = [(name, fs[name], fs[name].dependencies()) for name in fs.composite()]
    for i in range(n):
        oid = int(ids[i])
        for name, feat, deps in composite:
            dv = DependencyValues(oid, {d: values[i, columns[d]] for d in deps})
            feat.compose(dv, values[i, columns[name]])

    return Measurement(ids, fs.order, columns, info, values, fs.requested)
