"""
errors.py

Error kinds raised by the array model, the labeling / growth engine and the
measurement resolver. Each carries the values that violated the invariant so
callers do not have to re-derive them from the message.
"""

from __future__ import annotations

from typing import Sequence, Tuple


class RegionsError(Exception):
    """Base class for all errors raised by this package."""


class DimensionMismatch(RegionsError, ValueError):
    def __init__(self, shapes: Sequence[Sequence[int]], dim: int | None = None, message: str | None = None):
        self.shapes = tuple(tuple(int(s) for s in shape) for shape in shapes)
        self.dim = dim
        if message is None:
            where = f" at dimension {dim}" if dim is not None else ""
            message = "Dimensions don't match" + where + ": " + " vs ".join(str(s) for s in self.shapes)
        super().__init__(message)


class NotForged(RegionsError, RuntimeError):
    def __init__(self, message: str = "Image is not forged"):
        super().__init__(message)


class NotScalarOrNotBinary(RegionsError, TypeError):
    def __init__(self, dtype, tensor_shape: Tuple[int, ...] = (), expected: str = "scalar binary"):
        self.dtype = dtype
        self.tensor_shape = tuple(tensor_shape)
        self.expected = expected
        super().__init__(f"Expected a {expected} image, got dtype={dtype} tensor_shape={self.tensor_shape}")


class DimensionalityNotSupported(RegionsError, ValueError):
    def __init__(self, ndim: int, supported: Sequence[int] = ()):
        self.ndim = int(ndim)
        self.supported = tuple(supported)
        allowed = f" (supported: {', '.join(str(s) for s in self.supported)})" if self.supported else ""
        super().__init__(f"Dimensionality {self.ndim} not supported{allowed}")


class UnsupportedBoundaryCondition(RegionsError, ValueError):
    def __init__(self, condition):
        self.condition = condition
        super().__init__(f"Boundary condition {condition!r} not supported; use the default or 'periodic'")


class NotImplementedCombination(RegionsError, NotImplementedError):
    """A documented-missing combination of arguments (e.g. masked weighted growth)."""


class FeatureDependencyCycle(RegionsError, ValueError):
    def __init__(self, cycle: Sequence[str]):
        self.cycle = tuple(cycle)
        super().__init__("Feature dependency cycle: " + " -> ".join(self.cycle))


class UnknownFeature(RegionsError, KeyError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown feature {name!r}")
