"""
nd_array.py

Strided N-dimensional array model shared by the framework, the labeling and
growth engine and the measurement resolver.

- Sizes and strides are per spatial dimension; strides are signed and given
  in elements (not bytes).
- Each pixel may hold a tensor (vector / matrix) whose shape is independent of
  the spatial dimensions. Scalar images have tensor_shape == ().
- An array is *forged* once it has storage. Storage blocks come from an
  allocator and are tracked by a registry keyed by an integer handle; views
  share the handle and the block's release callback fires when the last view
  is gone.
- Broadcast dimensions are marked explicitly per dimension (the stride of such
  a dimension is 0, but code should ask ``broadcast[d]`` rather than test the
  stride).

Primary API
-----------

    from nd_array import StridedArray, DataType

    img = StridedArray((64, 32), DataType.UINT8)
    img.forge()
    img.numpy()[:] = 1

    wrapped = StridedArray.from_numpy(np.zeros((4, 5, 3)), tensor_dims=1)
"""

from __future__ import annotations

import enum
import threading
import weakref
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from errors import DimensionMismatch, NotForged


class DataType(enum.Enum):
    BIN = "bin"
    UINT8 = "uint8"
    UINT16 = "uint16"
    UINT32 = "uint32"
    UINT64 = "uint64"
    SINT8 = "sint8"
    SINT16 = "sint16"
    SINT32 = "sint32"
    SINT64 = "sint64"
    SFLOAT = "sfloat"
    DFLOAT = "dfloat"
    SCOMPLEX = "scomplex"
    DCOMPLEX = "dcomplex"

    @property
    def numpy_dtype(self) -> np.dtype:
        return np.dtype(_TO_NUMPY[self])

    @classmethod
    def from_numpy(cls, dtype) -> "DataType":
        dtype = np.dtype(dtype)
        for dt, npt in _TO_NUMPY.items():
            if np.dtype(npt) == dtype:
                return dt
        raise TypeError(f"Unsupported element type {dtype}")

    @property
    def is_binary(self) -> bool:
        return self is DataType.BIN

    @property
    def is_unsigned(self) -> bool:
        return self in (DataType.UINT8, DataType.UINT16, DataType.UINT32, DataType.UINT64)

    @property
    def is_integer(self) -> bool:
        return self.is_unsigned or self in (DataType.SINT8, DataType.SINT16, DataType.SINT32, DataType.SINT64)

    @property
    def is_complex(self) -> bool:
        return self in (DataType.SCOMPLEX, DataType.DCOMPLEX)

    @property
    def is_real(self) -> bool:
        return self.is_integer or self in (DataType.SFLOAT, DataType.DFLOAT)


_TO_NUMPY = {
    DataType.BIN: np.bool_,
    DataType.UINT8: np.uint8,
    DataType.UINT16: np.uint16,
    DataType.UINT32: np.uint32,
    DataType.UINT64: np.uint64,
    DataType.SINT8: np.int8,
    DataType.SINT16: np.int16,
    DataType.SINT32: np.int32,
    DataType.SINT64: np.int64,
    DataType.SFLOAT: np.float32,
    DataType.DFLOAT: np.float64,
    DataType.SCOMPLEX: np.complex64,
    DataType.DCOMPLEX: np.complex128,
}

# Element type of label images produced by this package.
LABEL_DTYPE = np.uint32


def _prod(values: Sequence[int]) -> int:
    n = 1
    for v in values:
        n *= int(v)
    return n


def normal_strides(sizes: Sequence[int], tensor_elements: int = 1) -> List[int]:
    """Row-major (last dimension fastest) strides in elements, tensor interleaved."""
    strides = [0] * len(sizes)
    step = int(tensor_elements)
    for d in range(len(sizes) - 1, -1, -1):
        strides[d] = step
        step *= max(int(sizes[d]), 1)
    return strides


@dataclass
class StorageBlock:
    """Backing storage handed out by an allocator.

    - buffer: 1-D numpy array that owns (or views) the memory
    - strides: per-dimension strides in elements actually used by the allocator
    - tensor_stride: stride in elements between consecutive tensor elements
    - offset: element offset of pixel (0, ..., 0) within buffer
    - release: optional callback fired once the last array using the block is gone
    """

    buffer: np.ndarray
    strides: Tuple[int, ...]
    tensor_stride: int = 1
    offset: int = 0
    release: Optional[Callable[[], None]] = None


class Allocator:
    """Storage allocator interface."""

    def allocate(self, sizes: Sequence[int], dtype: DataType, tensor_elements: int) -> StorageBlock:
        raise NotImplementedError


class NumpyAllocator(Allocator):
    def allocate(self, sizes: Sequence[int], dtype: DataType, tensor_elements: int) -> StorageBlock:
        n = _prod(sizes) * int(tensor_elements)
        buf = np.zeros(n, dtype=dtype.numpy_dtype)
        return StorageBlock(buffer=buf, strides=tuple(normal_strides(sizes, tensor_elements)), tensor_stride=1)


class StorageRegistry:
    """Reference-counted storage blocks keyed by a stable integer handle."""

    def __init__(self):
        self._lock = threading.Lock()
        self._blocks: Dict[int, StorageBlock] = {}
        self._counts: Dict[int, int] = {}
        self._next = 1

    def register(self, block: StorageBlock) -> int:
        with self._lock:
            handle = self._next
            self._next += 1
            self._blocks[handle] = block
            self._counts[handle] = 1
        return handle

    def acquire(self, handle: int) -> int:
        with self._lock:
            if handle not in self._counts:
                raise NotForged(f"Storage handle {handle} was already released")
            self._counts[handle] += 1
        return handle

    def release(self, handle: int):
        block = None
        with self._lock:
            cnt = self._counts.get(handle)
            if cnt is None:
                return
            if cnt > 1:
                self._counts[handle] = cnt - 1
                return
            del self._counts[handle]
            block = self._blocks.pop(handle)
        if block.release is not None:
            block.release()

    def get(self, handle: int) -> StorageBlock:
        with self._lock:
            block = self._blocks.get(handle)
        if block is None:
            raise NotForged(f"Storage handle {handle} was already released")
        return block

    def refcount(self, handle: int) -> int:
        with self._lock:
            return self._counts.get(handle, 0)

    def __len__(self) -> int:
        with self._lock:
            return len(self._blocks)


REGISTRY = StorageRegistry()
DEFAULT_ALLOCATOR = NumpyAllocator()


class StridedArray:
    def __init__(self, sizes: Sequence[int] = (), dtype: DataType = DataType.SFLOAT,
                 tensor_shape: Sequence[int] = ()):
        sizes = [int(s) for s in sizes]
        if any(s < 0 for s in sizes):
            raise ValueError(f"Sizes must be non-negative, got {sizes}")
        if not isinstance(dtype, DataType):
            dtype = DataType.from_numpy(dtype)
        self.sizes: List[int] = sizes
        self.dtype: DataType = dtype
        self.tensor_shape: Tuple[int, ...] = tuple(int(t) for t in tensor_shape)
        self.tensor_stride: int = 1
        self.strides: List[int] = normal_strides(sizes, self.tensor_elements)
        self.broadcast: List[bool] = [False] * len(sizes)
        self.offset: int = 0
        self._handle: Optional[int] = None
        self._finalizer = None

    # --- descriptor queries -------------------------------------------------

    @property
    def ndim(self) -> int:
        return len(self.sizes)

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(self.sizes)

    @property
    def tensor_elements(self) -> int:
        return _prod(self.tensor_shape)

    @property
    def num_pixels(self) -> int:
        return _prod(self.sizes)

    @property
    def is_scalar(self) -> bool:
        return self.tensor_elements == 1

    @property
    def is_binary(self) -> bool:
        return self.dtype.is_binary

    @property
    def is_unsigned(self) -> bool:
        return self.dtype.is_unsigned

    @property
    def is_real(self) -> bool:
        return self.dtype.is_real

    @property
    def has_broadcast(self) -> bool:
        return any(self.broadcast)

    @property
    def forged(self) -> bool:
        return self._handle is not None

    @property
    def handle(self) -> Optional[int]:
        return self._handle

    @property
    def is_contiguous(self) -> bool:
        if not self.forged or self.has_broadcast or self.tensor_stride != 1:
            return False
        ref = normal_strides(self.sizes, self.tensor_elements)
        return all(s == r for s, r, n in zip(self.strides, ref, self.sizes) if n > 1)

    def shares_storage(self, other: "StridedArray") -> bool:
        return self.forged and other.forged and self._handle == other._handle

    # --- storage ------------------------------------------------------------

    def _attach(self, handle: int):
        self._handle = handle
        self._finalizer = weakref.finalize(self, REGISTRY.release, handle)

    def forge(self, allocator: Optional[Allocator] = None) -> "StridedArray":
        if self.forged:
            return self
        allocator = allocator or DEFAULT_ALLOCATOR
        block = allocator.allocate(self.sizes, self.dtype, self.tensor_elements)
        if len(block.strides) != self.ndim:
            raise DimensionMismatch([self.sizes, block.strides], message=(
                f"Allocator returned {len(block.strides)} strides for a {self.ndim}-D image"))
        # The allocator decides the layout; take its strides, not the requested ones.
        self.strides = [int(s) for s in block.strides]
        self.tensor_stride = int(block.tensor_stride)
        self.offset = int(block.offset)
        self.broadcast = [False] * self.ndim
        self._attach(REGISTRY.register(block))
        return self

    def strip(self) -> "StridedArray":
        if self._finalizer is not None:
            self._finalizer()
        self._finalizer = None
        self._handle = None
        self.broadcast = [False] * self.ndim
        self.strides = normal_strides(self.sizes, self.tensor_elements)
        self.tensor_stride = 1
        self.offset = 0
        return self

    def _block(self) -> StorageBlock:
        if not self.forged:
            raise NotForged()
        return REGISTRY.get(self._handle)

    def numpy(self) -> np.ndarray:
        """Return a numpy view onto the storage (tensor dimensions trailing).

        Views with broadcast dimensions are read-only.
        """
        block = self._block()
        itemsize = block.buffer.itemsize
        tstrides = []
        step = self.tensor_stride
        for t in reversed(self.tensor_shape):
            tstrides.insert(0, step)
            step *= t
        shape = tuple(self.sizes) + self.tensor_shape
        strides = tuple((s * itemsize) for s in list(self.strides) + tstrides)
        base = block.buffer[self.offset:] if block.buffer.size else block.buffer
        return np.lib.stride_tricks.as_strided(base, shape=shape, strides=strides,
                                               writeable=not self.has_broadcast)

    def view(self) -> "StridedArray":
        """Shallow copy of the descriptor sharing the same storage."""
        out = StridedArray(self.sizes, self.dtype, self.tensor_shape)
        out.strides = list(self.strides)
        out.broadcast = list(self.broadcast)
        out.tensor_stride = self.tensor_stride
        out.offset = self.offset
        if self.forged:
            out._attach(REGISTRY.acquire(self._handle))
        return out

    def copy(self) -> "StridedArray":
        """Deep copy into fresh contiguous storage."""
        out = StridedArray(self.sizes, self.dtype, self.tensor_shape).forge()
        out.numpy()[...] = self.numpy()
        return out

    def adopt(self, arr: np.ndarray, tensor_dims: int = 0) -> "StridedArray":
        """Replace this array's storage and descriptor with a wrap of ``arr``."""
        other = StridedArray.from_numpy(arr, tensor_dims=tensor_dims)
        self.strip()
        self.sizes = list(other.sizes)
        self.dtype = other.dtype
        self.tensor_shape = other.tensor_shape
        self.strides = list(other.strides)
        self.broadcast = list(other.broadcast)
        self.tensor_stride = other.tensor_stride
        self.offset = other.offset
        self._attach(REGISTRY.acquire(other._handle))
        return self

    @classmethod
    def from_numpy(cls, arr, tensor_dims: int = 0) -> "StridedArray":
        arr = np.asarray(arr)
        if tensor_dims < 0 or tensor_dims > arr.ndim:
            raise ValueError(f"tensor_dims must be in [0, {arr.ndim}]")
        itemsize = arr.itemsize
        if any(s % itemsize for s in arr.strides):
            arr = np.ascontiguousarray(arr)
        nsp = arr.ndim - tensor_dims
        tshape = arr.shape[nsp:]
        elem = [s // itemsize for s in arr.strides]
        if tensor_dims:
            # Tensor elements must be laid out row-major with a single base stride.
            tstride = elem[-1]
            step = tstride
            for k in range(arr.ndim - 1, nsp - 1, -1):
                if arr.shape[k] > 1 and elem[k] != step:
                    arr = np.ascontiguousarray(arr)
                    elem = [s // itemsize for s in arr.strides]
                    tstride = 1
                    break
                step *= arr.shape[k]
        else:
            tstride = 1

        out = cls(arr.shape[:nsp], DataType.from_numpy(arr.dtype), tshape)
        if arr.size == 0:
            buf = np.zeros(0, dtype=arr.dtype)
            offset = 0
        else:
            # Flip negative-stride axes to find the lowest address, then expose the span as 1-D.
            flip = tuple(slice(None, None, -1) if s < 0 else slice(None) for s in arr.strides)
            low = arr[flip] if arr.ndim else arr.reshape(1)
            span = 1 + sum((n - 1) * abs(s) for n, s in zip(arr.shape, elem))
            buf = np.lib.stride_tricks.as_strided(low, shape=(span,), strides=(itemsize,))
            offset = -sum((n - 1) * s for n, s in zip(arr.shape, elem) if s < 0)
        block = StorageBlock(buffer=buf, strides=tuple(elem[:nsp]), tensor_stride=tstride, offset=offset)
        out.strides = list(elem[:nsp])
        out.tensor_stride = tstride
        out.offset = offset
        out._attach(REGISTRY.register(block))
        return out

    # --- shape manipulation (descriptor only, storage untouched) -------------

    def expand_dimensionality(self, ndim: int) -> "StridedArray":
        while self.ndim < ndim:
            self.sizes.append(1)
            self.strides.append(0)
            self.broadcast.append(False)
        return self

    def expand_singleton_dimension(self, dim: int, size: int) -> "StridedArray":
        if self.sizes[dim] != 1:
            raise DimensionMismatch([self.sizes], dim=dim, message=(
                f"Dimension {dim} has size {self.sizes[dim]}; only singleton dimensions can be expanded"))
        self.sizes[dim] = int(size)
        self.strides[dim] = 0
        self.broadcast[dim] = True
        return self

    def __repr__(self) -> str:
        state = "forged" if self.forged else "unforged"
        return (f"StridedArray(sizes={self.sizes}, strides={self.strides}, dtype={self.dtype.value}, "
                f"tensor_shape={self.tensor_shape}, {state})")


def as_ndarray(obj) -> np.ndarray:
    """Return a numpy view for a StridedArray (raises NotForged) or pass arrays through."""
    if isinstance(obj, StridedArray):
        return obj.numpy()
    return np.asarray(obj)


def tensor_shape_of(obj) -> Tuple[int, ...]:
    if isinstance(obj, StridedArray):
        return obj.tensor_shape
    return ()
