"""Conversion between Python values and engine-native arrays (mxArray).

Only the subset needed to pass arguments and results across a session is
covered: real numeric and logical arrays, scalars and character rows.
"""

import ctypes
import threading
import weakref
from typing import Any, Optional

import numpy as np

from matbridge.config import config
from matbridge.errors import EngineUnavailable
from matbridge.utils import log_error

# mxClassID
mxCELL_CLASS = 1
mxSTRUCT_CLASS = 2
mxLOGICAL_CLASS = 3
mxCHAR_CLASS = 4
mxDOUBLE_CLASS = 6
mxSINGLE_CLASS = 7
mxINT8_CLASS = 8
mxUINT8_CLASS = 9
mxINT16_CLASS = 10
mxUINT16_CLASS = 11
mxINT32_CLASS = 12
mxUINT32_CLASS = 13
mxINT64_CLASS = 14
mxUINT64_CLASS = 15

mxREAL = 0

CLASS_DTYPES = {
    mxLOGICAL_CLASS: np.dtype(np.bool_),
    mxDOUBLE_CLASS: np.dtype(np.float64),
    mxSINGLE_CLASS: np.dtype(np.float32),
    mxINT8_CLASS: np.dtype(np.int8),
    mxUINT8_CLASS: np.dtype(np.uint8),
    mxINT16_CLASS: np.dtype(np.int16),
    mxUINT16_CLASS: np.dtype(np.uint16),
    mxINT32_CLASS: np.dtype(np.int32),
    mxUINT32_CLASS: np.dtype(np.uint32),
    mxINT64_CLASS: np.dtype(np.int64),
    mxUINT64_CLASS: np.dtype(np.uint64),
}
DTYPE_CLASSES = {dtype: class_id for class_id, dtype in CLASS_DTYPES.items()}


def engine_dims(shape) -> tuple:
    """Engine arrays are at least 2-D; 1-D data becomes a column."""
    if len(shape) == 0:
        return (1, 1)
    if len(shape) == 1:
        return (shape[0], 1)
    return tuple(shape)


def to_engine_array(value: Any) -> np.ndarray:
    """Normalize a Python value into a column-major array the engine accepts.

    numpy arrays keep their dtype. Plain Python numbers and sequences become
    double, the engine's default numeric class, unless they are booleans.
    """
    if isinstance(value, np.ndarray) or isinstance(value, np.generic):
        arr = np.asarray(value)
    else:
        arr = np.asarray(value)
        if arr.dtype.kind in ("i", "u", "f"):
            arr = arr.astype(np.float64)
    if arr.dtype.kind == "c":
        raise TypeError("complex values are not supported")
    if arr.dtype not in DTYPE_CLASSES:
        raise TypeError(f"cannot convert value of dtype {arr.dtype} to an engine array")
    return np.asfortranarray(arr.reshape(engine_dims(arr.shape), order="F"))


def from_engine_array(arr: np.ndarray) -> Any:
    """Collapse 1x1 to a scalar and 1xN / Nx1 to a flat vector."""
    if arr.size == 1:
        return arr.reshape(()).item()
    if arr.ndim == 2 and arr.size > 0 and 1 in arr.shape:
        return arr.ravel(order="F")
    return arr


def convert_value(value: Any, dtype: Any) -> Any:
    """Coerce a converted result to ``dtype`` (a Python scalar type or numpy dtype)."""
    if dtype is None:
        return value
    if isinstance(dtype, type) and dtype in (bool, int, float, str):
        if isinstance(value, np.ndarray):
            if value.size != 1:
                raise TypeError(f"cannot convert array of shape {value.shape} to {dtype.__name__}")
            value = value.reshape(()).item()
        return dtype(value)
    return np.asarray(value, dtype=dtype)


class MxArray:
    """Handle to an engine-native array.

    When ``owned`` the array is destroyed on ``release()``, on context exit,
    or when the handle is garbage collected, whichever comes first.
    """

    def __init__(self, ptr: int, marshaller: Any, owned: bool = True):
        if not ptr:
            raise ValueError("null mxArray pointer")
        self.ptr: Optional[int] = ptr
        self.marshaller = marshaller
        self.owned = owned
        self._finalizer = weakref.finalize(self, marshaller.destroy, ptr) if owned else None

    @property
    def released(self) -> bool:
        return self.ptr is None

    def value(self, dtype: Any = None) -> Any:
        if self.ptr is None:
            raise ValueError("mxArray already released")
        return convert_value(self.marshaller.from_mx(self), dtype)

    def release(self) -> None:
        if self._finalizer is not None:
            self._finalizer()
        self.ptr = None

    def __enter__(self) -> "MxArray":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def __repr__(self) -> str:
        state = "released" if self.ptr is None else hex(self.ptr)
        return f"MxArray({state})"


class Marshaller:
    """libmx-backed converter."""

    def __init__(self, path: str):
        self.path = path
        try:
            self._lib = ctypes.CDLL(path)
        except OSError as exc:
            raise EngineUnavailable(f"failed to load array library {path}: {exc}") from exc

        size_p = ctypes.POINTER(ctypes.c_size_t)
        self._create_numeric = self._bind(
            "mxCreateNumericArray", ctypes.c_void_p,
            [ctypes.c_size_t, size_p, ctypes.c_int, ctypes.c_int],
        )
        self._create_logical = self._bind(
            "mxCreateLogicalArray", ctypes.c_void_p, [ctypes.c_size_t, size_p]
        )
        self._create_string = self._bind("mxCreateString", ctypes.c_void_p, [ctypes.c_char_p])
        self._get_class_id = self._bind("mxGetClassID", ctypes.c_int, [ctypes.c_void_p])
        self._get_ndims = self._bind("mxGetNumberOfDimensions", ctypes.c_size_t, [ctypes.c_void_p])
        self._get_dims = self._bind("mxGetDimensions", size_p, [ctypes.c_void_p])
        self._get_data = self._bind("mxGetData", ctypes.c_void_p, [ctypes.c_void_p])
        self._is_complex = self._bind("mxIsComplex", ctypes.c_bool, [ctypes.c_void_p])
        self._to_string = self._bind("mxArrayToString", ctypes.c_void_p, [ctypes.c_void_p])
        self._free = self._bind("mxFree", None, [ctypes.c_void_p])
        self._destroy = self._bind("mxDestroyArray", None, [ctypes.c_void_p])

    def _bind(self, name: str, restype: Any, argtypes: list):
        # large-array-dims builds export the _730 variants
        for symbol in (f"{name}_730", name):
            func = getattr(self._lib, symbol, None)
            if func is not None:
                func.restype = restype
                func.argtypes = argtypes
                return func
        raise EngineUnavailable(f"array library {self.path} has no symbol {name}")

    def to_mx(self, value: Any) -> MxArray:
        if isinstance(value, str):
            ptr = self._create_string(value.encode("utf-8"))
            if not ptr:
                raise MemoryError("mxCreateString failed")
            return MxArray(ptr, self)

        arr = to_engine_array(value)
        dims = (ctypes.c_size_t * arr.ndim)(*arr.shape)
        if arr.dtype == np.bool_:
            ptr = self._create_logical(arr.ndim, dims)
        else:
            ptr = self._create_numeric(arr.ndim, dims, DTYPE_CLASSES[arr.dtype], mxREAL)
        if not ptr:
            raise MemoryError(f"failed to allocate engine array of shape {arr.shape}")
        mx = MxArray(ptr, self)
        if arr.nbytes:
            ctypes.memmove(self._get_data(ptr), arr.ctypes.data, arr.nbytes)
        return mx

    def from_mx(self, mx: MxArray) -> Any:
        ptr = mx.ptr
        class_id = self._get_class_id(ptr)
        if class_id == mxCHAR_CLASS:
            raw = self._to_string(ptr)
            if not raw:
                raise TypeError("only character row vectors can be converted to str")
            try:
                return ctypes.string_at(raw).decode("utf-8", errors="replace")
            finally:
                self._free(raw)
        if class_id in (mxCELL_CLASS, mxSTRUCT_CLASS):
            raise TypeError("cell and struct arrays are not supported")
        if class_id not in CLASS_DTYPES:
            raise TypeError(f"unsupported engine array class id {class_id}")
        if self._is_complex(ptr):
            raise TypeError("complex values are not supported")

        ndims = self._get_ndims(ptr)
        dims_p = self._get_dims(ptr)
        shape = tuple(dims_p[i] for i in range(ndims))
        dtype = CLASS_DTYPES[class_id]
        count = int(np.prod(shape))
        if count == 0:
            return np.empty(shape, dtype=dtype, order="F")
        data = self._get_data(ptr)
        raw = (ctypes.c_char * (count * dtype.itemsize)).from_address(data)
        arr = np.frombuffer(raw, dtype=dtype).copy().reshape(shape, order="F")
        return from_engine_array(arr)

    def destroy(self, ptr: int) -> None:
        if ptr:
            self._destroy(ptr)


_marshaller_lock = threading.Lock()
_marshaller: Optional[Marshaller] = None


def default_marshaller() -> Marshaller:
    global _marshaller
    with _marshaller_lock:
        if _marshaller is None:
            path = config.library_path("mx")
            if not path:
                raise EngineUnavailable(
                    "array library not found: set MATLAB_ROOT or MATBRIDGE_LIBMX, "
                    "or put matlab on PATH"
                )
            try:
                _marshaller = Marshaller(path)
            except EngineUnavailable as exc:
                log_error(str(exc))
                raise
        return _marshaller
