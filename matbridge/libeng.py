import ctypes
import sys
import threading
from typing import Any, Optional

from matbridge.config import config
from matbridge.errors import EngineUnavailable
from matbridge.utils import log_error

_library_lock = threading.Lock()
_library: Optional["EngineLibrary"] = None


class EngineLibrary:
    """ctypes binding of the engine C API.

    Every entry point follows the engine's status contract: 0 is success,
    anything else is failure. Handles and array pointers are plain ints,
    ``None`` standing for NULL.
    """

    def __init__(self, path: str):
        self.path = path
        try:
            self._lib = ctypes.CDLL(path)
        except OSError as exc:
            raise EngineUnavailable(f"failed to load engine library {path}: {exc}") from exc

        self._engOpen = self._bind("engOpen", ctypes.c_void_p, [ctypes.c_char_p])
        self._engClose = self._bind("engClose", ctypes.c_int, [ctypes.c_void_p])
        self._engOutputBuffer = self._bind(
            "engOutputBuffer", ctypes.c_int, [ctypes.c_void_p, ctypes.c_char_p, ctypes.c_int]
        )
        self._engEvalString = self._bind(
            "engEvalString", ctypes.c_int, [ctypes.c_void_p, ctypes.c_char_p]
        )
        self._engPutVariable = self._bind(
            "engPutVariable", ctypes.c_int, [ctypes.c_void_p, ctypes.c_char_p, ctypes.c_void_p]
        )
        self._engGetVariable = self._bind(
            "engGetVariable", ctypes.c_void_p, [ctypes.c_void_p, ctypes.c_char_p]
        )
        self._engSetVisible = None
        if sys.platform.startswith("win32"):
            self._engSetVisible = self._bind(
                "engSetVisible", ctypes.c_int, [ctypes.c_void_p, ctypes.c_int]
            )

    def _bind(self, name: str, restype: Any, argtypes: list):
        try:
            func = getattr(self._lib, name)
        except AttributeError as exc:
            raise EngineUnavailable(f"engine library {self.path} has no symbol {name}") from exc
        func.restype = restype
        func.argtypes = argtypes
        return func

    def open(self, startcmd: Optional[str]) -> Optional[int]:
        cmd = startcmd.encode("utf-8") if startcmd else None
        return self._engOpen(cmd)

    def close(self, handle: int) -> int:
        return self._engClose(handle)

    def output_buffer(self, handle: int, buffer: Optional[Any], size: int) -> int:
        return self._engOutputBuffer(handle, buffer, size)

    def eval_string(self, handle: int, statement: str) -> int:
        return self._engEvalString(handle, statement.encode("utf-8"))

    def put_variable(self, handle: int, name: str, array_ptr: int) -> int:
        return self._engPutVariable(handle, name.encode("utf-8"), array_ptr)

    def get_variable(self, handle: int, name: str) -> Optional[int]:
        return self._engGetVariable(handle, name.encode("utf-8"))

    @property
    def supports_visibility(self) -> bool:
        return self._engSetVisible is not None

    def set_visible(self, handle: int, visible: bool) -> int:
        if self._engSetVisible is None:
            return 0
        return self._engSetVisible(handle, 1 if visible else 0)


def load_engine_library(path: Optional[str] = None) -> EngineLibrary:
    """Load libeng once per process; later calls return the cached binding."""
    global _library
    with _library_lock:
        if _library is not None and (path is None or path == _library.path):
            return _library
        resolved = path or config.library_path("eng")
        if not resolved:
            raise EngineUnavailable(
                "engine library not found: set MATLAB_ROOT or MATBRIDGE_LIBENG, "
                "or put matlab on PATH"
            )
        try:
            library = EngineLibrary(resolved)
        except EngineUnavailable as exc:
            log_error(str(exc))
            raise
        _library = library
        return library
