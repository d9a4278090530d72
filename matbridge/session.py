import ctypes
import itertools
import os
import sys
import threading
import weakref
from datetime import datetime
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

from matbridge.config import config
from matbridge.errors import (
    EngineOpenFailed, GetVariableError, InvalidSession, MEngineError, EvalError,
    PutVariableError
)
from matbridge.libeng import load_engine_library
from matbridge.mxarray import MxArray, default_marshaller
from matbridge.utils import decode_output, iso_now, json_line, log_error

_session_ids = itertools.count(1)


class _NativeState:
    """Native handle and the capture buffer registered with it.

    Shared between ``EngineSession.close`` and the finalizer so that whichever
    runs first leaves the handle detached for the other.
    """

    def __init__(self, library: Any, ptr: int, buffer: Optional[Any]):
        self.library = library
        self.ptr: Optional[int] = ptr
        self.buffer = buffer
        self.lock = threading.Lock()

    def detach(self) -> Optional[int]:
        with self.lock:
            ptr, self.ptr = self.ptr, None
            return ptr


def _release_native(state: _NativeState, session_id: int, log_path: str) -> None:
    ptr = state.detach()
    if ptr is None:
        return
    try:
        rc = state.library.close(ptr)
    except Exception as exc:
        log_error(f"session {session_id}: release failed: {exc}")
        return
    state.buffer = None
    if rc != 0:
        log_error(f"session {session_id}: engine close returned {rc} during release")
    json_line(log_path, {"ts": iso_now(), "dir": "SYS", "session_id": session_id,
                         "event": "session_released", "rc": rc})


class EngineSession:
    """One owned connection to an engine process.

    Use :meth:`open` to create a session. Every operation on the session is
    blocking and serialized by ``self.lock``; once closed, every operation
    except ``close`` raises :class:`InvalidSession`.
    """

    def __init__(self, library: Any, ptr: int, buffer: Optional[Any] = None, marshaller: Any = None):
        self.id = next(_session_ids)
        self.created_at = datetime.now()
        self.library = library
        self.buffer_size = len(buffer) if buffer is not None else 0
        self._marshaller = marshaller
        self._state = _NativeState(library, ptr, buffer)
        self.lock = threading.RLock()

        self.last_statement = ""
        self.last_statement_time: Optional[datetime] = None

        self.session_log_path = self._build_session_log_path()
        self._finalizer = weakref.finalize(
            self, _release_native, self._state, self.id, self.session_log_path
        )

    @classmethod
    def open(
        cls,
        buffer_size: Optional[int] = None,
        startcmd: Optional[str] = None,
        library: Any = None,
        marshaller: Any = None,
        hide_window: Optional[bool] = None,
    ) -> "EngineSession":
        if buffer_size is None:
            buffer_size = config.BUFFER_SIZE
        if buffer_size < 0:
            raise ValueError(f"buffer_size must be non-negative, got {buffer_size}")
        if library is None:
            library = load_engine_library()
        if startcmd is None:
            startcmd = config.startcmd()
        if hide_window is None:
            hide_window = config.HIDE_WINDOW

        ptr = library.open(startcmd)
        if not ptr:
            log_error(f"engine open failed (startcmd={startcmd!r})")
            raise EngineOpenFailed("Failed to open an engine session.")

        buffer = None
        if buffer_size > 0:
            buffer = ctypes.create_string_buffer(buffer_size)
            rc = library.output_buffer(ptr, buffer, buffer_size)
            if rc != 0:
                library.close(ptr)
                raise EngineOpenFailed(f"Failed to register an output buffer (err = {rc}).")

        session = cls(library, ptr, buffer, marshaller)
        if hide_window and getattr(library, "supports_visibility", False):
            rc = library.set_visible(ptr, False)
            if rc != 0:
                session._log_session("SYS", {"event": "set_visible_failed", "rc": rc})
        session._log_session("SYS", {
            "event": "session_opened",
            "buffer_size": buffer_size,
            "startcmd": startcmd,
        })
        return session

    def _build_session_log_path(self) -> str:
        if not config.LOG_DIR:
            return ""
        try:
            os.makedirs(config.LOG_DIR, exist_ok=True)
        except OSError as exc:
            log_error(f"cannot create log dir {config.LOG_DIR}: {exc}")
            return ""
        stamp = self.created_at.strftime("%Y%m%d_%H%M%S")
        return os.path.join(config.LOG_DIR, f"s{self.id}__{stamp}.log")

    def _log_session(self, direction: str, payload: Dict[str, Any]) -> None:
        if not self.session_log_path:
            return
        data = {"ts": iso_now(), "dir": direction, "session_id": self.id}
        data.update(payload)
        json_line(self.session_log_path, data)

    @property
    def marshaller(self) -> Any:
        if self._marshaller is None:
            self._marshaller = default_marshaller()
        return self._marshaller

    @property
    def closed(self) -> bool:
        return self._state.ptr is None

    @property
    def handle(self) -> int:
        ptr = self._state.ptr
        if ptr is None:
            raise InvalidSession(f"engine session {self.id} is closed")
        return ptr

    def close(self) -> None:
        """Close the session. Closing an already closed session does nothing."""
        with self.lock:
            ptr = self._state.detach()
            if ptr is None:
                return
            self._finalizer.detach()
            rc = self.library.close(ptr)
            self._state.buffer = None
            self._log_session("SYS", {"event": "session_closed", "rc": rc})
        if rc != 0:
            raise MEngineError(f"Failed to close engine session {self.id} (err = {rc})")

    def __enter__(self) -> "EngineSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<EngineSession id={self.id} {state} buffer_size={self.buffer_size}>"

    # ========= Statements =========

    def eval_string(self, statement: str) -> str:
        """Evaluate ``statement`` in the remote workspace.

        Captured output, if any, is written to stdout once and also returned.
        Errors raised by the statement itself only show up in that text.
        """
        with self.lock:
            handle = self.handle
            buffer = self._state.buffer
            if buffer is not None:
                # the engine overwrites the buffer; never read a previous call's text
                buffer[0] = b"\x00"
            rc = self.library.eval_string(handle, statement)
            self.last_statement = statement
            self.last_statement_time = datetime.now()
            if rc != 0:
                self._log_session("IN", {"event": "eval_failed", "statement": statement, "rc": rc})
                raise EvalError(f"Invalid engine session {self.id}: evaluation failed (err = {rc}).")
            output = decode_output(buffer.value) if buffer is not None else ""
            self._log_session("IN", {"event": "eval", "statement": statement})

        if output:
            sys.stdout.write(output)
            sys.stdout.flush()
        return output

    # ========= Variables =========

    def put_variable(self, name: str, value: Any) -> None:
        """Write ``value`` into the remote workspace as ``name``.

        ``name`` is passed to the engine verbatim. A caller supplied
        :class:`MxArray` is sent as is and stays owned by the caller.
        """
        with self.lock:
            handle = self.handle
            if isinstance(value, MxArray):
                mx, owned = value, False
            else:
                mx, owned = self.marshaller.to_mx(value), True
            try:
                rc = self.library.put_variable(handle, name, mx.ptr)
            finally:
                if owned:
                    mx.release()
            if rc != 0:
                self._log_session("OUT", {"event": "put_failed", "name": name, "rc": rc})
                raise PutVariableError(
                    f"Failed to put the variable {name} into engine session {self.id}.", name
                )
            self._log_session("OUT", {"event": "put", "name": name})

    def get_mvariable(self, name: str) -> MxArray:
        """Fetch ``name`` as an :class:`MxArray`; the caller owns the result."""
        with self.lock:
            handle = self.handle
            marshaller = self.marshaller
            ptr = self.library.get_variable(handle, name)
            if not ptr:
                self._log_session("IN", {"event": "get_failed", "name": name})
                raise GetVariableError(
                    f"Failed to get the variable {name} from engine session {self.id}.", name
                )
            self._log_session("IN", {"event": "get", "name": name})
        return MxArray(ptr, marshaller)

    def get_variable(self, name: str, dtype: Any = None) -> Any:
        """Fetch ``name`` converted to Python, optionally coerced to ``dtype``."""
        with self.get_mvariable(name) as mx:
            return mx.value(dtype)

    def info(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "closed": self.closed,
            "buffer_size": self.buffer_size,
            "last_statement": self.last_statement,
            "last_statement_time": self.last_statement_time.isoformat() if self.last_statement_time else None,
            "created_at": self.created_at.isoformat(),
            "session_log_path": self.session_log_path,
        }


def put_variables(
    session: EngineSession,
    pairs: Union[Mapping[str, Any], Iterable[Tuple[str, Any]]],
) -> None:
    """Put several variables in order; the first failure propagates."""
    items = pairs.items() if isinstance(pairs, Mapping) else pairs
    with session.lock:
        for name, value in items:
            session.put_variable(name, value)


def get_variables(session: EngineSession, names: Iterable[str]) -> Dict[str, Any]:
    with session.lock:
        return {name: session.get_variable(name) for name in names}
