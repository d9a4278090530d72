"""
Shared pytest fixtures for matbridge tests.

This module provides an in-process stand-in for the engine:
- FakeHeap: storage behind fake mxArray pointers
- FakeMarshaller: converts values to/from fake mxArray handles
- FakeEngineLibrary: the engine C API over a dict workspace with a tiny
  statement interpreter (assignment, clear, function calls)
"""

import ctypes
import itertools
import os
import re
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import numpy as np
import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from matbridge.mxarray import MxArray, engine_dims
from matbridge.registry import DefaultSessionRegistrar
from matbridge.session import EngineSession


IDENT = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")
CALL = re.compile(r"^(?:(?:\[(?P<multi>[^\]]*)\]|(?P<single>\w+)) = )?(?P<func>[\w.]+)\((?P<args>[^)]*)\);$")
CLEAR = re.compile(r"^clear (?P<name>\w+);$")
ASSIGN = re.compile(r"^(?P<name>\w+) = (?P<value>-?\d+(?:\.\d+)?);$")


# =============================================================================
# Fake array storage
# =============================================================================

class FakeHeap:
    """Values addressed by integer pointers, like mxArray allocations."""

    def __init__(self):
        self.values: Dict[int, Any] = {}
        self.destroyed: List[int] = []
        self._next = itertools.count(0x1000, 0x10)

    def alloc(self, value: Any) -> int:
        ptr = next(self._next)
        self.values[ptr] = value
        return ptr

    def free(self, ptr: int) -> None:
        self.values.pop(ptr)
        self.destroyed.append(ptr)

    @property
    def live(self) -> int:
        return len(self.values)


class FakeMarshaller:
    def __init__(self, heap: FakeHeap):
        self.heap = heap

    def to_mx(self, value: Any) -> MxArray:
        return MxArray(self.heap.alloc(value), self)

    def from_mx(self, mx: MxArray) -> Any:
        return self.heap.values[mx.ptr]

    def destroy(self, ptr: int) -> None:
        self.heap.free(ptr)


# =============================================================================
# Fake engine library
# =============================================================================

@dataclass
class FakeWorkspace:
    variables: Dict[str, Any] = field(default_factory=dict)
    buffer: Optional[Any] = None
    buffer_size: int = 0
    closed: bool = False
    visible: bool = True


class FakeEngineLibrary:
    """Implements the EngineLibrary interface without a real engine."""

    def __init__(self, heap: FakeHeap):
        self.heap = heap
        self.workspaces: Dict[int, FakeWorkspace] = {}
        self._handles = itertools.count(1)

        self.open_fails = False
        self.fail_eval = False
        self.fail_statements: set = set()
        self.close_rc = 0
        self.reject_names: set = set()
        self.supports_visibility = False

        self.startcmds: List[Optional[str]] = []
        self.statements: List[str] = []
        self.close_calls: List[int] = []
        self.visibility_calls: List[tuple] = []
        self._printed: List[str] = []

        self.functions: Dict[str, Callable[..., list]] = {
            "sum": lambda nargout, x: [float(np.sum(x))],
            "size": self._size,
            "disp": self._disp,
            "deal": lambda nargout, *xs: list(xs),
            "pi": lambda nargout: [np.pi],
        }

    def _size(self, nargout, x):
        dims = engine_dims(np.shape(x))
        if nargout <= 1:
            return [np.array(dims, dtype=float)]
        return [float(d) for d in dims]

    def _disp(self, nargout, x):
        self._printed.append(f"{x}\n")
        return []

    def _workspace(self, handle) -> Optional[FakeWorkspace]:
        ws = self.workspaces.get(handle)
        if ws is None or ws.closed:
            return None
        return ws

    # ---- C API ----

    def open(self, startcmd):
        self.startcmds.append(startcmd)
        if self.open_fails:
            return None
        handle = next(self._handles)
        self.workspaces[handle] = FakeWorkspace()
        return handle

    def close(self, handle):
        self.close_calls.append(handle)
        ws = self._workspace(handle)
        if ws is None:
            return 1
        ws.closed = True
        return self.close_rc

    def output_buffer(self, handle, buffer, size):
        ws = self._workspace(handle)
        if ws is None:
            return 1
        ws.buffer = buffer
        ws.buffer_size = size
        return 0

    def eval_string(self, handle, statement):
        ws = self._workspace(handle)
        if ws is None or self.fail_eval:
            return 1
        self.statements.append(statement)
        if statement in self.fail_statements:
            return 1
        self._printed = []
        self._execute(ws, statement)
        text = "".join(self._printed)
        # only printing statements touch the buffer
        if text and ws.buffer is not None:
            data = text.encode("utf-8")[: ws.buffer_size - 1] + b"\x00"
            ctypes.memmove(ws.buffer, data, len(data))
        return 0

    def put_variable(self, handle, name, array_ptr):
        ws = self._workspace(handle)
        if ws is None or not IDENT.match(name) or name in self.reject_names:
            return 1
        ws.variables[name] = self.heap.values[array_ptr]
        return 0

    def get_variable(self, handle, name):
        ws = self._workspace(handle)
        if ws is None or name not in ws.variables:
            return None
        return self.heap.alloc(ws.variables[name])

    def set_visible(self, handle, visible):
        self.visibility_calls.append((handle, visible))
        return 0

    # ---- interpreter ----

    def _execute(self, ws: FakeWorkspace, statement: str) -> None:
        match = CLEAR.match(statement)
        if match:
            ws.variables.pop(match.group("name"), None)
            return
        match = ASSIGN.match(statement)
        if match:
            ws.variables[match.group("name")] = float(match.group("value"))
            return
        match = CALL.match(statement)
        if not match:
            self._printed.append("Error: Invalid expression.\n")
            return

        if match.group("multi") is not None:
            outputs = [n.strip() for n in match.group("multi").split(",")]
        elif match.group("single"):
            outputs = [match.group("single")]
        else:
            outputs = []
        arg_names = [a.strip() for a in match.group("args").split(",") if a.strip()]

        func = self.functions.get(match.group("func"))
        if func is None:
            self._printed.append(f"Undefined function '{match.group('func')}'.\n")
            return
        missing = [a for a in arg_names if a not in ws.variables]
        if missing:
            self._printed.append(f"Undefined variable '{missing[0]}'.\n")
            return

        results = func(len(outputs), *[ws.variables[a] for a in arg_names])
        if len(results) < len(outputs):
            self._printed.append("Too many output arguments.\n")
            return
        for name, value in zip(outputs, results):
            ws.variables[name] = value

    def variables(self, handle) -> Dict[str, Any]:
        return self.workspaces[handle].variables


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def heap():
    return FakeHeap()


@pytest.fixture
def marshaller(heap):
    return FakeMarshaller(heap)


@pytest.fixture
def engine(heap):
    return FakeEngineLibrary(heap)


@pytest.fixture
def open_session(engine, marshaller):
    """Factory opening sessions against the fake engine; closes them afterwards."""
    opened = []

    def _open(buffer_size=1024, **kwargs):
        kwargs.setdefault("startcmd", "matlab -nosplash")
        session = EngineSession.open(buffer_size, library=engine, marshaller=marshaller, **kwargs)
        opened.append(session)
        return session

    yield _open
    for session in opened:
        session.close()


@pytest.fixture
def session(open_session):
    return open_session()


@pytest.fixture
def registrar(engine, marshaller):
    def opener(buffer_size=1024):
        return EngineSession.open(
            buffer_size, startcmd="matlab -nosplash", library=engine, marshaller=marshaller
        )

    reg = DefaultSessionRegistrar(opener)
    yield reg
    engine.close_rc = 0
    reg.close()
