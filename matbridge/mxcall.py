"""Function-call semantics on top of eval_string and named variables.

``mxcall("size", 2, A)`` puts ``A`` under a temporary name, evaluates
``[jx_size_arg_out_1, jx_size_arg_out_2] = size(jx_size_arg_in_1);``,
reads both outputs back and clears every temporary it created.
"""

import hashlib
from typing import Any, List, Optional, Sequence

from matbridge.config import DOTTED_IDENTIFIER, IDENTIFIER, MAX_IDENTIFIER_LENGTH, TEMP_NAME_PREFIX
from matbridge.errors import InvalidName, InvalidSession
from matbridge.registry import resolve_session
from matbridge.session import EngineSession
from matbridge.utils import log_error, safe_name


class TempName(str):
    """Engine identifier reserved for one argument of one call."""

    def __new__(cls, value: str) -> "TempName":
        if not IDENTIFIER.match(value):
            # leading underscores are rejected by the engine
            raise InvalidName(f"not a valid engine identifier: {value!r}")
        if len(value) > MAX_IDENTIFIER_LENGTH:
            raise InvalidName(
                f"identifier {value!r} exceeds {MAX_IDENTIFIER_LENGTH} characters"
            )
        return super().__new__(cls, value)

    @classmethod
    def for_argument(cls, mfun: str, direction: str, index: int) -> "TempName":
        if direction not in ("in", "out"):
            raise ValueError(f"direction must be 'in' or 'out', got {direction!r}")
        if index < 1:
            raise ValueError(f"argument index is 1-based, got {index}")
        suffix = f"_arg_{direction}_{index}"
        stem = safe_name(mfun)
        room = MAX_IDENTIFIER_LENGTH - len(TEMP_NAME_PREFIX) - 1 - len(suffix)
        if len(stem) > room:
            # keep long function names unique within the identifier limit
            digest = hashlib.sha1(mfun.encode("utf-8")).hexdigest()[:8]
            stem = f"{stem[:room - 9]}_{digest}"
        return cls(f"{TEMP_NAME_PREFIX}_{stem}{suffix}")


def temp_names(mfun: str, direction: str, count: int) -> List[TempName]:
    return [TempName.for_argument(mfun, direction, i) for i in range(1, count + 1)]


def build_call_statement(mfun: str, out_names: Sequence[str], in_names: Sequence[str]) -> str:
    parts = []
    if len(out_names) == 1:
        parts.append(f"{out_names[0]} = ")
    elif len(out_names) > 1:
        parts.append(f"[{', '.join(out_names)}] = ")
    parts.append(f"{mfun}({', '.join(in_names)});")
    return "".join(parts)


def _clear(session: EngineSession, names: Sequence[str]) -> None:
    for name in names:
        session.eval_string(f"clear {name};")


def _clear_after_failure(session: EngineSession, names: Sequence[str]) -> None:
    if session.closed:
        return
    for name in names:
        try:
            session.eval_string(f"clear {name};")
        except Exception as exc:
            log_error(f"session {session.id}: cleanup of {name} failed: {exc}")


def mxcall(mfun: str, nout: int, *args: Any, session: Optional[EngineSession] = None) -> Any:
    """Call engine function ``mfun`` with ``args`` and ``nout`` results.

    Returns ``None`` for ``nout == 0``, the value for ``nout == 1`` and a
    tuple of ``nout`` values otherwise. Temporaries are named
    ``jx_<mfun>_arg_<in|out>_<i>``; a function name too long for the
    engine's 63-character identifier limit is truncated and suffixed with
    a hash of the full name. Uses the default session when
    ``session`` is not given. If any step fails, the temporaries written
    so far are cleared best-effort before the error propagates.
    """
    mfun = str(mfun)
    if not DOTTED_IDENTIFIER.match(mfun):
        raise InvalidName(f"not a valid engine function name: {mfun!r}")
    if nout < 0:
        raise InvalidName(f"nout must be non-negative, got {nout}")

    in_names = temp_names(mfun, "in", len(args))
    out_names = temp_names(mfun, "out", nout)
    statement = build_call_statement(mfun, out_names, in_names)

    session = resolve_session(session)
    if session.closed:
        raise InvalidSession(f"engine session {session.id} is closed")

    with session.lock:
        written: List[str] = []
        try:
            for name, value in zip(in_names, args):
                session.put_variable(name, value)
                written.append(name)

            written.extend(out_names)
            session.eval_string(statement)

            if nout == 0:
                result = None
            elif nout == 1:
                result = session.get_variable(out_names[0])
            else:
                result = tuple(session.get_variable(name) for name in out_names)
        except Exception:
            _clear_after_failure(session, written)
            raise

        _clear(session, in_names)
        _clear(session, out_names)
        session._log_session("IN", {"event": "mxcall", "function": mfun, "nin": len(args), "nout": nout})
    return result
