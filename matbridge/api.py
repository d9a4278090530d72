"""Module-level operations that fall back to the default session."""

from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

from matbridge.mxarray import MxArray
from matbridge.registry import resolve_session
from matbridge.session import EngineSession
from matbridge.session import get_variables as _get_variables
from matbridge.session import put_variables as _put_variables


def eval_string(statement: str, session: Optional[EngineSession] = None) -> str:
    return resolve_session(session).eval_string(statement)


def put_variable(name: str, value: Any, session: Optional[EngineSession] = None) -> None:
    resolve_session(session).put_variable(name, value)


def get_mvariable(name: str, session: Optional[EngineSession] = None) -> MxArray:
    return resolve_session(session).get_mvariable(name)


def get_variable(name: str, dtype: Any = None, session: Optional[EngineSession] = None) -> Any:
    return resolve_session(session).get_variable(name, dtype)


def put_variables(
    pairs: Union[Mapping[str, Any], Iterable[Tuple[str, Any]]],
    session: Optional[EngineSession] = None,
) -> None:
    _put_variables(resolve_session(session), pairs)


def get_variables(names: Iterable[str], session: Optional[EngineSession] = None) -> Dict[str, Any]:
    return _get_variables(resolve_session(session), names)
