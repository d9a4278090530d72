from matbridge.api import (
    eval_string, get_mvariable, get_variable, get_variables, put_variable, put_variables
)
from matbridge.errors import (
    EngineOpenFailed, EngineUnavailable, EvalError, GetVariableError, InvalidName,
    InvalidSession, MEngineError, PutVariableError
)
from matbridge.mxarray import MxArray
from matbridge.mxcall import TempName, build_call_statement, mxcall
from matbridge.registry import (
    DefaultSessionRegistrar, close_default_msession, get_default_msession,
    restart_default_msession, set_default_opener
)
from matbridge.session import EngineSession

__version__ = "0.3.0"
