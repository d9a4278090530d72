from typing import Optional


class MEngineError(Exception):
    """Base class for failures reported by the engine bridge."""


class EngineUnavailable(MEngineError):
    """The native engine library could not be located or loaded."""


class EngineOpenFailed(MEngineError):
    """The engine process could not be started."""


class InvalidSession(MEngineError):
    """An operation was attempted on a closed session."""


class EvalError(MEngineError):
    """The engine reported a session-level failure while evaluating a statement."""


class InvalidName(MEngineError, ValueError):
    """A name cannot be used as an engine identifier."""


class _VariableError(MEngineError):
    def __init__(self, message: str, name: Optional[str] = None):
        super().__init__(message)
        self.name = name


class PutVariableError(_VariableError):
    """The engine rejected a variable write."""


class GetVariableError(_VariableError):
    """The requested variable is not defined in the remote workspace."""
