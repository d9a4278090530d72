import atexit
import threading
from typing import Any, Callable, Optional

from matbridge.config import config
from matbridge.errors import MEngineError
from matbridge.session import EngineSession
from matbridge.utils import log_error


class DefaultSessionRegistrar:
    """Process-wide slot holding at most one live default session.

    The session is created lazily on first use. ``restart`` replaces it and
    ``close`` empties the slot; explicitly opened sessions are unaffected.
    """

    def __init__(self, opener: Optional[Callable[..., EngineSession]] = None):
        self.opener = opener or EngineSession.open
        self.session: Optional[EngineSession] = None
        self.lock = threading.Lock()

    def _open(self, buffer_size: Optional[int]) -> EngineSession:
        if buffer_size is None:
            return self.opener()
        return self.opener(buffer_size=buffer_size)

    def get_or_create(self) -> EngineSession:
        with self.lock:
            if self.session is None or self.session.closed:
                self.session = self._open(None)
            return self.session

    def restart(self, buffer_size: Optional[int] = None) -> EngineSession:
        if buffer_size is None:
            buffer_size = config.BUFFER_SIZE
        with self.lock:
            previous, self.session = self.session, None
            if previous is not None and not previous.closed:
                try:
                    previous.close()
                except MEngineError as exc:
                    # the handle is detached even when the engine reports failure
                    log_error(f"restart: closing session {previous.id} failed: {exc}")
            self.session = self._open(buffer_size)
            return self.session

    def close(self) -> None:
        with self.lock:
            previous, self.session = self.session, None
            if previous is not None:
                previous.close()

    def resolve(self, session: Optional[EngineSession]) -> EngineSession:
        return session if session is not None else self.get_or_create()

    @property
    def active(self) -> bool:
        with self.lock:
            return self.session is not None and not self.session.closed


default_registrar = DefaultSessionRegistrar()


def get_default_msession() -> EngineSession:
    return default_registrar.get_or_create()


def restart_default_msession(buffer_size: Optional[int] = None) -> EngineSession:
    return default_registrar.restart(buffer_size)


def close_default_msession() -> None:
    default_registrar.close()


def set_default_opener(opener: Optional[Callable[..., EngineSession]]) -> None:
    """Swap the factory used for the default session (e.g. to pass a library)."""
    with default_registrar.lock:
        default_registrar.opener = opener or EngineSession.open


def _close_at_exit() -> None:
    try:
        default_registrar.close()
    except Exception as exc:
        log_error(f"closing default session at exit failed: {exc}")


def resolve_session(session: Any = None) -> EngineSession:
    return default_registrar.resolve(session)


atexit.register(_close_at_exit)
