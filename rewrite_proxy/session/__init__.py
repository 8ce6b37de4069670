from .session import Cookie, ProxySession, SessionSettings
from .store import SessionStoreBase, InMemorySessionStore, session_store
from .session_manager import SessionManager
from .session_id import try_get_session_id

__all__ = [
    "Cookie",
    "ProxySession",
    "SessionSettings",
    "SessionStoreBase",
    "InMemorySessionStore",
    "session_store",
    "SessionManager",
    "try_get_session_id",
]
