from abc import ABC, abstractmethod
import os
from typing import Iterator, Tuple

from rewrite_proxy.session.session import ProxySession


class SessionStoreBase(ABC):
    """Keyed storage for sessions; eviction policy lives in the SessionManager."""

    @abstractmethod
    def get(self, session_id: str) -> ProxySession | None:
        pass

    @abstractmethod
    def set(self, session_id: str, session: ProxySession):
        pass

    @abstractmethod
    def pop(self, session_id: str, default=None) -> ProxySession | None:
        pass

    @abstractmethod
    def items(self) -> Iterator[Tuple[str, ProxySession]]:
        """Sessions in insertion order."""
        pass

    @abstractmethod
    def __len__(self) -> int:
        pass

    def __contains__(self, session_id: str) -> bool:
        return self.get(session_id) is not None


def session_store(
    name: str = os.getenv("SESSION_STORE", "InMemorySessionStore")
) -> SessionStoreBase:
    if name == "InMemorySessionStore":
        return InMemorySessionStore()
    cls = globals().get(name)
    if cls and isinstance(cls, type) and issubclass(cls, SessionStoreBase):
        return cls()
    else:
        raise ValueError(f"Unknown session store type: {name}")


class InMemorySessionStore(SessionStoreBase):
    def __init__(self):
        self._sessions: dict[str, ProxySession] = {}

    def get(self, session_id: str) -> ProxySession | None:
        return self._sessions.get(session_id)

    def set(self, session_id: str, session: ProxySession):
        self._sessions[session_id] = session

    def pop(self, session_id: str, default=None) -> ProxySession | None:
        return self._sessions.pop(session_id, default)

    def items(self) -> Iterator[Tuple[str, ProxySession]]:
        # Snapshot so callers may pop while iterating
        return iter(list(self._sessions.items()))

    def __len__(self) -> int:
        return len(self._sessions)
