"""
Session lifecycle for proxied browsing.

The browser only ever talks to the proxy origin, so cookies and web storage
for every upstream site are mirrored here, keyed by an opaque session id.
Sessions expire after ``session_timeout`` seconds without access and the store
is capped at ``max_sessions``; both limits are enforced by the eviction sweep
that runs after every create and on a recurring timer.
"""

import asyncio
import contextlib
import logging
import secrets
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from rewrite_proxy.session.session import Cookie, ProxySession, SessionSettings
from rewrite_proxy.session.store import InMemorySessionStore, SessionStoreBase
from rewrite_proxy.utils import mask_session_id
from rewrite_proxy.utils.exception_logging import log_exception_with_details

logger = logging.getLogger("uvicorn.error")

UPDATABLE_FIELDS = ("custom_proxy", "user_agent", "headers", "settings")


class SessionManager:
    def __init__(
        self,
        store: Optional[SessionStoreBase] = None,
        max_sessions: int = 1000,
        session_timeout: float = 24 * 60 * 60,
        cleanup_interval: float = 60 * 60,
        session_dir: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store if store is not None else InMemorySessionStore()
        self.max_sessions = max_sessions
        self.session_timeout = session_timeout
        self.cleanup_interval = cleanup_interval
        # Reserved for on-disk persistence, not read or written yet
        self.session_dir = session_dir
        self.clock = clock
        self._lock = threading.RLock()
        self._cleanup_task: Optional[asyncio.Task] = None

    @staticmethod
    def generate_session_id() -> str:
        return secrets.token_hex(16)

    def create_session(
        self,
        custom_proxy: Optional[str] = None,
        user_agent: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        settings: Optional[Dict[str, Any]] = None,
    ) -> str:
        now = self.clock()
        with self._lock:
            session_id = self.generate_session_id()
            while session_id in self.store:
                session_id = self.generate_session_id()
            self.store.set(
                session_id,
                ProxySession(
                    id=session_id,
                    created_at=now,
                    last_accessed=now,
                    custom_proxy=custom_proxy,
                    user_agent=user_agent,
                    headers=dict(headers or {}),
                    settings=SessionSettings.from_dict(settings),
                ),
            )
            self.cleanup_old_sessions()
        logger.info(f"[Session] Created session {mask_session_id(session_id)}")
        return session_id

    def get_session(self, session_id: Optional[str]) -> Optional[ProxySession]:
        if not session_id:
            return None
        with self._lock:
            session = self.store.get(session_id)
            if session is not None:
                session.touch(self.clock())
            return session

    def update_session(self, session_id: str, updates: Dict[str, Any]) -> bool:
        with self._lock:
            session = self.get_session(session_id)
            if session is None:
                return False
            for key, value in (updates or {}).items():
                if key not in UPDATABLE_FIELDS:
                    logger.warning(
                        f"[Session] Ignoring unknown field '{key}' for session {mask_session_id(session_id)}"
                    )
                    continue
                if key == "settings":
                    session.settings.merge(value)
                elif key == "headers":
                    session.headers = dict(value or {})
                else:
                    setattr(session, key, value)
            return True

    def delete_session(self, session_id: str) -> bool:
        with self._lock:
            deleted = self.store.pop(session_id) is not None
        if deleted:
            logger.info(f"[Session] Deleted session {mask_session_id(session_id)}")
        return deleted

    # Cookies

    def set_cookie(
        self,
        session_id: str,
        name: str,
        value: str,
        domain: str = "",
        path: str = "/",
        expires: Optional[float] = None,
        http_only: bool = False,
        secure: bool = False,
        same_site: str = "Lax",
    ) -> bool:
        with self._lock:
            session = self.get_session(session_id)
            if session is None:
                return False
            session.cookies[name] = Cookie(
                value=value,
                domain=domain or "",
                path=path or "/",
                expires=expires,
                http_only=http_only,
                secure=secure,
                same_site=same_site or "Lax",
            )
            return True

    def get_cookies(self, session_id: str, domain: str = "", path: str = "/") -> List[str]:
        with self._lock:
            session = self.get_session(session_id)
            if session is None:
                return []
            now = self.clock()
            return [
                f"{name}={cookie.value}"
                for name, cookie in session.cookies.items()
                if cookie.matches(domain, path) and not cookie.is_expired(now)
            ]

    def cookie_header(self, session_id: str, domain: str = "", path: str = "/") -> str:
        """Value for an outbound ``Cookie`` header."""
        return "; ".join(self.get_cookies(session_id, domain, path))

    # Web storage mirrors

    def set_local_storage(self, session_id: str, key: str, value: str) -> bool:
        with self._lock:
            session = self.get_session(session_id)
            if session is None:
                return False
            session.local_storage[key] = value
            return True

    def get_local_storage(self, session_id: str, key: str) -> Optional[str]:
        with self._lock:
            session = self.get_session(session_id)
            return session.local_storage.get(key) if session else None

    def get_all_local_storage(self, session_id: str) -> Dict[str, str]:
        with self._lock:
            session = self.get_session(session_id)
            return dict(session.local_storage) if session else {}

    def set_session_storage(self, session_id: str, key: str, value: str) -> bool:
        with self._lock:
            session = self.get_session(session_id)
            if session is None:
                return False
            session.session_storage[key] = value
            return True

    def get_session_storage(self, session_id: str, key: str) -> Optional[str]:
        with self._lock:
            session = self.get_session(session_id)
            return session.session_storage.get(key) if session else None

    # Eviction

    def cleanup_old_sessions(self) -> int:
        """
        Drop sessions idle longer than ``session_timeout``, then the least
        recently accessed ones until the store is back at ``max_sessions``.

        Returns the number of sessions removed.
        """
        with self._lock:
            now = self.clock()
            removed = 0
            for session_id, session in self.store.items():
                if now - session.last_accessed > self.session_timeout:
                    self.store.pop(session_id)
                    removed += 1

            excess = len(self.store) - self.max_sessions
            if excess > 0:
                # sorted() is stable, so ties fall back to insertion order
                oldest = sorted(self.store.items(), key=lambda item: item[1].last_accessed)
                for session_id, _ in oldest[:excess]:
                    self.store.pop(session_id)
                    removed += 1

        if removed:
            logger.info(f"[Session] Evicted {removed} session(s), {len(self.store)} remaining")
        return removed

    def start_cleanup(self) -> asyncio.Task:
        """Run the sweep every ``cleanup_interval`` seconds on the running loop."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        return self._cleanup_task

    async def stop_cleanup(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                self.cleanup_old_sessions()
            except Exception as e:
                log_exception_with_details(logger, "[Session] Cleanup failed:", e)

    # Export / import / stats

    def export_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            session = self.get_session(session_id)
            return session.to_export() if session else None

    def import_session(self, exported: Dict[str, Any]) -> str:
        with self._lock:
            session_id = exported.get("id")
            if session_id and session_id in self.store:
                logger.warning(
                    f"[Session] Imported id {mask_session_id(session_id)} is already in use, "
                    "assigning a new one"
                )
                session_id = None
            while not session_id or session_id in self.store:
                session_id = self.generate_session_id()
            session = ProxySession.from_export(exported, session_id, self.clock())
            self.store.set(session_id, session)
        logger.info(f"[Session] Imported session {mask_session_id(session_id)}")
        return session_id

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "total_sessions": len(self.store),
                "max_sessions": self.max_sessions,
                "session_timeout": self.session_timeout,
                "sessions": [
                    {
                        "id": mask_session_id(session_id),
                        "created_at": session.created_at,
                        "last_accessed": session.last_accessed,
                        "cookie_count": len(session.cookies),
                        "local_storage_count": len(session.local_storage),
                        "session_storage_count": len(session.session_storage),
                    }
                    for session_id, session in self.store.items()
                ],
            }
