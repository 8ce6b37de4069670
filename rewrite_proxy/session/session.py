from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, Optional


@dataclass
class Cookie:
    value: str
    domain: str = ""
    path: str = "/"
    # Epoch seconds; None for a session cookie
    expires: Optional[float] = None
    http_only: bool = False
    secure: bool = False
    same_site: str = "Lax"

    def matches(self, domain: str, path: str) -> bool:
        """Domain-suffix and path-prefix match against a request's domain and path."""
        if self.domain and not domain.endswith(self.domain):
            return False
        if self.path and not path.startswith(self.path):
            return False
        return True

    def is_expired(self, now: float) -> bool:
        return self.expires is not None and self.expires <= now


@dataclass
class SessionSettings:
    enable_javascript: bool = True
    enable_cookies: bool = True
    enable_local_storage: bool = True
    enable_websockets: bool = True

    @classmethod
    def from_dict(cls, values: Optional[Dict[str, Any]]) -> "SessionSettings":
        settings = cls()
        settings.merge(values)
        return settings

    def merge(self, values: Optional[Dict[str, Any]]) -> None:
        known = {f.name for f in fields(self)}
        for key, value in (values or {}).items():
            if key in known:
                setattr(self, key, bool(value))


@dataclass
class ProxySession:
    """Server-held stand-in for one client's cookie jar and web storage."""

    id: str
    created_at: float
    last_accessed: float
    cookies: Dict[str, Cookie] = field(default_factory=dict)
    local_storage: Dict[str, str] = field(default_factory=dict)
    session_storage: Dict[str, str] = field(default_factory=dict)
    custom_proxy: Optional[str] = None
    user_agent: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    settings: SessionSettings = field(default_factory=SessionSettings)

    def touch(self, now: float) -> None:
        self.last_accessed = now

    def to_export(self) -> Dict[str, Any]:
        """Serializable form; maps become ordered ``[key, value]`` pairs."""
        return {
            "id": self.id,
            "created_at": self.created_at,
            "last_accessed": self.last_accessed,
            "data": {
                "cookies": [[name, asdict(cookie)] for name, cookie in self.cookies.items()],
                "local_storage": [[k, v] for k, v in self.local_storage.items()],
                "session_storage": [[k, v] for k, v in self.session_storage.items()],
                "custom_proxy": self.custom_proxy,
                "user_agent": self.user_agent,
                "headers": dict(self.headers),
                "settings": asdict(self.settings),
            },
        }

    @classmethod
    def from_export(cls, exported: Dict[str, Any], session_id: str, now: float) -> "ProxySession":
        data = exported.get("data") or {}
        return cls(
            id=session_id,
            created_at=exported.get("created_at") or now,
            last_accessed=exported.get("last_accessed") or now,
            cookies={name: Cookie(**cookie) for name, cookie in data.get("cookies") or []},
            local_storage={k: v for k, v in data.get("local_storage") or []},
            session_storage={k: v for k, v in data.get("session_storage") or []},
            custom_proxy=data.get("custom_proxy"),
            user_agent=data.get("user_agent"),
            headers=dict(data.get("headers") or {}),
            settings=SessionSettings.from_dict(data.get("settings")),
        )
