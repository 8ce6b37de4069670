from pydantic import BaseModel
from typing import Any, Dict, List, Optional


class SessionSettingsModel(BaseModel):
    enable_javascript: bool = True
    enable_cookies: bool = True
    enable_local_storage: bool = True
    enable_websockets: bool = True


class SessionCreateRequest(BaseModel):
    custom_proxy: Optional[str] = None
    user_agent: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    settings: Optional[Dict[str, bool]] = None


class SessionUpdateRequest(BaseModel):
    custom_proxy: Optional[str] = None
    user_agent: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    settings: Optional[Dict[str, bool]] = None


class SessionExportData(BaseModel):
    cookies: List[List[Any]] = []
    local_storage: List[List[str]] = []
    session_storage: List[List[str]] = []
    custom_proxy: Optional[str] = None
    user_agent: Optional[str] = None
    headers: Dict[str, str] = {}
    settings: SessionSettingsModel = SessionSettingsModel()


class SessionExport(BaseModel):
    id: Optional[str] = None
    created_at: Optional[float] = None
    last_accessed: Optional[float] = None
    data: SessionExportData = SessionExportData()


class SessionCreatedResponse(BaseModel):
    session_id: str


class SessionView(BaseModel):
    id: str
    created_at: float
    last_accessed: float
    custom_proxy: Optional[str] = None
    user_agent: Optional[str] = None
    headers: Dict[str, str] = {}
    settings: SessionSettingsModel
    cookie_count: int
    local_storage_count: int
    session_storage_count: int


class SessionStatsEntry(BaseModel):
    id: str
    created_at: float
    last_accessed: float
    cookie_count: int
    local_storage_count: int
    session_storage_count: int


class SessionStats(BaseModel):
    total_sessions: int
    max_sessions: int
    session_timeout: float
    sessions: List[SessionStatsEntry]
