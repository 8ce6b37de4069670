from typing import Optional


def mask_session_id(session_id: Optional[str]) -> str:
    """Short, log-safe form of a session id."""
    if not session_id:
        return "<none>"
    return f"{session_id[:4]}****"
