from typing import Optional


def try_get_session_id(
    session_header: Optional[str],
    session_cookie: Optional[str],
    session_query: Optional[str] = None,
) -> Optional[str]:
    if session_header:
        return session_header
    if session_cookie:
        return session_cookie
    if session_query:
        return session_query
    return None
