"""
Exception logging helpers that never raise themselves.

Rewriting and middleware failures are logged from code paths that must keep
serving the exchange, so a broken exception object (or a broken logger) must
not turn a recoverable failure into a crash.
"""

import logging


def _safe_str(obj) -> str:
    """
    Safely convert an object to string, handling cases where __str__ or __repr__ might fail.

    Args:
        obj: The object to convert to string

    Returns:
        A string representation of the object, falling back to safe alternatives
    """
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            try:
                return f"<{type(obj).__name__} object (string conversion failed)>"
            except Exception:
                return "<object (all string conversions failed)>"


def _safe_get_exceptions(exception_group) -> list:
    try:
        return list(exception_group.exceptions)
    except Exception:
        return []


def status_code_for(exception: Exception, default: int = 500) -> int:
    """
    Resolve the HTTP status an exchange should end with for a failure.

    Looks for an integer ``status_code`` on the exception itself, then on any
    sub-exception of an exception group.
    """
    try:
        status_code = getattr(exception, "status_code", None)
        if isinstance(status_code, int) and 400 <= status_code <= 599:
            return status_code
        for sub_exc in _safe_get_exceptions(exception):
            nested = status_code_for(sub_exc, default=0)
            if nested:
                return nested
    except Exception:
        pass
    return default


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: Exception,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception with detailed information, including sub-exceptions of
    exception groups. Never throws, even for broken exception objects or
    logger failures.

    Args:
        logger: The logger instance to use
        prefix: Prefix for the log message (e.g., "[Rewrite]", "[Middleware]")
        exception: The exception to log
        level: The logging level to use (default: ERROR)
    """
    try:
        safe_exception_str = "None" if exception is None else _safe_str(exception)
        safe_prefix = _safe_str(prefix) if prefix is not None else ""

        sub_exceptions = []
        if exception is not None and hasattr(exception, "exceptions"):
            sub_exceptions = _safe_get_exceptions(exception)

        if sub_exceptions:
            try:
                logger.log(
                    level,
                    f"{safe_prefix} Exception with {len(sub_exceptions)} sub-exceptions: {safe_exception_str}",
                )
            except Exception:
                pass
            for i, sub_exc in enumerate(sub_exceptions):
                try:
                    logger.log(
                        level,
                        f"{safe_prefix} Sub-exception {i+1}: {type(sub_exc).__name__}: {_safe_str(sub_exc)}",
                        exc_info=sub_exc,
                    )
                except Exception:
                    continue
            return

        try:
            logger.log(
                level,
                f"{safe_prefix} Exception: {safe_exception_str}",
                exc_info=exception if exception is not None else False,
            )
        except Exception:
            # exc_info can fail for exotic objects; retry without it
            try:
                logger.log(level, f"{safe_prefix} Exception: {safe_exception_str}")
            except Exception:
                pass
    except Exception:
        try:
            if logger is not None:
                logger.log(logging.ERROR, "Exception logging failed")
        except Exception:
            pass


def format_exception_message(exception: Exception) -> str:
    """
    Format an exception message for user-facing output, including
    sub-exceptions of exception groups. Never throws.
    """
    try:
        if exception is None:
            return "None"
        sub_exceptions = []
        if hasattr(exception, "exceptions"):
            sub_exceptions = _safe_get_exceptions(exception)
        main_str = _safe_str(getattr(exception, "message", None) or exception)
        if not sub_exceptions:
            return main_str
        parts = [f"{type(sub).__name__}: {_safe_str(sub)}" for sub in sub_exceptions]
        return f"{main_str} (Sub-exceptions: {'; '.join(parts)})"
    except Exception:
        try:
            return f"<{type(exception).__name__} (formatting failed)>"
        except Exception:
            return "<exception (all formatting failed)>"
