from typing import Optional


class ProxyError(Exception):
    """Base failure carrying the HTTP status the exchange should end with."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class RateLimitExceeded(ProxyError):
    status_code = 429

    def __init__(self, client_address: str, retry_after: Optional[float] = None):
        super().__init__("Rate limit exceeded")
        self.client_address = client_address
        self.retry_after = retry_after


class UpstreamError(ProxyError):
    status_code = 502


class InvalidMiddlewarePhase(ValueError):
    def __init__(self, phase: str):
        super().__init__(f"Invalid middleware type: {phase}")
        self.phase = phase
