"""Upstream error taxonomy."""


class UpstreamError(Exception):
    """Non-2xx response (or unusable body) from the telemetry API."""
    def __init__(self, status: int | None, body: str = "", message: str | None = None):
        self.status = status
        self.body = body
        super().__init__(message or f"Upstream HTTP {status}: {body[:200]}")


class UpstreamTimeout(UpstreamError, TimeoutError):
    """Call exceeded the per-request deadline and was aborted."""
    def __init__(self, path: str, timeout: float):
        super().__init__(None, "", f"Upstream call {path} timed out after {timeout:.1f}s")


class AuthError(UpstreamError):
    """Authentication rejected (after the single re-login retry in auto mode)."""
    pass


class ConfigError(Exception):
    """Unrecoverable configuration problem - startup must abort."""
    pass
