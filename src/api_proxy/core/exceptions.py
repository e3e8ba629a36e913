"""
Proxy exceptions.

Every failure the forwarding pipeline can surface is mapped to one of these
types. Each carries a stable HTTP status code and error code so the hosting
application can render it without inspecting the message.
"""

from typing import Any, Dict, Optional


class ProxyError(Exception):
    """Base exception for all proxy errors."""

    status_code: int = 500
    default_error_code: str = "proxy_error"

    def __init__(self, message: str, error_code: Optional[str] = None,
                 status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_error_code
        if status_code is not None:
            self.status_code = status_code

    @property
    def is_client_error(self) -> bool:
        return self.status_code < 500

    def get_http_status_code(self) -> int:
        return self.status_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses and logging."""
        return {
            "error_type": self.__class__.__name__,
            "error": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
        }


class ConfigurationError(ProxyError):
    """Raised when the effective configuration for a request cannot be built."""

    status_code = 400
    default_error_code = "configuration_error"

    def __init__(self, message: str, config_field: Optional[str] = None,
                 provided_value: Optional[Any] = None):
        super().__init__(message)
        self.config_field = config_field
        self.provided_value = provided_value

    def to_dict(self) -> Dict[str, Any]:
        base_dict = super().to_dict()
        base_dict.update({
            "config_field": self.config_field,
            "provided_value": self.provided_value,
        })
        return base_dict


class TokenResolutionError(ProxyError):
    """Raised when a placeholder token cannot be resolved to a value."""

    status_code = 400
    default_error_code = "token_resolution_error"

    def __init__(self, message: str, token: Optional[str] = None):
        super().__init__(message)
        self.token = token


class PathParameterError(ProxyError):
    """Raised when a URL template cannot be satisfied by the available parameters."""

    status_code = 400
    default_error_code = "path_parameter_error"

    def __init__(self, message: str, parameter: Optional[str] = None):
        super().__init__(message)
        self.parameter = parameter


class RequestBodyError(ProxyError):
    """Raised when the inbound request body cannot be parsed."""

    status_code = 400
    default_error_code = "invalid_request_body"


class AuthenticationRequiredError(ProxyError):
    """Raised when an endpoint requires authentication and the request has none."""

    status_code = 401
    default_error_code = "authentication_required"


class UpstreamTimeoutError(ProxyError):
    """Raised when the upstream does not answer within the configured timeout."""

    status_code = 408
    default_error_code = "upstream_timeout"

    def __init__(self, message: str, url: Optional[str] = None,
                 timeout_ms: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.timeout_ms = timeout_ms

    def to_dict(self) -> Dict[str, Any]:
        base_dict = super().to_dict()
        base_dict["timeout_ms"] = self.timeout_ms
        return base_dict


class ClientDisconnectedError(ProxyError):
    """Raised when the inbound client goes away before the upstream answered."""

    status_code = 499
    default_error_code = "client_disconnected"


class UpstreamConnectionError(ProxyError):
    """Raised for transport level failures (refused, DNS, reset)."""

    status_code = 502
    default_error_code = "upstream_unavailable"

    def __init__(self, message: str, url: Optional[str] = None,
                 original_exception: Optional[Exception] = None):
        super().__init__(message)
        self.url = url
        self.original_exception = original_exception

    def to_dict(self) -> Dict[str, Any]:
        base_dict = super().to_dict()
        base_dict.update({
            "original_error": str(self.original_exception) if self.original_exception else None,
            "original_error_type": type(self.original_exception).__name__ if self.original_exception else None,
        })
        return base_dict


class UpstreamResponseError(ProxyError):
    """
    Upstream answered with an error status and the body was buffered.

    The status code mirrors the upstream one and the message is the raw
    upstream body, so the host can render it as-is.
    """

    default_error_code = "upstream_error"

    def __init__(self, status_code: int, body: str, url: Optional[str] = None):
        super().__init__(body, status_code=status_code)
        self.url = url


class CacheProviderError(ProxyError):
    """Raised when a cache provider call fails."""

    status_code = 500
    default_error_code = "cache_provider_error"

    def __init__(self, message: str, operation: Optional[str] = None,
                 key: Optional[str] = None,
                 original_exception: Optional[Exception] = None):
        super().__init__(message)
        self.operation = operation
        self.key = key
        self.original_exception = original_exception

    def to_dict(self) -> Dict[str, Any]:
        base_dict = super().to_dict()
        base_dict.update({
            "operation": self.operation,
            "original_error": str(self.original_exception) if self.original_exception else None,
        })
        return base_dict
