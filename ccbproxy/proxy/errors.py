from __future__ import annotations

from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base error carrying the HTTP status and Claude-style error type."""

    status_code: int = 500
    error_type: str = "api_error"

    def __init__(self, message: str, *, status_code: Optional[int] = None, error_type: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_type is not None:
            self.error_type = error_type

    def to_envelope(self) -> Dict[str, Any]:
        return error_envelope(self.error_type, self.message)


def error_envelope(error_type: str, message: str) -> Dict[str, Any]:
    return {"type": "error", "error": {"type": error_type, "message": message}}


class ConfigError(GatewayError):
    error_type = "configuration_error"


class UnknownTransformerError(ConfigError):
    def __init__(self, transformer_id: str, provider_name: Optional[str] = None) -> None:
        if provider_name:
            message = f"Provider '{provider_name}' uses unknown transformer '{transformer_id}'"
        else:
            message = f"Unknown transformer '{transformer_id}'"
        super().__init__(message)
        self.transformer_id = transformer_id
        self.provider_name = provider_name


class InvalidRequestError(GatewayError):
    status_code = 400
    error_type = "invalid_request_error"


class AuthenticationError(GatewayError):
    status_code = 401
    error_type = "authentication_error"


class NotFoundError(GatewayError):
    status_code = 404
    error_type = "not_found_error"


class ProviderNotFoundError(GatewayError):
    error_type = "provider_error"

    def __init__(self, provider_id: str) -> None:
        if provider_id:
            message = (
                f"Current API provider '{provider_id}' does not exist; "
                "select a configured provider in the managed-mode settings"
            )
        else:
            message = "No API provider is configured; add a provider in the managed-mode settings"
        super().__init__(message)
        self.provider_id = provider_id


class ProviderDisabledError(GatewayError):
    error_type = "provider_error"

    def __init__(self, provider_name: str) -> None:
        super().__init__(
            f"Current API provider '{provider_name}' is disabled; "
            "enable it or switch to another provider"
        )
        self.provider_name = provider_name


class UpstreamNetworkError(GatewayError):
    pass


class UpstreamTimeoutError(UpstreamNetworkError):
    status_code = 504
    error_type = "timeout_error"


class UpstreamHTTPError(GatewayError):
    """Non-2xx upstream reply; status and body are handed back to the client."""

    def __init__(self, status_code: int, body: bytes, content_type: Optional[str] = None) -> None:
        super().__init__(f"Upstream returned HTTP {status_code}", status_code=status_code)
        self.body = body
        self.content_type = content_type


class StreamFramingError(GatewayError):
    pass


class GatewayStartError(GatewayError):
    pass


class PortInUseError(GatewayStartError):
    def __init__(self, port: int) -> None:
        super().__init__(
            f"Port {port} is already in use; stop the process holding it "
            "or choose another port in the managed-mode settings"
        )
        self.port = port


__all__ = [
    "AuthenticationError",
    "ConfigError",
    "GatewayError",
    "GatewayStartError",
    "InvalidRequestError",
    "NotFoundError",
    "PortInUseError",
    "ProviderDisabledError",
    "ProviderNotFoundError",
    "StreamFramingError",
    "UnknownTransformerError",
    "UpstreamHTTPError",
    "UpstreamNetworkError",
    "UpstreamTimeoutError",
    "error_envelope",
]
