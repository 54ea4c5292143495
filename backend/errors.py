"""
Error taxonomy for the proxy.

Every error carries the HTTP status it maps to. Messages on validation
errors are safe to show to the client; upstream errors carry a generic
message and the detail is logged server-side only.
"""


class ProxyError(Exception):
    """Base class for errors rendered as {"error": message}."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidRequest(ProxyError):
    status_code = 400
    default_message = "Invalid request"


class UrlValidationError(ProxyError):
    """Raised by the DNS URL validator."""

    status_code = 400
    default_message = "Invalid URL format"


class InvalidUrl(UrlValidationError):
    default_message = "Invalid URL format"


class UnsupportedScheme(UrlValidationError):
    default_message = "Only HTTP/HTTPS protocols allowed"


class PrivateAddress(UrlValidationError):
    default_message = "Private/internal addresses not allowed"


class InvalidCredentials(ProxyError):
    status_code = 401
    default_message = "Invalid credentials"


class Unauthorized(ProxyError):
    status_code = 401
    default_message = "Authentication required"


class Forbidden(ProxyError):
    status_code = 403
    default_message = "Invalid or expired token"


class RateLimited(ProxyError):
    status_code = 429
    default_message = "Too many requests, please try again later"


class UpstreamUnavailable(ProxyError):
    status_code = 500
    default_message = "Xtream API unreachable"


class ConfigurationError(RuntimeError):
    """Raised at startup when required settings are missing or invalid."""
