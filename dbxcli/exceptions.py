"""
Custom exceptions for dbxcli.

This module defines the exception classes raised by the Dropbox clients,
the transfer and listing drivers, and the command-line interface.
"""


class DropboxError(Exception):
    """Base exception for all dbxcli errors."""

    def __init__(self, message: str, error_code: str = None, details: dict = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def __str__(self):
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message


class ApiError(DropboxError):
    """
    Raised when an API route returns an endpoint-specific error (HTTP 409).

    The ``error_summary`` is the slash-separated tag path reported by the
    server, e.g. ``path/not_folder/..``; the classification properties
    below match on its prefix.
    """

    def __init__(
        self,
        route: str,
        error_summary: str = "",
        error: dict = None,
        user_message: str = None,
        **kwargs
    ):
        message = f"{route}: {error_summary or 'unknown error'}"
        super().__init__(message, error_code="API_ERROR", **kwargs)
        self.route = route
        self.error_summary = error_summary or ""
        self.error = error or {}
        self.user_message = user_message

    def _matches(self, prefix: str) -> bool:
        return self.error_summary.startswith(prefix)

    @property
    def is_not_folder(self) -> bool:
        """The path exists but is not a folder."""
        return self._matches("path/not_folder")

    @property
    def is_not_file(self) -> bool:
        """The path exists but is not a file."""
        return self._matches("path/not_file")

    @property
    def is_not_found(self) -> bool:
        """Nothing exists at the path."""
        return self._matches("path/not_found")


class AuthenticationError(DropboxError):
    """Raised when the access token is missing, invalid or expired."""

    def __init__(self, message: str = "Authentication failed", **kwargs):
        super().__init__(message, error_code="AUTH_ERROR", **kwargs)


class UploadError(DropboxError):
    """Raised when a file upload cannot proceed."""

    def __init__(self, message: str = "File upload failed", path: str = None, **kwargs):
        super().__init__(message, error_code="UPLOAD_ERROR", **kwargs)
        self.path = path


class DownloadError(DropboxError):
    """Raised when a file download fails."""

    def __init__(self, message: str = "File download failed", path: str = None, **kwargs):
        super().__init__(message, error_code="DOWNLOAD_ERROR", **kwargs)
        self.path = path


class RateLimitError(DropboxError):
    """Raised when API rate limit is exceeded."""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: int = None, **kwargs):
        super().__init__(message, error_code="RATE_LIMIT", **kwargs)
        self.retry_after = retry_after


class ValidationError(DropboxError):
    """Raised when command input validation fails."""

    def __init__(self, message: str = "Validation failed", field: str = None, **kwargs):
        super().__init__(message, error_code="VALIDATION_ERROR", **kwargs)
        self.field = field


class NetworkError(DropboxError):
    """Raised when network operations fail."""

    def __init__(self, message: str = "Network operation failed", **kwargs):
        super().__init__(message, error_code="NETWORK_ERROR", **kwargs)


class TimeoutError(DropboxError):
    """Raised when operations timeout."""

    def __init__(self, message: str = "Operation timed out", timeout_seconds: int = None, **kwargs):
        super().__init__(message, error_code="TIMEOUT_ERROR", **kwargs)
        self.timeout_seconds = timeout_seconds


class IntegrityError(DropboxError):
    """Raised when a downloaded file does not match its content hash."""

    def __init__(self, message: str = "File integrity check failed", expected_hash: str = None, actual_hash: str = None, **kwargs):
        super().__init__(message, error_code="INTEGRITY_ERROR", **kwargs)
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash


class ConfigurationError(DropboxError):
    """Raised when client or CLI configuration is invalid."""

    def __init__(self, message: str = "Invalid configuration", config_key: str = None, **kwargs):
        super().__init__(message, error_code="CONFIG_ERROR", **kwargs)
        self.config_key = config_key


class ServerError(DropboxError):
    """Raised when server returns an error."""

    def __init__(self, message: str = "Server error", status_code: int = None, **kwargs):
        super().__init__(message, error_code="SERVER_ERROR", **kwargs)
        self.status_code = status_code


class ClientError(DropboxError):
    """Raised when the server rejects a malformed request (HTTP 400)."""

    def __init__(self, message: str = "Invalid client request", status_code: int = None, **kwargs):
        super().__init__(message, error_code="CLIENT_ERROR", **kwargs)
        self.status_code = status_code
