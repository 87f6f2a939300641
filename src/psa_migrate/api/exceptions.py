"""PSA REST API exceptions."""

from typing import Any, List, Optional


class PSAAPIError(Exception):
    """Base exception for PSA API errors.

    The PSA reports business-rule failures as a list of human-readable
    strings under ``errors``; those strings are folded into the exception
    message so callers can classify failures by their text.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_data: Optional[Any] = None,
    ):
        """Initialize PSA API error.

        Args:
            message: Error message
            status_code: HTTP status code
            response_data: Decoded response body, if any
        """
        super().__init__(message)
        self.status_code = status_code
        self.response_data = response_data

    @property
    def errors(self) -> List[str]:
        """Error strings reported by the API body."""
        if isinstance(self.response_data, dict):
            raw = self.response_data.get('errors') or []
            return [str(item) for item in raw]
        return []


class PSAAuthenticationError(PSAAPIError):
    """Credentials or integration code were rejected."""

    pass


class PSAPermissionError(PSAAPIError):
    """The API user lacks the security level for the request."""

    pass


class PSARateLimitError(PSAAPIError):
    """Rate limit exceeded error."""

    def __init__(self, message: str, retry_after: int = 60, **kwargs):
        """Initialize rate limit error.

        Args:
            message: Error message
            retry_after: Seconds to wait before retry
            **kwargs: Additional arguments for base class
        """
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class PSANotFoundError(PSAAPIError):
    """Entity or endpoint not found."""

    pass


class PSAValidationError(PSAAPIError):
    """Request rejected before it reached the API."""

    pass
