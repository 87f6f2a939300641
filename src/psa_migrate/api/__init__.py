"""PSA REST API transport."""

from .client import PSAClient, PSAClientFactory
from .exceptions import (
    PSAAPIError,
    PSAAuthenticationError,
    PSANotFoundError,
    PSAPermissionError,
    PSARateLimitError,
    PSAValidationError,
)
from .metadata import EntityMetadata

__all__ = [
    'PSAClient',
    'PSAClientFactory',
    'PSAAPIError',
    'PSAAuthenticationError',
    'PSANotFoundError',
    'PSAPermissionError',
    'PSARateLimitError',
    'PSAValidationError',
    'EntityMetadata',
]
