"""
Core utilities and configuration for the integration framework.

This package provides foundational components used by every connector:

Modules:
    config: Application configuration and environment variable management
    exceptions: Error taxonomy (codes + retryable flag) for all components
    logging: Logging configuration and utilities

Usage:
    from core.config import settings
    from core.exceptions import AuthError, RateLimitError
    from core.logging import setup_logging
"""

from core.config import settings
from core.logging import setup_logging
from core.exceptions import (
    IntegrationError,
    ConfigurationError,
    TransportError,
    NetworkError,
    HTTPError,
    RateLimitError,
    AuthError,
    TransformationError,
    ValidationError,
    UploadError,
    OperationCancelled,
)

__all__ = [
    "settings",
    "setup_logging",
    # Exceptions
    "IntegrationError",
    "ConfigurationError",
    "TransportError",
    "NetworkError",
    "HTTPError",
    "RateLimitError",
    "AuthError",
    "TransformationError",
    "ValidationError",
    "UploadError",
    "OperationCancelled",
]
