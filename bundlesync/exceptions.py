"""
Defines custom exceptions for the application to allow for more specific error handling.
"""


class BundleSyncError(Exception):
    """Base exception for all application-specific errors."""


class ContractViolationError(BundleSyncError):
    """
    Raised when a caller breaks a precondition of the engine, such as resolving
    a bundle the manifest could not supply. Never retried.
    """


class ManifestError(BundleSyncError):
    """Raised when a manifest file cannot be parsed or is internally inconsistent."""


class FileIntegrityError(BundleSyncError):
    """Raised when a downloaded file fails a post-download integrity check."""


class RemoteServiceError(BundleSyncError):
    """Raised when the remote server could not answer a query."""


class ConfigurationError(BundleSyncError):
    """Raised for issues related to configuration loading or validation."""
