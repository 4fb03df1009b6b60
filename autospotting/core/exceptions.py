"""
Core exception classes for AutoSpotting.
"""


class AutoSpottingError(Exception):
    """Base exception for all AutoSpotting errors."""
    
    def __init__(self, message: str, details: str = None):
        super().__init__(message)
        self.message = message
        self.details = details


class AuthenticationError(AutoSpottingError):
    """Raised when AWS authentication fails."""
    pass


class ConfigurationError(AutoSpottingError):
    """Raised when configuration, override tags or a launch source are invalid.

    Skips the affected group for the current run.
    """
    pass


class ServiceError(AutoSpottingError):
    """Raised when an AWS call fails and retrying will not help."""
    
    def __init__(self, message: str, details: str = None, error_code: str = None):
        super().__init__(message, details=details)
        self.error_code = error_code


class TransientProviderError(ServiceError):
    """Raised on throttling or network failures that are safe to retry."""
    pass


class CapacityUnavailable(ServiceError):
    """Raised when no spot capacity is available at an acceptable price."""
    pass


class InvariantViolation(AutoSpottingError):
    """Raised when a replacement would break the group's capacity guarantees."""
    pass


class ReplacementTimeout(AutoSpottingError):
    """Raised when a polling wait or the run deadline runs out."""
    pass


class StateError(AutoSpottingError):
    """Raised when run report persistence fails."""
    pass
