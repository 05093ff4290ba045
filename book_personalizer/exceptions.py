"""Exception hierarchy for the book personalization pipeline.

Usage:
    from book_personalizer.exceptions import GenerationAPIError

    raise GenerationAPIError("Service Unavailable", status_code=503)
"""
from typing import Optional


class PersonalizationError(Exception):
    """Base exception for all book personalization errors."""
    pass


class GenerationAPIError(PersonalizationError):
    """Raised when a call to the remote generation API fails.

    Examples:
        - HTTP 4xx/5xx from Gemini
        - Connection reset or timeout
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class EmptyResponseError(GenerationAPIError):
    """Raised when the API answered but returned no image (or text) data."""
    pass


class ContractViolationError(PersonalizationError):
    """Raised when a caller hands the pipeline structurally invalid input.

    Examples:
        - Page mapping without a page image
        - Page mapping without a character descriptor
        - Empty page list
    """
    pass


class ConfigurationError(PersonalizationError):
    """Raised when configuration is invalid or missing.

    Examples:
        - Missing GEMINI_API_KEY
        - Unreadable config file
    """
    pass


class RunCancelledError(PersonalizationError):
    """Raised at a suspension point once the run's cancellation token fires."""
    pass
