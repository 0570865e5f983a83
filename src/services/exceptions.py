"""
Translation pipeline exceptions.

Kept in their own module so providers, the queue and the API layer can share
them without importing each other.
"""

from typing import Optional


class TranslationServiceError(Exception):
    """Base error with optional machine-readable code and details."""

    code = "translation_error"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}


# ============== Input validation ==============


class InputValidationError(TranslationServiceError):
    """Rejected synchronously before any job is created."""

    code = "invalid_input"


# ============== Provider errors (retried per chunk) ==============


class ProviderError(TranslationServiceError):
    """Translation provider call failed."""

    code = "provider_error"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, code=code, details=details)
        self.status_code = status_code


class ProviderRateLimitError(ProviderError):
    code = "provider_rate_limited"


class ProviderTimeoutError(ProviderError):
    code = "provider_timeout"


class ProviderResponseError(ProviderError):
    """Provider answered but the payload could not be used."""

    code = "provider_bad_response"


class ProviderNotConfiguredError(ProviderError):
    code = "provider_not_configured"


# ============== Structural errors (fatal, never retried) ==============


class StructuralError(TranslationServiceError):
    """A property of the document itself prevents translation."""

    code = "structural_error"


class NoDelimiterAvailableError(StructuralError):
    code = "no_delimiter_available"


class NoTranslatableTextError(StructuralError):
    code = "no_translatable_text"


# ============== Storage / reconstruction ==============


class StorageError(TranslationServiceError):
    code = "storage_error"


class ReconstructionError(TranslationServiceError):
    """Translated chunks cannot be assembled into a faithful document."""

    code = "reconstruction_error"
