"""Service error hierarchy for generation orchestration and provider calls.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Errors that may clear on their own (network, provider hiccups)
- PermanentError: Errors that will not succeed on retry (auth, validation)
- GenerationError: Errors surfaced to API callers, each with an HTTP status
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Provider status endpoint returning 5xx
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400)
    """

    pass


class ProviderNetworkError(TransientError):
    """Status check failed at the transport or HTTP level.

    The poll loop counts the attempt and keeps polling.
    """

    pass


# Caller-facing errors


class GenerationError(ServiceError):
    """Base exception for errors reported to the API caller."""

    http_status: int = 500


class ValidationError(GenerationError):
    """Missing prompt, model identifier, or malformed request options."""

    http_status = 400


class AuthError(GenerationError):
    """Missing or invalid caller session."""

    http_status = 401


class InsufficientCreditsError(GenerationError):
    """User balance does not cover the job cost."""

    http_status = 402

    def __init__(self, message: str = "Insufficient credits"):
        super().__init__(message)


class JobNotFoundError(GenerationError):
    """Generation job does not exist or belongs to another user."""

    http_status = 404


class ModelNotFoundError(GenerationError):
    """Model identifier is not in the catalog."""

    http_status = 404


class JobAlreadyFinalizedError(GenerationError):
    """Generation job already reached a terminal state."""

    http_status = 409


class ReconciliationConflictError(GenerationError):
    """Ledger, credential and transaction writes could not be committed together."""

    http_status = 409


class ProviderNotImplementedError(GenerationError):
    """No adapter exists for the requested provider and media kind."""

    http_status = 501


class NoCredentialAvailableError(GenerationError):
    """No active credential with enough credits exists for the provider."""

    http_status = 503

    def __init__(self, message: str = "No available API key"):
        super().__init__(message)


class SubmissionError(GenerationError, PermanentError):
    """Provider rejected the submission or returned no job identifier."""

    http_status = 500


class ProviderFailure(GenerationError, PermanentError):
    """Provider reported an explicit failure (reason passed through verbatim)."""

    http_status = 500


class PollTimeoutError(GenerationError):
    """Job did not reach a terminal state within the polling budget."""

    http_status = 500
