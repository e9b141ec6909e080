"""Service error hierarchy for job submission, reconciliation and credit settlement.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, rate limits, timeouts)
- PermanentError: Non-retryable errors (authentication, validation)
"""

from decimal import Decimal

from mediagen.models.pending_job import InvalidTransitionError


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Provider unavailable (5xx)
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400, 422)
    - Configuration errors
    """

    pass


# Provider submission errors
class SubmissionError(ServiceError):
    """Provider rejected the request or the network failed at submit time."""

    def __init__(self, message: str, provider: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class TransientSubmissionError(SubmissionError, TransientError):
    """Submission failed for a reason that may clear up (timeout, 429, 5xx)."""

    pass


class PermanentSubmissionError(SubmissionError, PermanentError):
    """Submission rejected by the provider (4xx other than 429)."""

    pass


class RequestValidationError(PermanentError):
    """Generation request is malformed before it reaches any provider."""

    pass


class ProviderConfigurationError(PermanentError):
    """Provider is unknown or missing credentials."""

    pass


# Polling errors
class PollingTimeoutError(TransientError, TimeoutError):
    """Polling exhausted its attempt budget without a terminal status."""

    def __init__(self, task_id: str, attempts: int):
        super().__init__(f"Polling timed out after {attempts} attempts for task {task_id}")
        self.task_id = task_id
        self.attempts = attempts


class ProviderJobFailedError(PermanentError):
    """Provider reported the job as failed while polling."""

    pass


# Pending job store errors
class DuplicateTaskIdError(PermanentError):
    """A job with the same provider task id already exists."""

    def __init__(self, task_id: str):
        super().__init__(f"Task id already recorded: {task_id}")
        self.task_id = task_id


class JobNotFoundError(PermanentError):
    """No job matches the given task id (or it belongs to another user)."""

    def __init__(self, task_id: str):
        super().__init__(f"Job not found: {task_id}")
        self.task_id = task_id


class CancellationNotAllowedError(PermanentError):
    """Job is terminal, already cancelled, or still inside its grace period."""

    pass


# Webhook errors
class UnauthorizedWebhookError(PermanentError):
    """Webhook secret or signature did not match the configured provider secret."""

    pass


class MalformedWebhookError(PermanentError):
    """Webhook payload lacks a task id or cannot be parsed."""

    pass


# Credit ledger errors
class InvalidAmountError(PermanentError):
    """Credit amount must be strictly positive."""

    pass


class InsufficientCreditsError(PermanentError):
    """Balance does not cover the requested deduction."""

    def __init__(self, user_id: str, required: Decimal, available: Decimal | None = None):
        message = f"Insufficient credits for user {user_id}: required {required}"
        if available is not None:
            message += f", available {available}"
        super().__init__(message)
        self.user_id = user_id
        self.required = required
        self.available = available


__all__ = [
    "ServiceError",
    "TransientError",
    "PermanentError",
    "SubmissionError",
    "TransientSubmissionError",
    "PermanentSubmissionError",
    "RequestValidationError",
    "ProviderConfigurationError",
    "PollingTimeoutError",
    "ProviderJobFailedError",
    "DuplicateTaskIdError",
    "InvalidTransitionError",
    "JobNotFoundError",
    "CancellationNotAllowedError",
    "UnauthorizedWebhookError",
    "MalformedWebhookError",
    "InvalidAmountError",
    "InsufficientCreditsError",
]
