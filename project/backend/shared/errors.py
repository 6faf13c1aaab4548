"""
Error taxonomy.

Every error raised by the backend derives from PipelineError so callers can
attach a job id and a machine-readable code.
"""

from typing import Optional


class PipelineError(Exception):
    """Base error for the orchestration and billing backend."""

    def __init__(
        self,
        message: str,
        job_id: Optional[str] = None,
        code: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.job_id = job_id
        self.code = code

    def __str__(self) -> str:
        return self.message


class ConfigError(PipelineError):
    """Invalid or missing configuration."""


class ValidationError(PipelineError):
    """Input failed validation."""


class RetryableError(PipelineError):
    """Transient failure; the operation may succeed if attempted again."""


class RateLimitError(RetryableError):
    """Provider rate limit hit."""


class ProviderError(RetryableError):
    """A generation provider call failed transiently (timeout, 5xx, rate limit)."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        job_id: Optional[str] = None,
        code: Optional[str] = None
    ):
        super().__init__(message, job_id=job_id, code=code)
        self.provider = provider


class ConcurrencyConflictError(RetryableError):
    """Store reported a serialization failure, deadlock or lock timeout."""


class GenerationError(PipelineError):
    """A generation provider rejected the request; retrying will not help."""


class InsufficientCreditsError(PipelineError):
    """The user's available balance cannot cover the requested amount."""

    def __init__(
        self,
        user_id: str,
        required: int,
        available: int,
        job_id: Optional[str] = None
    ):
        super().__init__(
            f"Insufficient credits: required {required}, available {available}",
            job_id=job_id,
            code="INSUFFICIENT_CREDITS"
        )
        self.user_id = user_id
        self.required = required
        self.available = available


class ReservationNotFoundError(PipelineError):
    """No reservation exists with the given id."""


class NotFoundError(PipelineError):
    """A run, project, template or order does not exist."""


class UnrecoverableStageError(PipelineError):
    """A stage job failed in a way queue retries cannot fix."""


class TemplateError(PipelineError):
    """A pipeline template is malformed (duplicate stage, unknown dependency, cycle)."""


class PaymentError(PipelineError):
    """Base error for payment processing."""


class WebhookSignatureError(PaymentError):
    """Webhook signature missing or invalid."""


class OrderNotFoundError(PaymentError):
    """No payment order matches the external order id."""


class AlreadyCreditedError(PaymentError):
    """The payment order already has a credit transaction."""

    def __init__(self, order_id: str, credit_transaction_id: Optional[str] = None):
        super().__init__(
            f"Payment order {order_id} already credited",
            code="ALREADY_CREDITED"
        )
        self.order_id = order_id
        self.credit_transaction_id = credit_transaction_id
