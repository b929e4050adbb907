from __future__ import annotations


class WebhookError(Exception):
    """Base for failures raised while ingesting or applying a webhook event."""

    category = "unknown"
    retryable = False


class AuthenticityError(WebhookError):
    """Signature missing or invalid. Never retried with the same body."""

    category = "authenticity"


class SignatureConfigurationError(WebhookError):
    """A webhook secret is not configured and unsigned delivery is not allowed."""

    category = "configuration"
    retryable = True


class MappingError(WebhookError):
    """Event is authentic but cannot be mapped onto local state (missing metadata, unknown company)."""

    category = "mapping"


class MutationError(WebhookError):
    """Ledger or subscription write failed and was rolled back."""

    category = "mutation"


class PersistenceTimeoutError(WebhookError):
    """The persistence layer did not answer in time; the outcome is unknown."""

    category = "transient"
    retryable = True


class InsufficientFundsError(WebhookError):
    category = "insufficient_funds"

    def __init__(self, *, company_id: str, required_cents: int, available_cents: int) -> None:
        super().__init__(
            f"Insufficient funds for company {company_id}: "
            f"required {required_cents} cents, available {available_cents} cents"
        )
        self.company_id = company_id
        self.required_cents = required_cents
        self.available_cents = available_cents
