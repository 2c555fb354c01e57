"""Billing error taxonomy.

Commands raise these; routes translate them to HTTP responses. Webhook
handling catches them and reports a ``WebhookOutcome`` instead of raising.
"""


class BillingError(Exception):
    """Base class for all billing failures."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class BillingValidationError(BillingError):
    """Malformed command input, rejected before any state mutation."""


class DomainError(BillingError):
    """Well-formed command that violates a lifecycle precondition."""


class SubscriptionNotFoundError(DomainError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"No subscription found for user {user_id}.")
        self.user_id = user_id


class InvalidTransitionError(DomainError):
    """The current subscription state does not allow the requested action."""


class RefundNotAllowedError(DomainError):
    """Refund eligibility failed or the payment was already refunded."""


class ConcurrentModificationError(DomainError):
    """The record changed between the precondition check and the write."""


class ProviderError(BillingError):
    """Terminal Stripe failure (bad request, authentication, card error)."""


class ProviderUnavailableError(ProviderError):
    """Transient Stripe failure: network, timeout, rate limit, 5xx. Retryable."""


class ProviderResourceGoneError(ProviderError):
    """The Stripe object no longer exists (or is already canceled)."""


class CorrelationError(BillingError):
    """An event references a user or customer unknown to the local store."""


class PersistenceError(BillingError):
    """The record store is unreachable or rejected the write."""


class WebhookVerificationError(BillingError):
    """Signature check failed, or the body was not the raw request bytes."""
