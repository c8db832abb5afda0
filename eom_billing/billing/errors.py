"""
Billing error taxonomy.

Business-rule violations (InvalidStateTransition, StatementImmutable,
EarlyFinalizationConflict) are surfaced to the caller and never retried.
DuplicateKeyRace stays inside the statement store.
"""

from typing import Optional


class BillingError(Exception):
    """Base class for billing errors."""

    error_code = "ERR_BILLING"

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        super().__init__(message)


class StatementNotFound(BillingError):
    error_code = "ERR_STATEMENT_NOT_FOUND"

    def __init__(self, statement_ref: str):
        self.statement_ref = statement_ref
        super().__init__(f"Statement {statement_ref} not found")


class InvalidStateTransition(BillingError):
    error_code = "ERR_INVALID_TRANSITION"

    def __init__(self, statement_id: str, current: str, target: str):
        self.statement_id = statement_id
        self.current = current
        self.target = target
        super().__init__(
            f"Statement {statement_id} cannot move from {current} to {target}"
        )


class StatementImmutable(BillingError):
    error_code = "ERR_STATEMENT_IMMUTABLE"

    def __init__(self, statement_id: str):
        self.statement_id = statement_id
        super().__init__(f"Statement {statement_id} is PAID and cannot be modified")


class EarlyFinalizationConflict(BillingError):
    """An order arrived for a window whose statement is no longer open."""

    error_code = "ERR_EARLY_FINALIZATION"

    def __init__(self, statement_id: str, order_ref: str, reason: str):
        self.statement_id = statement_id
        self.order_ref = order_ref
        self.reason = reason
        self.review_id: Optional[str] = None
        super().__init__(
            f"Order {order_ref} cannot be attached to statement {statement_id}: {reason}"
        )


class DuplicateKeyRace(BillingError):
    """Another writer created the statement for the same key first."""

    error_code = "ERR_DUPLICATE_KEY_RACE"


class ExternalInvoiceFailure(BillingError):
    """The invoicing collaborator rejected or failed a call."""

    error_code = "ERR_EXTERNAL_INVOICE"

    def __init__(self, message: str, error_code: Optional[str] = None, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message, error_code)


class RetryExhausted(BillingError):
    error_code = "ERR_RETRY_EXHAUSTED"

    def __init__(self, statement_id: str, attempts: int):
        self.statement_id = statement_id
        self.attempts = attempts
        super().__init__(
            f"Statement {statement_id} still unpaid after {attempts} retry days"
        )
