"""
Python enums for the billing tables.
Values are stored as-is in the status columns.
"""

from enum import Enum


class StatementStatus(str, Enum):
    OPEN = "OPEN"
    FINALIZED = "FINALIZED"
    PAID = "PAID"
    PAYMENT_FAILED = "PAYMENT_FAILED"


# Allowed predecessor states for each transition target.
ALLOWED_TRANSITIONS: dict[StatementStatus, frozenset[StatementStatus]] = {
    StatementStatus.FINALIZED: frozenset({StatementStatus.OPEN}),
    StatementStatus.PAID: frozenset({StatementStatus.FINALIZED}),
    StatementStatus.PAYMENT_FAILED: frozenset({StatementStatus.FINALIZED}),
}


class PaymentOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ReviewStatus(str, Enum):
    PENDING = "PENDING"
    IN_REVIEW = "IN_REVIEW"
    RESOLVED = "RESOLVED"
    SKIPPED = "SKIPPED"


class ConflictReason(str, Enum):
    """Why an order could not be attached to its window's statement."""
    STATEMENT_CLAIMED = "STATEMENT_CLAIMED"
    STATEMENT_FINALIZED = "STATEMENT_FINALIZED"
    STATEMENT_PAID = "STATEMENT_PAID"
    STATEMENT_PAYMENT_FAILED = "STATEMENT_PAYMENT_FAILED"

    @classmethod
    def for_status(cls, status: str) -> "ConflictReason":
        return cls(f"STATEMENT_{status}")


class StatementEventType(str, Enum):
    STATEMENT_PAID = "STATEMENT_PAID"
    STATEMENT_PAYMENT_FAILED = "STATEMENT_PAYMENT_FAILED"
