"""State enums shared by the ORM rows, the state machine and the wire format."""

from enum import IntEnum


class TransactionState(IntEnum):
    CREATED = 1
    PERFORMED = 2
    CANCELLED_BEFORE_PERFORM = -1
    CANCELLED_AFTER_PERFORM = -2

    @property
    def is_cancelled(self) -> bool:
        return self in (
            TransactionState.CANCELLED_BEFORE_PERFORM,
            TransactionState.CANCELLED_AFTER_PERFORM,
        )


class DonationState(IntEnum):
    NEW = 0
    CREATED = 1
    PAID = 2
    CANCELLED_BEFORE_PERFORM = -1
    CANCELLED_AFTER_PERFORM = -2

    @classmethod
    def from_transaction(cls, state: TransactionState) -> "DonationState":
        """Project a transaction state onto its donation."""
        return {
            TransactionState.CREATED: cls.CREATED,
            TransactionState.PERFORMED: cls.PAID,
            TransactionState.CANCELLED_BEFORE_PERFORM: cls.CANCELLED_BEFORE_PERFORM,
            TransactionState.CANCELLED_AFTER_PERFORM: cls.CANCELLED_AFTER_PERFORM,
        }[state]


class CancelReason(IntEnum):
    """Cancellation codes defined by the Payme merchant protocol."""

    RECEIVER_NOT_FOUND = 1
    DEBIT_ERROR = 2
    TRANSACTION_ERROR = 3
    TIMEOUT = 4
    REFUND = 5
    UNKNOWN = 10
