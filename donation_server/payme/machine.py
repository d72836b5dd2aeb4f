"""Decision rules for the Payme merchant transaction lifecycle.

Everything here is pure: functions receive freshly loaded snapshots and the
current time in milliseconds, and either raise a :class:`PaymeError` or
return an :class:`Outcome` describing what (if anything) must be persisted.
Loading, locking and writing live in
:mod:`donation_server.services.merchant_service`.

TTL expiry is lazy. A ``Created`` transaction whose ``create_time + ttl``
is in the past is cancelled (reason ``TIMEOUT``) by whichever call touches
it next; there is no background sweep.
"""

from typing import NamedTuple, Optional

from donation_server.payme.errors import (
    AccountError,
    AmountError,
    CannotPerform,
    TransactionNotFound,
)
from donation_server.payme.snapshots import DonationSnapshot, TransactionSnapshot
from donation_server.payme.states import CancelReason, DonationState, TransactionState

EXPIRED_REASON = CancelReason.TIMEOUT


class Outcome(NamedTuple):
    transaction: TransactionSnapshot
    # State the row must still be in for the write to apply; None means insert.
    previous_state: Optional[TransactionState] = None
    donation_state: Optional[DonationState] = None
    changed: bool = False


def ensure_exists(tx: Optional[TransactionSnapshot]) -> TransactionSnapshot:
    if tx is None:
        raise TransactionNotFound()
    return tx


def is_expired(tx: TransactionSnapshot, now: int, ttl_ms: int) -> bool:
    return tx.state == TransactionState.CREATED and tx.create_time + ttl_ms < now


def expire(tx: TransactionSnapshot, now: int, ttl_ms: int) -> Optional[Outcome]:
    """Return the auto-cancel outcome for an expired transaction, else ``None``."""
    if not is_expired(tx, now, ttl_ms):
        return None
    cancelled = tx.model_copy(
        update={
            "state": TransactionState.CANCELLED_BEFORE_PERFORM,
            "cancel_time": now,
            "reason": int(EXPIRED_REASON),
        }
    )
    return Outcome(
        cancelled,
        previous_state=tx.state,
        donation_state=DonationState.CANCELLED_BEFORE_PERFORM,
        changed=True,
    )


def validate_account(donation: Optional[DonationSnapshot], amount: Optional[int]) -> DonationSnapshot:
    if donation is None:
        raise AccountError()
    if amount is None or donation.amount != amount:
        raise AmountError()
    return donation


def check_perform(donation: Optional[DonationSnapshot], amount: Optional[int]) -> dict:
    validate_account(donation, amount)
    return {"allow": True}


def create_transaction(
    donation: Optional[DonationSnapshot],
    amount: Optional[int],
    external_id: str,
    existing: Optional[TransactionSnapshot],
    now: int,
    ttl_ms: int,
    live_other: Optional[TransactionSnapshot] = None,
) -> Outcome:
    """Decide a ``CreateTransaction`` call.

    ``existing`` is the row already stored under ``external_id`` (if any) and
    ``live_other`` a non-expired ``Created`` transaction of the same donation
    under a different external id.
    """
    donation = validate_account(donation, amount)
    if donation.state == DonationState.PAID:
        raise CannotPerform()

    if existing is not None:
        if existing.donation_id != donation.id or existing.amount != amount:
            raise CannotPerform()
        # Повтор того же вызова: отдаём сохранённую транзакцию (с учётом TTL)
        return expire(existing, now, ttl_ms) or Outcome(existing)

    if live_other is not None:
        raise CannotPerform()

    tx = TransactionSnapshot(
        external_id=external_id,
        donation_id=donation.id,
        amount=amount,
        state=TransactionState.CREATED,
        create_time=now,
    )
    return Outcome(tx, donation_state=DonationState.CREATED, changed=True)


def perform_transaction(tx: TransactionSnapshot, now: int) -> Outcome:
    if tx.state.is_cancelled:
        raise CannotPerform()
    if tx.state == TransactionState.PERFORMED:
        return Outcome(tx)

    performed = tx.model_copy(
        update={"state": TransactionState.PERFORMED, "perform_time": now}
    )
    return Outcome(
        performed,
        previous_state=tx.state,
        donation_state=DonationState.PAID,
        changed=True,
    )


def cancel_transaction(tx: TransactionSnapshot, reason: Optional[int], now: int) -> Outcome:
    if tx.state.is_cancelled:
        return Outcome(tx)

    if tx.state == TransactionState.PERFORMED:
        new_state = TransactionState.CANCELLED_AFTER_PERFORM
    else:
        new_state = TransactionState.CANCELLED_BEFORE_PERFORM
    cancelled = tx.model_copy(
        update={"state": new_state, "cancel_time": now, "reason": reason}
    )
    return Outcome(
        cancelled,
        previous_state=tx.state,
        donation_state=DonationState.from_transaction(new_state),
        changed=True,
    )


def check_transaction(tx: TransactionSnapshot) -> Outcome:
    return Outcome(tx)
