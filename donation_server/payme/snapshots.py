"""Immutable views of persisted rows handed to the state machine."""

from typing import Optional

from pydantic import BaseModel, ConfigDict

from donation_server.payme.states import DonationState, TransactionState


class DonationSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    amount: int
    state: DonationState = DonationState.NEW
    created_at: int = 0


class TransactionSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    external_id: str
    donation_id: str
    amount: int
    state: TransactionState
    create_time: int
    perform_time: int = 0
    cancel_time: int = 0
    reason: Optional[int] = None

    def to_wire(self, account_field: str) -> dict:
        """Render the snapshot the way the gateway expects it."""
        return {
            "transaction": self.external_id,
            "account": {account_field: self.donation_id},
            "create_time": self.create_time,
            "perform_time": self.perform_time,
            "cancel_time": self.cancel_time,
            "amount": self.amount,
            "state": int(self.state),
            "reason": self.reason,
        }
