"""Glue between the Payme state machine and the :class:`Store`.

Each public coroutine performs one merchant method: it takes the lock for the
transaction's external id (creation also locks the donation), reads fresh
snapshots, applies lazy TTL expiry, asks :mod:`donation_server.payme.machine`
for the outcome and writes it back.
"""

import logging
import time
from typing import Callable, List, Optional

from donation_server.config import DEFAULT_TRANSACTION_TTL_MS
from donation_server.payme import machine
from donation_server.payme.errors import InternalError
from donation_server.payme.machine import Outcome
from donation_server.payme.snapshots import TransactionSnapshot
from donation_server.services.store import Store

# Сколько раз пересчитываем решение, если нас опередил другой процесс
MAX_WRITE_ATTEMPTS = 3


def now_ms() -> int:
    return int(time.time() * 1000)


class WriteConflict(Exception):
    """The row changed between our read and our conditional write."""


class MerchantService:
    def __init__(
        self,
        store: Store,
        ttl_ms: int = DEFAULT_TRANSACTION_TTL_MS,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.ttl_ms = ttl_ms
        self.clock = clock

    async def _apply(self, outcome: Outcome) -> TransactionSnapshot:
        if not outcome.changed:
            return outcome.transaction
        tx = outcome.transaction
        written = await self.store.upsert_transaction(
            tx,
            expected_state=outcome.previous_state,
            donation_state=outcome.donation_state,
        )
        if not written:
            raise WriteConflict(tx.external_id)
        logging.info(
            "Transaction %s -> state %s (donation %s)",
            tx.external_id,
            int(tx.state),
            tx.donation_id,
        )
        return tx

    async def _expire_if_due(self, tx: TransactionSnapshot, now: int) -> TransactionSnapshot:
        outcome = machine.expire(tx, now, self.ttl_ms)
        if outcome is None:
            return tx
        logging.info("Transaction %s expired, cancelling (created at %s)", tx.external_id, tx.create_time)
        return await self._apply(outcome)

    async def _run(self, external_id: str, attempt: Callable) -> TransactionSnapshot:
        async with self.store.lock(external_id):
            for _ in range(MAX_WRITE_ATTEMPTS):
                try:
                    return await attempt()
                except WriteConflict:
                    logging.warning("Concurrent write on transaction %s, re-reading", external_id)
        raise InternalError()

    async def check_perform_transaction(self, donation_id: Optional[str], amount: Optional[int]) -> dict:
        donation = await self.store.get_donation(donation_id) if donation_id else None
        return machine.check_perform(donation, amount)

    async def create_transaction(
        self, external_id: str, donation_id: Optional[str], amount: Optional[int]
    ) -> TransactionSnapshot:
        async def attempt():
            now = self.clock()
            donation = await self.store.get_donation(donation_id) if donation_id else None
            existing = await self.store.get_transaction(external_id)
            live_other = None
            if donation is not None and existing is None:
                live_other = await self.store.find_live_transaction(donation.id, exclude=external_id)
                if live_other is not None:
                    live_other = await self._expire_if_due(live_other, now)
                    if live_other.state.is_cancelled:
                        live_other = None
                        donation = await self.store.get_donation(donation_id)

            outcome = machine.create_transaction(
                donation, amount, external_id, existing, now, self.ttl_ms, live_other
            )
            if existing is not None and outcome.changed:
                # TODO: confirm with Payme whether an expired repeat should get -31008 instead of the snapshot
                logging.info("CreateTransaction repeat for %s found it expired", external_id)
            return await self._apply(outcome)

        if not donation_id:
            return await self._run(external_id, attempt)
        async with self.store.lock_donation(donation_id):
            return await self._run(external_id, attempt)

    async def perform_transaction(self, external_id: str) -> TransactionSnapshot:
        async def attempt():
            now = self.clock()
            tx = machine.ensure_exists(await self.store.get_transaction(external_id))
            tx = await self._expire_if_due(tx, now)
            return await self._apply(machine.perform_transaction(tx, now))

        return await self._run(external_id, attempt)

    async def cancel_transaction(self, external_id: str, reason: Optional[int]) -> TransactionSnapshot:
        async def attempt():
            now = self.clock()
            tx = machine.ensure_exists(await self.store.get_transaction(external_id))
            tx = await self._expire_if_due(tx, now)
            return await self._apply(machine.cancel_transaction(tx, reason, now))

        return await self._run(external_id, attempt)

    async def check_transaction(self, external_id: str) -> TransactionSnapshot:
        async def attempt():
            now = self.clock()
            tx = machine.ensure_exists(await self.store.get_transaction(external_id))
            tx = await self._expire_if_due(tx, now)
            return machine.check_transaction(tx).transaction

        return await self._run(external_id, attempt)

    async def get_statement(self, from_time: Optional[int], to_time: Optional[int]) -> List[TransactionSnapshot]:
        return await self.store.list_transactions(from_time or 0, to_time or self.clock())
