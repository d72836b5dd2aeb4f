"""Persistence of donations and Payme transactions via ``AsyncSession``."""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from donation_server.db.base_class import Base
from donation_server.models.donation import Donation
from donation_server.models.transaction import PaymeTransaction
from donation_server.payme.snapshots import DonationSnapshot, TransactionSnapshot
from donation_server.payme.states import DonationState, TransactionState

CLAIMABLE_DONATION_STATES = (
    int(DonationState.NEW),
    int(DonationState.CANCELLED_BEFORE_PERFORM),
    int(DonationState.CANCELLED_AFTER_PERFORM),
)


def _donation_snapshot(row: Donation) -> DonationSnapshot:
    return DonationSnapshot(
        id=row.id,
        amount=row.amount,
        state=row.state,
        created_at=row.created_at,
    )


def _transaction_snapshot(row: PaymeTransaction) -> TransactionSnapshot:
    return TransactionSnapshot(
        external_id=row.paycom_id,
        donation_id=row.donation_id,
        amount=row.amount,
        state=row.state,
        create_time=row.create_time,
        perform_time=row.perform_time or 0,
        cancel_time=row.cancel_time or 0,
        reason=row.reason,
    )


class Store:
    """Explicitly opened handle over the donations/transactions tables.

    Writes to a transaction are guarded twice: :meth:`lock` and
    :meth:`lock_donation` serialise calls inside this process, and
    :meth:`upsert_transaction` only applies a write when the transaction and
    its donation are still in the expected state.
    """

    def __init__(self, database_url: str, echo: bool = False, **engine_kwargs):
        self.database_url = database_url
        self.echo = echo
        self.engine_kwargs = engine_kwargs
        self.engine = None
        self.SessionLocal: Optional[async_sessionmaker] = None
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._lock_users: Dict[Tuple[str, str], int] = {}

    async def open(self) -> "Store":
        if self.engine is not None:
            return self
        self.engine = create_async_engine(self.database_url, echo=self.echo, **self.engine_kwargs)
        self.SessionLocal = async_sessionmaker(
            bind=self.engine,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
            class_=AsyncSession,
        )
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logging.info("Store opened: %s", self.engine.url.render_as_string(hide_password=True))
        return self

    async def close(self) -> None:
        if self.engine is None:
            return
        await self.engine.dispose()
        self.engine = None
        self.SessionLocal = None
        logging.info("Store closed")

    def _session(self) -> AsyncSession:
        if self.SessionLocal is None:
            raise RuntimeError("Store is not open")
        return self.SessionLocal()

    @asynccontextmanager
    async def _hold(self, key: Tuple[str, str]) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    def lock(self, external_id: str):
        """Hold the in-process lock for one external transaction id."""
        return self._hold(("transaction", external_id))

    def lock_donation(self, donation_id: str):
        """Hold the in-process lock for creating transactions of one donation.

        Always taken before :meth:`lock`, never the other way round.
        """
        return self._hold(("donation", donation_id))

    # ---------- donations ----------

    async def create_donation(self, donation_id: str, amount: int) -> DonationSnapshot:
        """Insert the donation unless it exists; return the stored one."""
        async with self._session() as db:
            row = await db.get(Donation, donation_id)
            if row is None:
                db.add(
                    Donation(
                        id=donation_id,
                        amount=amount,
                        state=int(DonationState.NEW),
                        created_at=int(time.time() * 1000),
                    )
                )
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    logging.info("Donation %s created concurrently", donation_id)
        return await self.get_donation(donation_id)

    async def get_donation(self, donation_id: str) -> Optional[DonationSnapshot]:
        async with self._session() as db:
            row = await db.get(Donation, donation_id)
            return _donation_snapshot(row) if row else None

    async def set_donation_state(self, donation_id: str, state: DonationState) -> None:
        async with self._session() as db:
            await db.execute(
                update(Donation).where(Donation.id == donation_id).values(state=int(state))
            )
            await db.commit()

    # ---------- transactions ----------

    async def get_transaction(self, external_id: str) -> Optional[TransactionSnapshot]:
        async with self._session() as db:
            row = await db.get(PaymeTransaction, external_id)
            return _transaction_snapshot(row) if row else None

    async def find_live_transaction(
        self, donation_id: str, exclude: Optional[str] = None
    ) -> Optional[TransactionSnapshot]:
        """Return a ``Created`` transaction of the donation other than ``exclude``."""
        query = select(PaymeTransaction).filter_by(
            donation_id=donation_id, state=int(TransactionState.CREATED)
        )
        if exclude is not None:
            query = query.filter(PaymeTransaction.paycom_id != exclude)
        async with self._session() as db:
            result = await db.execute(query.order_by(PaymeTransaction.create_time.asc()))
            row = result.scalars().first()
            return _transaction_snapshot(row) if row else None

    async def upsert_transaction(
        self,
        tx: TransactionSnapshot,
        expected_state: Optional[TransactionState] = None,
        donation_state: Optional[DonationState] = None,
    ) -> bool:
        """Persist ``tx`` keyed by its external id, together with its donation.

        Without ``expected_state`` the row is inserted; ``False`` means the
        external id is already taken. With ``expected_state`` only the
        mutable columns are overwritten, and only while the stored row is
        still in that state; ``False`` means another writer got there first.
        ``amount``, ``donation_id`` and ``create_time`` are never updated.

        ``donation_state`` is written in the same commit. On insert the
        donation must not already have a live or paid transaction, otherwise
        nothing is written and ``False`` is returned.
        """
        async with self._session() as db:
            try:
                if expected_state is None:
                    db.add(
                        PaymeTransaction(
                            paycom_id=tx.external_id,
                            donation_id=tx.donation_id,
                            amount=tx.amount,
                            state=int(tx.state),
                            create_time=tx.create_time,
                            perform_time=tx.perform_time,
                            cancel_time=tx.cancel_time,
                            reason=tx.reason,
                        )
                    )
                    await db.flush()
                else:
                    result = await db.execute(
                        update(PaymeTransaction)
                        .where(
                            PaymeTransaction.paycom_id == tx.external_id,
                            PaymeTransaction.state == int(expected_state),
                        )
                        .values(
                            state=int(tx.state),
                            perform_time=tx.perform_time,
                            cancel_time=tx.cancel_time,
                            reason=tx.reason,
                        )
                    )
                    if result.rowcount != 1:
                        await db.rollback()
                        return False

                if donation_state is not None:
                    query = update(Donation).where(Donation.id == tx.donation_id)
                    if expected_state is None:
                        # Занимаем пожертвование: другой живой или оплаченной транзакции быть не должно
                        query = query.where(Donation.state.in_(CLAIMABLE_DONATION_STATES))
                    result = await db.execute(query.values(state=int(donation_state)))
                    if result.rowcount != 1:
                        await db.rollback()
                        return False

                await db.commit()
            except IntegrityError:
                await db.rollback()
                return False
            return True

    async def list_transactions(self, from_time: int, to_time: int) -> List[TransactionSnapshot]:
        async with self._session() as db:
            result = await db.execute(
                select(PaymeTransaction)
                .filter(
                    PaymeTransaction.create_time >= from_time,
                    PaymeTransaction.create_time <= to_time,
                )
                .order_by(PaymeTransaction.create_time.asc())
            )
            return [_transaction_snapshot(row) for row in result.scalars().all()]
