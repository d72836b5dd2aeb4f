from sqlalchemy import Column, String, Integer, BigInteger, SmallInteger, ForeignKey, Index
from sqlalchemy.orm import relationship

from donation_server.db.base_class import Base


class PaymeTransaction(Base):
    __tablename__ = "transactions"

    # Идентификатор транзакции Payme — ключ идемпотентности
    paycom_id = Column(String(64), primary_key=True)
    donation_id = Column(String(64), ForeignKey("donations.id"), nullable=False)
    amount = Column(Integer, nullable=False)
    state = Column(SmallInteger, nullable=False)

    # Метки времени в миллисекундах, 0 пока переход не случился
    create_time = Column(BigInteger, nullable=False)
    perform_time = Column(BigInteger, nullable=False, default=0)
    cancel_time = Column(BigInteger, nullable=False, default=0)
    reason = Column(Integer, nullable=True)

    donation = relationship("Donation", back_populates="transactions")

    __table_args__ = (
        Index("idx_transactions_donation", "donation_id"),
        Index("idx_transactions_create_time", "create_time"),
    )
