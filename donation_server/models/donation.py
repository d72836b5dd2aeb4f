from sqlalchemy import Column, String, Integer, BigInteger, SmallInteger
from sqlalchemy.orm import relationship

from donation_server.db.base_class import Base


class Donation(Base):
    __tablename__ = "donations"

    id = Column(String(64), primary_key=True)
    # Сумма в тийинах, после создания не меняется
    amount = Column(Integer, nullable=False)
    # 0=new, 1=created, 2=paid, -1/-2 cancelled
    state = Column(SmallInteger, nullable=False, default=0)
    created_at = Column(BigInteger, nullable=False)

    transactions = relationship("PaymeTransaction", back_populates="donation")
