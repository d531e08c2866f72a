from sqlalchemy import Column, Integer, BigInteger, String, Numeric, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from vpnshop.db.base import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    telegram_id = Column(BigInteger, unique=True, index=True, nullable=False)
    username = Column(String(255), nullable=True)
    balance = Column(Numeric(10, 2), default=0, nullable=False)
    # Telegram id of the inviter, not a foreign key
    referrer_id = Column(BigInteger, nullable=True, index=True)
    total_ref_earnings = Column(Numeric(10, 2), default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    subscriptions = relationship("Subscription", back_populates="user", cascade="all, delete-orphan")
    transactions = relationship("Transaction", back_populates="user", cascade="all, delete-orphan")
