from sqlalchemy import Column, Integer, ForeignKey, Numeric, String, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from vpnshop.db.base import Base


class TransactionType:
    TOP_UP = "top_up"
    PURCHASE = "purchase"  # stored with a negative amount
    REFUND = "refund"
    REFERRAL_BONUS = "referral_bonus"
    PROMO_BONUS = "promo_bonus"
    MANUAL_DEPOSIT = "manual_deposit"


class TransactionStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    type = Column(String(32), nullable=False)
    status = Column(String(32), default=TransactionStatus.COMPLETED, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="transactions")
