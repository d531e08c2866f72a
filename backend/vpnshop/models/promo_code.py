from sqlalchemy import Column, Integer, BigInteger, ForeignKey, Numeric, String, Boolean, DateTime, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from vpnshop.db.base import Base


class PromoCode(Base):
    __tablename__ = "promo_codes"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(32), unique=True, nullable=False, index=True)  # upper-case
    amount = Column(Numeric(10, 2), nullable=False)
    max_activations = Column(Integer, nullable=False)
    activations_used = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    activations = relationship("PromoActivation", back_populates="promo", cascade="all, delete-orphan")


class PromoActivation(Base):
    __tablename__ = "promo_activations"
    __table_args__ = (UniqueConstraint("promo_id", "user_id", name="uq_promo_user"),)

    id = Column(Integer, primary_key=True, index=True)
    promo_id = Column(Integer, ForeignKey("promo_codes.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    telegram_id = Column(BigInteger, nullable=False)
    activated_at = Column(DateTime(timezone=True), server_default=func.now())

    promo = relationship("PromoCode", back_populates="activations")
