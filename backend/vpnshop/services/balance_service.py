"""Balance movements. Every change writes a Transaction row in the same commit."""
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from vpnshop.core.audit import AuditLog
from vpnshop.core.exceptions import InsufficientBalance, UserNotFound
from vpnshop.models import User, Transaction, TransactionType, TransactionStatus
from vpnshop.services.user_service import get_user_by_telegram_id

logger = logging.getLogger(__name__)

REFERRAL_PERCENT = Decimal("25")


def to_money(value: Decimal | float | int | str) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _record(db: Session, user: User, amount: Decimal, tx_type: str) -> Transaction:
    tx = Transaction(
        user_id=user.id,
        amount=amount,
        type=tx_type,
        status=TransactionStatus.COMPLETED,
    )
    db.add(tx)
    return tx


def credit_user(db: Session, user: User, amount: Decimal | float, tx_type: str) -> Transaction:
    amount = to_money(amount)
    user.balance = to_money(user.balance or 0) + amount
    tx = _record(db, user, amount, tx_type)
    db.commit()
    db.refresh(user)
    AuditLog.log_balance_change(user.telegram_id, float(amount), tx_type, float(user.balance))
    return tx


def add_user_balance(
    db: Session,
    telegram_id: int,
    amount: Decimal | float,
    tx_type: str = TransactionType.MANUAL_DEPOSIT,
) -> User:
    user = get_user_by_telegram_id(db, telegram_id)
    if not user:
        raise UserNotFound(telegram_id)
    credit_user(db, user, amount, tx_type)
    return user


def deduct_balance(db: Session, user: User, amount: Decimal | float) -> Transaction:
    """Debit for a purchase. Recorded as a negative ``purchase`` transaction."""
    amount = to_money(amount)
    balance = to_money(user.balance or 0)
    if balance < amount:
        raise InsufficientBalance(float(balance), float(amount))

    user.balance = balance - amount
    tx = _record(db, user, -amount, TransactionType.PURCHASE)
    db.commit()
    db.refresh(user)
    AuditLog.log_balance_change(user.telegram_id, float(-amount), TransactionType.PURCHASE, float(user.balance))
    return tx


def top_up_with_referral(
    db: Session,
    user: User,
    amount: Decimal | float,
    tx_type: str = TransactionType.TOP_UP,
) -> Optional[Tuple[User, Decimal]]:
    """
    Credit a confirmed top-up and pay the inviter their referral share.

    The user's credit and the inviter's bonus are committed together.
    Returns (referrer, bonus) when a bonus was paid, otherwise None.
    """
    amount = to_money(amount)
    user.balance = to_money(user.balance or 0) + amount
    _record(db, user, amount, tx_type)

    referrer = None
    bonus = Decimal("0")
    if user.referrer_id:
        referrer = get_user_by_telegram_id(db, user.referrer_id)
        if referrer:
            bonus = to_money(amount * REFERRAL_PERCENT / 100)
            referrer.balance = to_money(referrer.balance or 0) + bonus
            referrer.total_ref_earnings = to_money(referrer.total_ref_earnings or 0) + bonus
            _record(db, referrer, bonus, TransactionType.REFERRAL_BONUS)

    db.commit()
    db.refresh(user)
    AuditLog.log_balance_change(user.telegram_id, float(amount), tx_type, float(user.balance))

    if referrer and bonus > 0:
        db.refresh(referrer)
        AuditLog.log_balance_change(
            referrer.telegram_id, float(bonus), TransactionType.REFERRAL_BONUS, float(referrer.balance),
            details={"from_user": user.telegram_id},
        )
        logger.info(f"Referral bonus {bonus} paid to {referrer.telegram_id} for {user.telegram_id}")
        return referrer, bonus
    return None
