"""Promo codes: staff CRUD and one-time activation by users."""
import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from vpnshop.core.audit import AuditLog
from vpnshop.core.exceptions import PromoRejected, UserInputInvalid
from vpnshop.models import PromoCode, PromoActivation, User, Transaction, TransactionType, TransactionStatus
from vpnshop.schemas.stats import PromoStats
from vpnshop.services.balance_service import to_money

logger = logging.getLogger(__name__)

CODE_MIN_LEN = 3
CODE_MAX_LEN = 20


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def get_promo_by_code(db: Session, code: str) -> Optional[PromoCode]:
    return db.query(PromoCode).filter(func.upper(PromoCode.code) == normalize_code(code)).first()


def promo_code_exists(db: Session, code: str) -> bool:
    return get_promo_by_code(db, code) is not None


def create_promo_code(db: Session, code: str, amount: Decimal | float, max_activations: int) -> PromoCode:
    code = normalize_code(code)
    if not CODE_MIN_LEN <= len(code) <= CODE_MAX_LEN:
        raise UserInputInvalid("code length")
    if promo_code_exists(db, code):
        raise UserInputInvalid("code exists")
    promo = PromoCode(
        code=code,
        amount=to_money(amount),
        max_activations=max_activations,
        activations_used=0,
        is_active=True,
    )
    db.add(promo)
    db.commit()
    db.refresh(promo)
    return promo


def list_promo_codes(db: Session) -> List[PromoCode]:
    return db.query(PromoCode).order_by(PromoCode.created_at.desc(), PromoCode.id.desc()).all()


def delete_promo_code(db: Session, code: str) -> bool:
    promo = get_promo_by_code(db, code)
    if not promo:
        return False
    db.delete(promo)
    db.commit()
    return True


def activate_promo_for_user(db: Session, user: User, code: str) -> PromoCode:
    """
    Credit the promo amount once per user.

    Raises PromoRejected with a user-facing reason when the code is unknown,
    disabled, exhausted or was already used by this user.
    """
    promo = get_promo_by_code(db, code)
    if not promo:
        raise PromoRejected("промокод не найден")
    if not promo.is_active:
        raise PromoRejected("промокод неактивен")
    if promo.activations_used >= promo.max_activations:
        raise PromoRejected("промокод исчерпан")
    already = (
        db.query(PromoActivation)
        .filter(PromoActivation.promo_id == promo.id, PromoActivation.user_id == user.id)
        .first()
    )
    if already:
        raise PromoRejected("вы уже использовали этот промокод")

    amount = to_money(promo.amount)
    db.add(PromoActivation(promo_id=promo.id, user_id=user.id, telegram_id=user.telegram_id))
    promo.activations_used += 1
    user.balance = to_money(user.balance or 0) + amount
    db.add(Transaction(
        user_id=user.id,
        amount=amount,
        type=TransactionType.PROMO_BONUS,
        status=TransactionStatus.COMPLETED,
    ))
    try:
        db.commit()
    except IntegrityError:
        # Concurrent activation by the same user hit the unique constraint
        db.rollback()
        raise PromoRejected("вы уже использовали этот промокод")

    db.refresh(user)
    AuditLog.log_balance_change(
        user.telegram_id, float(amount), TransactionType.PROMO_BONUS, float(user.balance),
        details={"code": promo.code},
    )
    return promo


def promo_stats(db: Session) -> List[PromoStats]:
    promos = (
        db.query(PromoCode)
        .filter(PromoCode.is_active.is_(True))
        .order_by(PromoCode.activations_used.desc())
        .all()
    )
    return [
        PromoStats(
            code=p.code,
            amount=p.amount,
            max_activations=p.max_activations,
            activations_used=p.activations_used,
            total_bonus_paid=to_money(p.amount * p.activations_used),
        )
        for p in promos
    ]
