"""Storefront users: registration, lookup and staff profile view."""
import logging
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from vpnshop.models import User, Subscription, Transaction
from vpnshop.schemas.user import UserProfile, SubscriptionRecord, TransactionRecord

logger = logging.getLogger(__name__)


def get_user_by_telegram_id(db: Session, telegram_id: int) -> Optional[User]:
    return db.query(User).filter(User.telegram_id == telegram_id).first()


def user_exists(db: Session, telegram_id: int) -> bool:
    return get_user_by_telegram_id(db, telegram_id) is not None


def get_or_create_user(db: Session, telegram_id: int, username: Optional[str] = None) -> Tuple[User, bool]:
    """Return (user, created). Refreshes the stored username when it changed."""
    user = get_user_by_telegram_id(db, telegram_id)
    if user:
        if username and user.username != username:
            user.username = username
            db.commit()
        return user, False

    user = User(telegram_id=telegram_id, username=username, balance=0, total_ref_earnings=0)
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"New user {telegram_id} (@{username})")
    return user, True


def create_user_with_referrer(
    db: Session,
    telegram_id: int,
    username: Optional[str],
    referrer_id: Optional[int],
) -> User:
    """
    Register a user that arrived through an invite link.

    The referrer is only recorded if it is an existing user other than the
    newcomer; an unknown or self referral registers the user without one.
    """
    if referrer_id is not None and (referrer_id == telegram_id or not user_exists(db, referrer_id)):
        logger.info(f"Ignoring referrer {referrer_id} for {telegram_id}")
        referrer_id = None

    user = User(
        telegram_id=telegram_id,
        username=username,
        balance=0,
        total_ref_earnings=0,
        referrer_id=referrer_id,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"New user {telegram_id} (@{username}) referred by {referrer_id}")
    return user


def find_user(db: Session, query: str) -> Optional[User]:
    """Look a user up by Telegram id first, then by username (leading @ ignored)."""
    query = (query or "").strip()
    if not query:
        return None
    if query.lstrip("-").isdigit():
        user = get_user_by_telegram_id(db, int(query))
        if user:
            return user
    name = query.lstrip("@").lower()
    return db.query(User).filter(func.lower(User.username) == name).first()


def get_user_transactions(db: Session, user_id: int, limit: int = 10) -> List[Transaction]:
    return (
        db.query(Transaction)
        .filter(Transaction.user_id == user_id)
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .limit(limit)
        .all()
    )


def build_user_profile(db: Session, user: User) -> UserProfile:
    subs = (
        db.query(Subscription)
        .filter(Subscription.user_id == user.id)
        .order_by(Subscription.expires_at.desc())
        .all()
    )
    return UserProfile(
        id=user.id,
        telegram_id=user.telegram_id,
        username=user.username,
        balance=user.balance,
        referrer_id=user.referrer_id,
        created_at=user.created_at,
        subscriptions=[SubscriptionRecord.model_validate(s) for s in subs],
        recent_transactions=[TransactionRecord.model_validate(t) for t in get_user_transactions(db, user.id)],
    )


def get_all_user_telegram_ids(db: Session) -> List[int]:
    """Broadcast audience, in registration order."""
    return [row[0] for row in db.query(User.telegram_id).order_by(User.id).all()]
