"""Referral program queries."""
import math
from typing import List

from sqlalchemy import func
from sqlalchemy.orm import Session

from vpnshop.models import User, Transaction, TransactionType, TransactionStatus
from vpnshop.schemas.stats import TopReferrer
from vpnshop.schemas.user import ReferralInfo, ReferralPage
from vpnshop.services.balance_service import to_money

PAGE_SIZE = 10


def get_referral_count(db: Session, telegram_id: int) -> int:
    return db.query(func.count(User.id)).filter(User.referrer_id == telegram_id).scalar() or 0


def get_referrals_page(db: Session, telegram_id: int, page: int = 0) -> ReferralPage:
    """Invited users, biggest spenders first, then newest."""
    total = get_referral_count(db, telegram_id)
    total_pages = max(1, math.ceil(total / PAGE_SIZE))
    page = min(max(page, 0), total_pages - 1)

    spent = (
        db.query(
            Transaction.user_id.label("user_id"),
            func.sum(Transaction.amount).label("purchases"),
        )
        .filter(
            Transaction.type == TransactionType.PURCHASE,
            Transaction.status == TransactionStatus.COMPLETED,
        )
        .group_by(Transaction.user_id)
        .subquery()
    )
    total_spent = -func.coalesce(spent.c.purchases, 0)
    rows = (
        db.query(User, total_spent.label("total_spent"))
        .outerjoin(spent, spent.c.user_id == User.id)
        .filter(User.referrer_id == telegram_id)
        .order_by(total_spent.desc(), User.created_at.desc(), User.id.desc())
        .offset(page * PAGE_SIZE)
        .limit(PAGE_SIZE)
        .all()
    )
    items = [
        ReferralInfo(
            telegram_id=user.telegram_id,
            username=user.username,
            joined_at=user.created_at,
            total_spent=to_money(amount or 0),
        )
        for user, amount in rows
    ]
    return ReferralPage(items=items, page=page, total_pages=total_pages, total_count=total)


def get_top_referrers(db: Session, limit: int = 10) -> List[TopReferrer]:
    invited = (
        db.query(User.referrer_id.label("referrer_id"), func.count(User.id).label("cnt"))
        .filter(User.referrer_id.isnot(None))
        .group_by(User.referrer_id)
        .subquery()
    )
    rows = (
        db.query(User, invited.c.cnt)
        .join(invited, invited.c.referrer_id == User.telegram_id)
        .order_by(invited.c.cnt.desc(), User.total_ref_earnings.desc())
        .limit(limit)
        .all()
    )
    return [
        TopReferrer(
            telegram_id=user.telegram_id,
            username=user.username,
            referral_count=cnt,
            total_earnings=to_money(user.total_ref_earnings or 0),
        )
        for user, cnt in rows
    ]
