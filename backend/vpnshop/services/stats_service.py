"""Staff dashboard figures."""
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from vpnshop.models import User, Subscription, Transaction, TransactionType, TransactionStatus
from vpnshop.schemas.stats import AdminStats
from vpnshop.services.balance_service import to_money


def _revenue(db: Session, since: Optional[datetime] = None):
    # Purchases are stored negative, refunds positive: net revenue is the negated sum
    q = db.query(func.coalesce(func.sum(Transaction.amount), 0)).filter(
        Transaction.type.in_([TransactionType.PURCHASE, TransactionType.REFUND]),
        Transaction.status == TransactionStatus.COMPLETED,
    )
    if since is not None:
        q = q.filter(Transaction.created_at >= since)
    return to_money(-(q.scalar() or 0))


def get_admin_stats(db: Session, now: Optional[datetime] = None) -> AdminStats:
    now = now or datetime.utcnow()
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    month_start = today.replace(day=1)

    total_users = db.query(func.count(User.id)).scalar() or 0
    new_today = db.query(func.count(User.id)).filter(User.created_at >= today).scalar() or 0
    active_subs = (
        db.query(func.count(Subscription.id))
        .filter(Subscription.is_active.is_(True), Subscription.expires_at > now)
        .scalar()
        or 0
    )
    return AdminStats(
        total_users=total_users,
        new_users_today=new_today,
        active_subscriptions=active_subs,
        revenue_today=_revenue(db, today),
        revenue_month=_revenue(db, month_start),
        revenue_total=_revenue(db),
    )
