"""Catalog, pricing and subscription lifecycle.

Paid flows debit first and provision second. If provisioning fails after the
debit, the amount is credited back as a ``refund`` before the error surfaces.
"""
import calendar
import logging
import time
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from vpnshop.core.exceptions import ProvisioningError, UpstreamUnavailable, UserNotFound
from vpnshop.models import User, Product, Subscription, TransactionType
from vpnshop.schemas.catalog import PricingPlan
from vpnshop.services.balance_service import credit_user, deduct_balance, to_money
from vpnshop.services.user_service import get_user_by_telegram_id
from vpnshop.services.vpn_provider import VPNProvider

logger = logging.getLogger(__name__)

# months -> discount percent
PLAN_DISCOUNTS = {1: 0, 3: 0, 6: 10, 12: 20}


def list_products(db: Session) -> List[Product]:
    return db.query(Product).order_by(Product.sort_order, Product.id).all()


def get_product(db: Session, product_id: int) -> Optional[Product]:
    return db.query(Product).filter(Product.id == product_id).first()


def calculate_price(base_price: Decimal | float, months: int) -> Decimal:
    discount = PLAN_DISCOUNTS.get(months, 0)
    return to_money(Decimal(str(base_price)) * months * (100 - discount) / 100)


def pricing_plans(base_price: Decimal | float) -> List[PricingPlan]:
    return [
        PricingPlan(months=m, price=calculate_price(base_price, m), discount_percent=d)
        for m, d in PLAN_DISCOUNTS.items()
    ]


def add_months(start: datetime, months: int) -> datetime:
    """Calendar month arithmetic; the day is clamped to the target month's length."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def list_user_subscriptions(db: Session, user: User) -> List[Subscription]:
    return (
        db.query(Subscription)
        .filter(Subscription.user_id == user.id)
        .order_by(Subscription.expires_at.desc())
        .all()
    )


def get_user_subscription(db: Session, user: User, subscription_id: int) -> Optional[Subscription]:
    return (
        db.query(Subscription)
        .filter(Subscription.id == subscription_id, Subscription.user_id == user.id)
        .first()
    )


def create_subscription(
    db: Session,
    user: User,
    product: Product,
    key_string: str,
    vpn_username: str,
    expires_at: datetime,
) -> Subscription:
    sub = Subscription(
        user_id=user.id,
        product_id=product.id,
        key_string=key_string,
        vpn_username=vpn_username,
        expires_at=expires_at,
        is_active=True,
    )
    db.add(sub)
    db.commit()
    db.refresh(sub)
    return sub


def _provision(provider: VPNProvider, username: str, tag: str, expires_at: datetime) -> str:
    try:
        return provider.create_user(username, tag, expires_at)
    except ProvisioningError as e:
        logger.error(f"Provisioning failed for {username}: {e}")
        raise UpstreamUnavailable(str(e)) from e


def gift_subscription(
    db: Session,
    provider: VPNProvider,
    telegram_id: int,
    product_id: int,
    days: int,
) -> Subscription:
    """Free key issued by staff. No balance movement."""
    user = get_user_by_telegram_id(db, telegram_id)
    if not user:
        raise UserNotFound(telegram_id)
    product = get_product(db, product_id)
    if not product:
        raise UpstreamUnavailable(f"product {product_id} missing")

    expires_at = datetime.utcnow() + timedelta(days=days)
    vpn_username = f"gift_tg_{telegram_id}_{int(time.time())}"
    key = _provision(provider, vpn_username, product.marzban_tag, expires_at)
    return create_subscription(db, user, product, key, vpn_username, expires_at)


def purchase_with_balance(
    db: Session,
    provider: VPNProvider,
    user: User,
    product: Product,
    months: int,
    price: Decimal | float,
) -> Subscription:
    """Buy a new subscription from balance. ``price`` is the final (discounted) amount."""
    price = to_money(price)
    deduct_balance(db, user, price)

    expires_at = add_months(datetime.utcnow(), months)
    vpn_username = f"tg_{user.telegram_id}_{int(time.time())}"
    try:
        key = _provision(provider, vpn_username, product.marzban_tag, expires_at)
    except UpstreamUnavailable:
        credit_user(db, user, price, TransactionType.REFUND)
        raise
    return create_subscription(db, user, product, key, vpn_username, expires_at)


def extend_with_balance(
    db: Session,
    provider: VPNProvider,
    user: User,
    subscription: Subscription,
    months: int,
    price: Decimal | float,
) -> Subscription:
    """Extend from max(current expiry, now) so unused time is kept."""
    price = to_money(price)
    deduct_balance(db, user, price)

    base = max(subscription.expires_at, datetime.utcnow())
    new_expiry = add_months(base, months)
    try:
        if subscription.vpn_username:
            provider.extend_user(subscription.vpn_username, new_expiry)
    except ProvisioningError as e:
        logger.error(f"Extend failed for subscription {subscription.id}: {e}")
        credit_user(db, user, price, TransactionType.REFUND)
        raise UpstreamUnavailable(str(e)) from e

    subscription.expires_at = new_expiry
    subscription.is_active = True
    db.commit()
    db.refresh(subscription)
    return subscription
