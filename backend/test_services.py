"""Storage services: pricing, purchases with compensation, promo codes, referrals, stats."""
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy.pool import NullPool

from vpnshop.core.exceptions import (
    InsufficientBalance,
    PromoRejected,
    ProvisioningError,
    UpstreamUnavailable,
    UserInputInvalid,
    UserNotFound,
)
from vpnshop.db.session import build_engine
from vpnshop.models import Subscription, Transaction, TransactionType
from vpnshop.services import (
    balance_service,
    promo_service,
    referral_service,
    stats_service,
    subscription_service,
    user_service,
)
from vpnshop.services.vpn_provider import MockVPNProvider


class BrokenProvider(MockVPNProvider):
    def create_user(self, username, tag, expires_at):
        raise ProvisioningError("panel unreachable")


def funded_user(db, telegram_id=100, amount=1000, username=None):
    user, _ = user_service.get_or_create_user(db, telegram_id, username)
    balance_service.credit_user(db, user, amount, TransactionType.TOP_UP)
    return user


def test_plan_prices_use_month_discounts():
    assert subscription_service.calculate_price(450, 1) == Decimal("450.00")
    assert subscription_service.calculate_price(450, 3) == Decimal("1350.00")
    assert subscription_service.calculate_price(450, 6) == Decimal("2430.00")
    assert subscription_service.calculate_price(450, 12) == Decimal("4320.00")
    assert [p.months for p in subscription_service.pricing_plans(450)] == [1, 3, 6, 12]


def test_add_months_clamps_day():
    assert subscription_service.add_months(datetime(2026, 1, 31), 1) == datetime(2026, 2, 28)
    assert subscription_service.add_months(datetime(2026, 11, 15), 3) == datetime(2027, 2, 15)


def test_purchase_debits_and_provisions(db):
    user = funded_user(db)
    product = subscription_service.list_products(db)[0]
    sub = subscription_service.purchase_with_balance(db, MockVPNProvider(), user, product, 1, 450)

    assert sub.key_string.startswith("vless://")
    assert user.balance == Decimal("550.00")


def test_failed_provisioning_refunds_balance(db):
    user = funded_user(db)
    product = subscription_service.list_products(db)[0]

    with pytest.raises(UpstreamUnavailable):
        subscription_service.purchase_with_balance(db, BrokenProvider(), user, product, 1, 450)

    db.refresh(user)
    assert user.balance == Decimal("1000.00"), "Compensating credit restores the balance"
    types = [t.type for t in db.query(Transaction).filter(Transaction.user_id == user.id).all()]
    assert TransactionType.PURCHASE in types and TransactionType.REFUND in types
    assert db.query(Subscription).count() == 0


def test_insufficient_balance_reports_shortfall(db):
    user = funded_user(db, amount=100)
    product = subscription_service.list_products(db)[0]
    with pytest.raises(InsufficientBalance) as exc:
        subscription_service.purchase_with_balance(db, MockVPNProvider(), user, product, 1, 450)
    assert exc.value.shortfall == pytest.approx(350)


def test_extend_keeps_remaining_time(db):
    user = funded_user(db, amount=2000)
    product = subscription_service.list_products(db)[0]
    sub = subscription_service.purchase_with_balance(db, MockVPNProvider(), user, product, 1, 450)
    before = sub.expires_at

    sub = subscription_service.extend_with_balance(db, MockVPNProvider(), user, sub, 1, 450)
    assert sub.expires_at == subscription_service.add_months(before, 1)


def test_gift_requires_existing_user(db):
    product = subscription_service.list_products(db)[0]
    with pytest.raises(UserNotFound):
        subscription_service.gift_subscription(db, MockVPNProvider(), 999, product.id, 30)


def test_promo_rules(db):
    promo_service.create_promo_code(db, "summer", 100, 2)
    assert promo_service.promo_code_exists(db, "SUMMER")

    u1, _ = user_service.get_or_create_user(db, 1)
    u2, _ = user_service.get_or_create_user(db, 2)
    u3, _ = user_service.get_or_create_user(db, 3)

    promo_service.activate_promo_for_user(db, u1, "Summer")
    assert u1.balance == Decimal("100.00")

    with pytest.raises(PromoRejected) as exc:
        promo_service.activate_promo_for_user(db, u1, "SUMMER")
    assert "уже" in exc.value.reason

    promo_service.activate_promo_for_user(db, u2, "SUMMER")
    with pytest.raises(PromoRejected) as exc:
        promo_service.activate_promo_for_user(db, u3, "SUMMER")
    assert "исчерпан" in exc.value.reason

    with pytest.raises(PromoRejected):
        promo_service.activate_promo_for_user(db, u3, "WINTER")

    stats = promo_service.promo_stats(db)
    assert stats[0].activations_used == 2
    assert stats[0].total_bonus_paid == Decimal("200.00")


def test_promo_code_validation(db):
    with pytest.raises(UserInputInvalid):
        promo_service.create_promo_code(db, "ab", 100, 1)
    promo_service.create_promo_code(db, "GIFT", 50, 1)
    with pytest.raises(UserInputInvalid):
        promo_service.create_promo_code(db, "gift", 50, 1)
    assert promo_service.delete_promo_code(db, "gift") is True
    assert promo_service.delete_promo_code(db, "gift") is False


def test_referral_bonus_is_quarter_of_top_up(db):
    referrer, _ = user_service.get_or_create_user(db, 10, "boss")
    invited = user_service.create_user_with_referrer(db, 11, "newbie", 10)

    result = balance_service.top_up_with_referral(db, invited, 1000)
    assert result is not None
    paid_to, bonus = result
    assert paid_to.telegram_id == 10
    assert bonus == Decimal("250.00")

    db.refresh(referrer)
    assert referrer.balance == Decimal("250.00")
    assert referrer.total_ref_earnings == Decimal("250.00")

    top = referral_service.get_top_referrers(db)
    assert top[0].telegram_id == 10 and top[0].referral_count == 1


def test_self_and_unknown_referrers_ignored(db):
    own = user_service.create_user_with_referrer(db, 20, None, 20)
    ghost = user_service.create_user_with_referrer(db, 21, None, 9999)
    assert own.referrer_id is None
    assert ghost.referrer_id is None


def test_referral_page_sorted_by_spend(db):
    user_service.get_or_create_user(db, 30)
    light = user_service.create_user_with_referrer(db, 31, "light", 30)
    heavy = user_service.create_user_with_referrer(db, 32, "heavy", 30)
    product = subscription_service.list_products(db)[0]
    for user, months, price in ((light, 1, 450), (heavy, 3, 1350)):
        balance_service.credit_user(db, user, price, TransactionType.TOP_UP)
        subscription_service.purchase_with_balance(db, MockVPNProvider(), user, product, months, price)

    page = referral_service.get_referrals_page(db, 30, 0)
    assert [i.username for i in page.items] == ["heavy", "light"]
    assert page.items[0].total_spent == Decimal("1350.00")


def test_find_user_by_id_or_username(db):
    user_service.get_or_create_user(db, 555000, "Alice")
    assert user_service.find_user(db, "555000").username == "Alice"
    assert user_service.find_user(db, "@alice").telegram_id == 555000
    assert user_service.find_user(db, "nobody") is None


def test_add_user_balance_unknown_user(db):
    with pytest.raises(UserNotFound):
        balance_service.add_user_balance(db, 404, 100)


def test_revenue_counts_purchases_minus_refunds(db):
    user = funded_user(db, amount=2000)
    product = subscription_service.list_products(db)[0]
    subscription_service.purchase_with_balance(db, MockVPNProvider(), user, product, 1, 450)
    with pytest.raises(UpstreamUnavailable):
        subscription_service.purchase_with_balance(db, BrokenProvider(), user, product, 1, 450)

    stats = stats_service.get_admin_stats(db)
    assert stats.revenue_total == Decimal("450.00")
    assert stats.total_users == 1
    assert stats.active_subscriptions == 1


def test_sqlite_engine_opens_a_connection_per_session():
    engine = build_engine("sqlite:///:memory:")
    assert isinstance(engine.pool, NullPool)
    engine.dispose()
