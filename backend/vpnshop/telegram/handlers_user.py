"""
Storefront handlers: menu, tariffs, purchase, subscriptions, balance,
promo codes and the referral program.

Command handlers take (update, context); button handlers additionally take
the payload fields decoded from the callback data.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import List

from telegram import Update
from telegram.constants import ParseMode
from telegram.error import TelegramError
from telegram.ext import ContextTypes
from telegram.helpers import escape_markdown

from vpnshop.core.exceptions import InsufficientBalance, PromoRejected, UpstreamUnavailable
from vpnshop.flows.conversation import FlowKind
from vpnshop.schemas.catalog import PricingPlan
from vpnshop.services import promo_service, referral_service, subscription_service, user_service
from vpnshop.services.balance_service import REFERRAL_PERCENT
from vpnshop.telegram import keyboards
from vpnshop.telegram.utils import actor_of, get_runtime, parse_int, respond, session_scope

logger = logging.getLogger(__name__)

TOPUP_AMOUNTS = [450, 1350, 2430, 4320]
MEDALS = ["🥇", "🥈", "🥉"]


def _md(text) -> str:
    return escape_markdown(str(text), version=1)


def _int_pair(args):
    if not args or len(args) < 2:
        return None, None
    return parse_int(args[0]), parse_int(args[1])


def _sale_banner(rt) -> str:
    percent, ends_at = rt.flash_sale.snapshot()
    if not percent:
        return ""
    return f"🔥 *Распродажа! Скидка -{percent}%* до {ends_at:%d.%m %H:%M}\n\n"


def _plans_with_sale(rt, base_price) -> List[PricingPlan]:
    return [
        PricingPlan(months=p.months, price=rt.flash_sale.apply(p.price), discount_percent=p.discount_percent)
        for p in subscription_service.pricing_plans(base_price)
    ]


# ============================================================================
# MENU
# ============================================================================

async def handle_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    rt = get_runtime(context)
    actor_id, username = actor_of(update)
    referrer_id = parse_int(context.args[0]) if context.args else None

    with session_scope(rt) as db:
        if user_service.user_exists(db, actor_id):
            user, _ = user_service.get_or_create_user(db, actor_id, username)
        else:
            user = user_service.create_user_with_referrer(db, actor_id, username, referrer_id)
            if user.referrer_id:
                try:
                    await context.bot.send_message(
                        chat_id=user.referrer_id,
                        text="🎉 По вашей ссылке зарегистрировался новый пользователь!",
                    )
                except TelegramError as e:
                    logger.debug(f"Referrer notice failed: {e}")
        balance = user.balance

    rt.registry.exit(FlowKind.PROMO_ENTRY, actor_id)
    await update.effective_message.reply_text(
        f"👋 Добро пожаловать в *X-RAY VPN*!\n\n"
        f"{_sale_banner(rt)}"
        f"⚡ Быстрый и стабильный VPN без ограничений.\n"
        f"💰 Ваш баланс: *{balance:.0f} ₽*\n\n"
        f"Выберите действие:",
        parse_mode=ParseMode.MARKDOWN,
        reply_markup=keyboards.main_menu_keyboard(rt.is_admin(actor_id)),
    )


async def show_menu(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    rt.registry.exit(FlowKind.PROMO_ENTRY, actor_id)
    await respond(
        update,
        f"🏠 *Главное меню*\n\n{_sale_banner(rt)}Выберите действие:",
        keyboards.main_menu_keyboard(rt.is_admin(actor_id)),
    )


async def handle_cancel(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    rt.registry.exit_all(actor_id)
    await update.effective_message.reply_text(
        "✅ Действие отменено.", reply_markup=keyboards.back_to_menu_keyboard(),
    )


async def delete_message(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    try:
        await update.callback_query.message.delete()
    except TelegramError as e:
        logger.debug(f"Delete failed: {e}")


# ============================================================================
# CATALOG & PURCHASE
# ============================================================================

async def show_tariffs(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    with session_scope(rt) as db:
        products = subscription_service.list_products(db)
        lines = [f"🚀 *Тарифы*\n\n{_sale_banner(rt)}"]
        for p in products:
            lines.append(
                f"{p.country_flag or ''} *{_md(p.name)}* - от {rt.flash_sale.apply(p.base_price):.0f} ₽/мес\n"
                f"{_md(p.description or '')}\n"
            )
        markup = keyboards.products_keyboard(products)
    await respond(update, "\n".join(lines), markup)


async def show_product(update: Update, context: ContextTypes.DEFAULT_TYPE, args) -> None:
    rt = get_runtime(context)
    product_id = parse_int(args[0]) if args else None
    with session_scope(rt) as db:
        product = subscription_service.get_product(db, product_id) if product_id else None
        if not product:
            await respond(update, "❌ Тариф не найден.", keyboards.back_to_menu_keyboard())
            return
        plans = _plans_with_sale(rt, product.base_price)
        text = f"{product.country_flag or ''} *{_md(product.name)}*\n\n{_sale_banner(rt)}Выберите срок подписки:"
        markup = keyboards.plans_keyboard(product.id, plans)
    await respond(update, text, markup)


async def select_plan(update: Update, context: ContextTypes.DEFAULT_TYPE, args) -> None:
    rt = get_runtime(context)
    actor_id, username = actor_of(update)
    product_id, months = _int_pair(args)
    if not product_id or months not in subscription_service.PLAN_DISCOUNTS:
        await respond(update, "❌ Неверный тариф.", keyboards.back_to_menu_keyboard())
        return

    with session_scope(rt) as db:
        product = subscription_service.get_product(db, product_id)
        if not product:
            await respond(update, "❌ Тариф не найден.", keyboards.back_to_menu_keyboard())
            return
        user, _ = user_service.get_or_create_user(db, actor_id, username)
        base = subscription_service.calculate_price(product.base_price, months)
        price = rt.flash_sale.apply(base)
        price_line = f"💵 Стоимость: *{price:.0f} ₽*"
        if price != base:
            price_line = f"💵 Стоимость: {base:.0f} ₽ → *{price:.0f} ₽* 🔥"
        text = (
            f"🧾 *Счёт*\n\n"
            f"📦 Тариф: {_md(product.name)}\n"
            f"📅 Срок: {months} мес\n"
            f"{price_line}\n\n"
            f"💰 Ваш баланс: {user.balance:.0f} ₽"
        )
    await respond(update, text, keyboards.invoice_keyboard(product_id, months))


async def pay_with_balance(update: Update, context: ContextTypes.DEFAULT_TYPE, args) -> None:
    rt = get_runtime(context)
    actor_id, username = actor_of(update)
    product_id, months = _int_pair(args)
    if not product_id or months not in subscription_service.PLAN_DISCOUNTS:
        await respond(update, "❌ Неверный тариф.", keyboards.back_to_menu_keyboard())
        return

    with session_scope(rt) as db:
        product = subscription_service.get_product(db, product_id)
        if not product:
            await respond(update, "❌ Тариф не найден.", keyboards.back_to_menu_keyboard())
            return
        user, _ = user_service.get_or_create_user(db, actor_id, username)
        price = rt.flash_sale.apply(subscription_service.calculate_price(product.base_price, months))
        try:
            sub = subscription_service.purchase_with_balance(db, rt.provider, user, product, months, price)
        except InsufficientBalance as e:
            await respond(
                update,
                f"❌ *Недостаточно средств*\n\nНе хватает: *{e.shortfall:.0f} ₽*",
                keyboards.balance_keyboard(TOPUP_AMOUNTS),
            )
            return
        except UpstreamUnavailable:
            await respond(
                update,
                "❌ Ошибка создания подписки. Средства возвращены на баланс.",
                keyboards.back_to_menu_keyboard(),
            )
            return
        text = (
            f"✅ *Подписка оформлена!*\n\n"
            f"📦 {_md(product.name)} на {months} мес\n"
            f"📅 Действует до: {sub.expires_at:%d.%m.%Y}\n\n"
            f"🔑 Ваш ключ:\n`{sub.key_string}`\n\n"
            f"Скопируйте ключ и добавьте его в приложение."
        )
    logger.info(f"User {actor_id} bought {product_id} for {months}m at {price}")
    await respond(update, text, keyboards.back_to_menu_keyboard())


# ============================================================================
# SUBSCRIPTIONS
# ============================================================================

async def show_subscriptions(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    actor_id, username = actor_of(update)
    with session_scope(rt) as db:
        user, _ = user_service.get_or_create_user(db, actor_id, username)
        subs = subscription_service.list_user_subscriptions(db, user)
        if not subs:
            await respond(
                update, "🔑 У вас пока нет подписок.", keyboards.subscriptions_keyboard([]),
            )
            return
        now = datetime.utcnow()
        lines = ["🔑 *Мои подписки*\n"]
        for s in subs:
            lines.append(
                f"*#{s.id}* {_md(s.product.name if s.product else '')} - {_status(s, now)}\n"
                f"📅 До: {s.expires_at:%d.%m.%Y}\n"
            )
        markup = keyboards.subscriptions_keyboard(subs)
    await respond(update, "\n".join(lines), markup)


def _status(sub, now: datetime) -> str:
    return "🟢 активна" if sub.is_active and sub.expires_at > now else "🔴 истекла"


async def show_subscription(update: Update, context: ContextTypes.DEFAULT_TYPE, args) -> None:
    rt = get_runtime(context)
    actor_id, username = actor_of(update)
    sub_id = parse_int(args[0]) if args else None
    with session_scope(rt) as db:
        user, _ = user_service.get_or_create_user(db, actor_id, username)
        sub = subscription_service.get_user_subscription(db, user, sub_id) if sub_id else None
        if not sub:
            await respond(update, "❌ Подписка не найдена.", keyboards.back_to_menu_keyboard())
            return
        text = (
            f"📦 *Подписка #{sub.id}* {_md(sub.product.name if sub.product else '')}\n\n"
            f"{_status(sub, datetime.utcnow())}\n"
            f"📅 До: *{sub.expires_at:%d.%m.%Y %H:%M}*\n\n"
            f"🔑 Ключ: нажмите кнопку ниже"
        )
    await respond(update, text, keyboards.subscription_detail_keyboard(sub_id))


async def copy_key(update: Update, context: ContextTypes.DEFAULT_TYPE, args) -> None:
    """Send the key alone in a message so it can be copied with one tap."""
    rt = get_runtime(context)
    query = update.callback_query
    actor_id, username = actor_of(update)
    sub_id = parse_int(args[0]) if args else None
    with session_scope(rt) as db:
        user, _ = user_service.get_or_create_user(db, actor_id, username)
        sub = subscription_service.get_user_subscription(db, user, sub_id) if sub_id else None
        key = sub.key_string if sub else None
    if key is None:
        await query.answer("❌ Подписка не найдена")
        return
    await query.message.reply_text(f"`{key}`", parse_mode=ParseMode.MARKDOWN)
    await query.answer("✅ Ключ отправлен")


async def extend_menu(update: Update, context: ContextTypes.DEFAULT_TYPE, args) -> None:
    rt = get_runtime(context)
    actor_id, username = actor_of(update)
    sub_id = parse_int(args[0]) if args else None
    with session_scope(rt) as db:
        user, _ = user_service.get_or_create_user(db, actor_id, username)
        sub = subscription_service.get_user_subscription(db, user, sub_id) if sub_id else None
        if not sub:
            await respond(update, "❌ Подписка не найдена.", keyboards.back_to_menu_keyboard())
            return
        plans = _plans_with_sale(rt, sub.product.base_price)
        text = (
            f"🔄 *Продление подписки #{sub.id}*\n\n"
            f"📅 Сейчас действует до: {sub.expires_at:%d.%m.%Y}\n"
            f"{_sale_banner(rt)}Выберите срок продления:"
        )
    await respond(update, text, keyboards.plans_keyboard(sub_id, plans, action="extend_pay"))


async def extend_pay(update: Update, context: ContextTypes.DEFAULT_TYPE, args) -> None:
    rt = get_runtime(context)
    actor_id, username = actor_of(update)
    sub_id, months = _int_pair(args)
    if not sub_id or months not in subscription_service.PLAN_DISCOUNTS:
        await respond(update, "❌ Неверный срок.", keyboards.back_to_menu_keyboard())
        return

    with session_scope(rt) as db:
        user, _ = user_service.get_or_create_user(db, actor_id, username)
        sub = subscription_service.get_user_subscription(db, user, sub_id)
        if not sub:
            await respond(update, "❌ Подписка не найдена.", keyboards.back_to_menu_keyboard())
            return
        price = rt.flash_sale.apply(subscription_service.calculate_price(sub.product.base_price, months))
        try:
            sub = subscription_service.extend_with_balance(db, rt.provider, user, sub, months, price)
        except InsufficientBalance as e:
            await respond(
                update,
                f"❌ *Недостаточно средств*\n\nНе хватает: *{e.shortfall:.0f} ₽*",
                keyboards.balance_keyboard(TOPUP_AMOUNTS),
            )
            return
        except UpstreamUnavailable:
            await respond(
                update,
                "❌ Ошибка продления подписки. Средства возвращены на баланс.",
                keyboards.back_to_menu_keyboard(),
            )
            return
        text = f"✅ *Подписка #{sub.id} продлена!*\n\n📅 Действует до: {sub.expires_at:%d.%m.%Y}"
    await respond(update, text, keyboards.back_to_menu_keyboard())


# ============================================================================
# BALANCE
# ============================================================================

async def show_balance(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    actor_id, username = actor_of(update)
    with session_scope(rt) as db:
        user, _ = user_service.get_or_create_user(db, actor_id, username)
        balance = user.balance
    await respond(
        update,
        f"💰 *Ваш баланс:* {balance:.0f} ₽\n\nВыберите сумму пополнения:",
        keyboards.balance_keyboard(TOPUP_AMOUNTS),
    )


async def topup_instructions(update: Update, context: ContextTypes.DEFAULT_TYPE, args) -> None:
    amount = parse_int(args[0]) if args else None
    if amount not in TOPUP_AMOUNTS:
        amount = TOPUP_AMOUNTS[0]
    await respond(
        update,
        f"💳 *Пополнение на {amount} ₽*\n\n"
        f"Для пополнения напишите в поддержку сумму и удобный способ оплаты.\n"
        f"После подтверждения оплаты баланс будет пополнен.",
        keyboards.topup_keyboard(),
    )


# ============================================================================
# PROMO CODES
# ============================================================================

async def promo_enter(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    rt.registry.enter(FlowKind.PROMO_ENTRY, actor_id, True)
    await respond(update, "🎁 Введите промокод:", keyboards.back_to_menu_keyboard())


async def handle_promo_input(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Text received while the user is entering a promo code."""
    rt = get_runtime(context)
    actor_id, username = actor_of(update)
    code = (update.effective_message.text or "").strip()

    if len(code) < promo_service.CODE_MIN_LEN:
        await update.effective_message.reply_text(
            "❌ Слишком короткий промокод. Введите промокод ещё раз:",
            reply_markup=keyboards.back_to_menu_keyboard(),
        )
        return

    with session_scope(rt) as db:
        user, _ = user_service.get_or_create_user(db, actor_id, username)
        try:
            promo = promo_service.activate_promo_for_user(db, user, code)
        except PromoRejected as e:
            rt.registry.exit(FlowKind.PROMO_ENTRY, actor_id)
            await update.effective_message.reply_text(
                f"❌ Ошибка: {e.reason}", reply_markup=keyboards.try_again_keyboard("promo_enter"),
            )
            return
        amount, balance = promo.amount, user.balance

    rt.registry.exit(FlowKind.PROMO_ENTRY, actor_id)
    await update.effective_message.reply_text(
        f"✅ Промокод активирован!\n\n💰 Начислено: *{amount:.0f} ₽*\n💳 Баланс: *{balance:.0f} ₽*",
        parse_mode=ParseMode.MARKDOWN,
        reply_markup=keyboards.back_to_menu_keyboard(),
    )


# ============================================================================
# REFERRALS
# ============================================================================

async def show_referral(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    actor_id, username = actor_of(update)
    with session_scope(rt) as db:
        user, _ = user_service.get_or_create_user(db, actor_id, username)
        count = referral_service.get_referral_count(db, actor_id)
        earnings = user.total_ref_earnings or Decimal("0")
    link = f"https://t.me/{context.bot.username}?start={actor_id}"
    await respond(
        update,
        f"👥 *Реферальная программа*\n\n"
        f"Приглашайте друзей и получайте *{REFERRAL_PERCENT:.0f}%* с каждого их пополнения!\n\n"
        f"🔗 Ваша ссылка:\n`{link}`\n\n"
        f"👤 Приглашено: *{count}*\n"
        f"💰 Заработано: *{earnings:.0f} ₽*",
        keyboards.referral_keyboard(),
    )


async def show_referral_list(update: Update, context: ContextTypes.DEFAULT_TYPE, args) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    page = parse_int(args[0]) if args else 0
    with session_scope(rt) as db:
        result = referral_service.get_referrals_page(db, actor_id, page or 0)

    if not result.items:
        await respond(update, "👥 У вас пока нет рефералов.", keyboards.referral_list_keyboard(0, 1))
        return

    lines = [f"👥 *Ваши рефералы* ({result.total_count})\n"]
    offset = result.page * referral_service.PAGE_SIZE
    for i, ref in enumerate(result.items):
        position = offset + i
        mark = MEDALS[position] if position < len(MEDALS) else f"{position + 1}."
        name = _md(f"@{ref.username}") if ref.username else str(ref.telegram_id)
        lines.append(f"{mark} {name} - {ref.total_spent:.0f} ₽")
    lines.append(f"\nСтраница {result.page + 1}/{result.total_pages}")
    await respond(update, "\n".join(lines), keyboards.referral_list_keyboard(result.page, result.total_pages))


# ============================================================================
# INSTRUCTIONS & HELP
# ============================================================================

HAPP_ANDROID_URL = "https://play.google.com/store/apps/details?id=com.happproxy"
HAPP_WINDOWS_URL = "https://github.com/Happ-proxy/happ-desktop/releases/latest/download/setup-Happ.x64.exe"
HAPP_APPLE_URL = "https://apps.apple.com/us/app/happ-proxy-utility/id6504287215"

# platform key -> (button title, heading, download url)
PLATFORMS = {
    "android": ("🤖 Android", "🤖 *Инструкция для Android:*", HAPP_ANDROID_URL),
    "windows": ("💻 Windows", "💻 *Инструкция для Windows:*", HAPP_WINDOWS_URL),
    "ios": ("🍏 iOS", "🍏 *Инструкция для iOS (iPhone / iPad):*", HAPP_APPLE_URL),
    "mac": ("🖥 Mac", "🖥 *Инструкция для Mac:*", HAPP_APPLE_URL),
}

FAQ_TEXT = (
    "⁉️ *Часто задаваемые вопросы*\n\n"
    "🛠 *Что делать, если VPN не работает?*\n"
    "Перезагрузите устройство или переподключитесь в приложении. "
    "Если не помогло, напишите в поддержку.\n\n"
    "📱 *Сколько устройств можно подключить?*\n"
    "Один ключ работает одновременно на *3 устройствах*.\n\n"
    "💳 *Как оплатить?*\n"
    "Банковские карты РФ, СБП и криптовалюта. Пополните баланс и оплачивайте подписки с него.\n\n"
    "🎁 *Как пользоваться бесплатно?*\n"
    f"Вы получаете *{REFERRAL_PERCENT:.0f}%* с каждого пополнения приглашённого друга. "
    "Пригласите 4 друзей, и их бонусы покроют вашу подписку."
)


async def show_instruction(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    await respond(
        update,
        "📚 *Настройка подключения*\n\n"
        "Рекомендуем приложение *Happ*, оно добавляет ключ в один клик.\n\n"
        "1. Установите Happ\n"
        "2. Скопируйте ключ (`vless://...`) в разделе «Мои подписки»\n"
        "3. Откройте Happ, он сам предложит добавить ключ\n"
        "4. Нажмите *Подключиться*\n\n"
        "👇 *Выберите устройство:*",
        keyboards.instruction_keyboard([(key, title) for key, (title, _, _) in PLATFORMS.items()]),
    )


async def show_platform_instruction(update: Update, context: ContextTypes.DEFAULT_TYPE, args) -> None:
    platform = PLATFORMS.get(args[0]) if args else None
    if platform is None:
        await show_instruction(update, context)
        return
    _, heading, url = platform
    await respond(
        update,
        f"{heading}\n\n"
        f"1. Скачайте приложение [Happ]({url}).\n"
        "2. Скопируйте ключ подписки в буфер обмена.\n"
        "3. Откройте Happ, приложение предложит добавить ключ из буфера.\n"
        "4. Нажмите *Подключиться*, готово!",
        keyboards.platform_keyboard(url),
    )


async def show_faq(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    await respond(update, FAQ_TEXT, keyboards.faq_keyboard())


async def show_privacy(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    """`/privacy` and the button in the support hub."""
    await respond(
        update,
        "📄 *Пользовательское соглашение*\n\nПубличная оферта на заключение лицензионного договора.",
        keyboards.privacy_keyboard(),
    )
