"""
Staff handlers: admin panel, statistics, user lookup, manual top-ups, key
issue/gift wizards, promo code management and the broadcast wizard.

Every entry point is wrapped in ``admin_only``. Wizard steps read and write
their session through the ConversationRegistry. Invalid step input keeps the
session and repeats the prompt. A business rejection (unknown user, missing
code) ends the session and offers a retry button.
"""
import logging
from typing import Optional

from telegram import Update
from telegram.constants import ParseMode
from telegram.error import TelegramError
from telegram.ext import ContextTypes
from telegram.helpers import escape_markdown

from vpnshop.core.audit import AuditLog
from vpnshop.core.exceptions import (
    AlreadyRunning,
    NotInFlow,
    UpstreamUnavailable,
    UserInputInvalid,
    UserNotFound,
)
from vpnshop.flows.broadcast import BroadcastPayload, BroadcastReport, send_payload
from vpnshop.flows.conversation import BroadcastDraft, BroadcastStage, FlowKind, IssueDraft, PromoDraft
from vpnshop.models import TransactionType
from vpnshop.services import (
    balance_service,
    promo_service,
    referral_service,
    stats_service,
    subscription_service,
    user_service,
)
from vpnshop.telegram import keyboards
from vpnshop.telegram.utils import (
    actor_of,
    admin_only,
    get_runtime,
    parse_int,
    parse_positive_number,
    respond,
    session_scope,
)

logger = logging.getLogger(__name__)

ADDBAL_AMOUNTS = [100, 450, 1000]
GIFT_DAYS = [7, 14, 30, 90]
ISSUE_DAYS = [30, 90, 180, 365]

STALE_SESSION_TEXT = "⚠️ Сессия устарела. Начните заново."
BROADCAST_BUSY_TEXT = "❌ Рассылка уже выполняется. Дождитесь завершения."


def _md(text) -> str:
    return escape_markdown(str(text), version=1)


async def notify_user(bot, chat_id: int, text: str, parse_mode: Optional[str] = ParseMode.MARKDOWN, reply_markup=None) -> bool:
    try:
        await bot.send_message(chat_id=chat_id, text=text, parse_mode=parse_mode, reply_markup=reply_markup)
        return True
    except TelegramError as e:
        logger.info(f"[Telegram] Notice to {chat_id} failed: {e}")
        return False


# ============================================================================
# PANEL & STATS
# ============================================================================

@admin_only
async def admin_panel(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    with session_scope(rt) as db:
        stats = stats_service.get_admin_stats(db)

    percent, ends_at = rt.flash_sale.snapshot()
    sale = f"🔥 Распродажа: *-{percent}%* до {ends_at:%d.%m %H:%M}" if percent else "🔥 Распродажа: выключена"
    busy = "\n📢 Идёт рассылка..." if rt.coordinator.is_running else ""
    await respond(
        update,
        f"⚙️ *Админ-панель*\n\n"
        f"👥 Новых сегодня: *{stats.new_users_today}*\n"
        f"💵 Выручка сегодня: *{stats.revenue_today:.0f} ₽*\n"
        f"🎫 Открытых тикетов: *{len(rt.tickets)}* (ждут: {rt.tickets.waiting_count()})\n"
        f"{sale}{busy}",
        keyboards.admin_panel_keyboard(bool(percent)),
    )


@admin_only
async def admin_stats(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    with session_scope(rt) as db:
        stats = stats_service.get_admin_stats(db)
    await respond(
        update,
        f"📊 *Статистика*\n\n"
        f"👥 Всего пользователей: *{stats.total_users}*\n"
        f"🆕 Новых сегодня: *{stats.new_users_today}*\n"
        f"🔑 Активных подписок: *{stats.active_subscriptions}*\n\n"
        f"💵 Выручка сегодня: *{stats.revenue_today:.0f} ₽*\n"
        f"📅 За месяц: *{stats.revenue_month:.0f} ₽*\n"
        f"💰 За всё время: *{stats.revenue_total:.0f} ₽*",
        keyboards.back_to_admin_keyboard(),
    )


@admin_only
async def admin_top_referrers(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    with session_scope(rt) as db:
        top = referral_service.get_top_referrers(db, limit=10)
    if not top:
        await respond(update, "🏆 Рефереров пока нет.", keyboards.back_to_admin_keyboard())
        return
    lines = ["🏆 *Топ рефереров*\n"]
    for i, r in enumerate(top, 1):
        name = _md(f"@{r.username}") if r.username else str(r.telegram_id)
        lines.append(f"{i}. {name} - {r.referral_count} реф., {r.total_earnings:.0f} ₽")
    await respond(update, "\n".join(lines), keyboards.back_to_admin_keyboard())


@admin_only
async def admin_promo_stats(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    with session_scope(rt) as db:
        stats = promo_service.promo_stats(db)
    if not stats:
        await respond(update, "📈 Активных промокодов нет.", keyboards.back_to_admin_keyboard())
        return
    lines = ["📈 *Статистика промокодов*\n"]
    for s in stats:
        lines.append(
            f"`{s.code}` - {s.activations_used}/{s.max_activations}, "
            f"{s.amount:.0f} ₽, выплачено {s.total_bonus_paid:.0f} ₽"
        )
    await respond(update, "\n".join(lines), keyboards.back_to_admin_keyboard())


@admin_only
async def admin_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await update.effective_message.reply_text(
        "🛠 *Команды администратора*\n\n"
        "/admin - панель управления\n"
        "/stats - статистика\n"
        "/find <id|@username> - найти пользователя\n"
        "/addbal <id> <сумма> - пополнить баланс\n"
        "/gift <id> <product_id> <дни> - подарить подписку\n"
        "/issue - выдать ключ\n"
        "/broadcast - рассылка\n"
        "/flashsale [процент часы] - распродажа\n"
        "/stopsale - остановить распродажу\n"
        "/tickets - открытые обращения\n"
        "/watchdog\\_test - тестовый алерт нагрузки\n"
        "/init\\_dashboard - панель тикетов (в группе поддержки)\n"
        "/cancel - отменить текущее действие",
        parse_mode=ParseMode.MARKDOWN,
    )


@admin_only
async def admin_cancel(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    for kind in (
        FlowKind.BROADCAST, FlowKind.FLASH_SALE, FlowKind.PROMO_CREATE, FlowKind.PROMO_DELETE,
        FlowKind.KEY_ISSUE, FlowKind.BALANCE_TOPUP, FlowKind.USER_SEARCH, FlowKind.SUPPORT_REPLY,
    ):
        rt.registry.exit(kind, actor_id)
    await respond(update, "❌ Действие отменено.", keyboards.back_to_admin_keyboard())


@admin_only
async def watchdog_test(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    rt = get_runtime(context)
    if rt.watchdog is None:
        await update.effective_message.reply_text("⚠️ Watchdog не запущен.")
        return
    await rt.watchdog.send_test_alert()


# ============================================================================
# USER LOOKUP
# ============================================================================

def _render_profile(profile) -> str:
    lines = [
        "👤 *Профиль пользователя*\n",
        f"🆔 ID: `{profile.telegram_id}`",
        f"👤 Username: {_md('@' + profile.username) if profile.username else 'нет'}",
        f"💰 Баланс: *{profile.balance:.0f} ₽*",
        f"👥 Реферер: {profile.referrer_id or 'нет'}",
    ]
    if profile.created_at:
        lines.append(f"📅 Регистрация: {profile.created_at:%d.%m.%Y}")
    lines.append(f"\n🔑 *Подписки* ({len(profile.subscriptions)}):")
    for s in profile.subscriptions:
        status = "🟢" if s.is_active else "🔴"
        lines.append(f"{status} #{s.id} до {s.expires_at:%d.%m.%Y}")
    if profile.recent_transactions:
        lines.append("\n💳 *Последние операции:*")
        for t in profile.recent_transactions[:5]:
            lines.append(f"{t.amount:+.0f} ₽ - {_md(t.type)}")
    return "\n".join(lines)


async def _show_user(update: Update, rt, query_text: str) -> bool:
    with session_scope(rt) as db:
        user = user_service.find_user(db, query_text)
        if not user:
            return False
        profile = user_service.build_user_profile(db, user)
    await update.effective_message.reply_text(
        _render_profile(profile),
        parse_mode=ParseMode.MARKDOWN,
        reply_markup=keyboards.user_profile_keyboard(profile.telegram_id),
    )
    return True


@admin_only
async def admin_find(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    rt.registry.enter(FlowKind.USER_SEARCH, actor_id, True)
    await respond(
        update,
        "🔍 Введите Telegram ID или @username пользователя, либо перешлите его сообщение:",
        keyboards.admin_cancel_keyboard(),
    )


@admin_only
async def cmd_find(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    rt = get_runtime(context)
    if not context.args:
        await admin_find(update, context)
        return
    if not await _show_user(update, rt, context.args[0]):
        await update.effective_message.reply_text(
            "❌ Пользователь не найден.", reply_markup=keyboards.try_again_keyboard("admin_find"),
        )


async def handle_user_search_input(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    message = update.effective_message

    origin = getattr(message, "forward_origin", None)
    sender = getattr(origin, "sender_user", None) if origin else None
    query_text = str(sender.id) if sender else (message.text or "")

    rt.registry.exit(FlowKind.USER_SEARCH, actor_id)
    if not await _show_user(update, rt, query_text):
        await message.reply_text(
            "❌ Пользователь не найден.", reply_markup=keyboards.try_again_keyboard("admin_find"),
        )


# ============================================================================
# MANUAL TOP-UP
# ============================================================================

async def _credit(update: Update, context: ContextTypes.DEFAULT_TYPE, target_id: int, amount: float) -> None:
    rt = get_runtime(context)
    admin_id, _ = actor_of(update)
    with session_scope(rt) as db:
        user = user_service.get_user_by_telegram_id(db, target_id)
        if not user:
            raise UserNotFound(target_id)
        bonus = balance_service.top_up_with_referral(db, user, amount, TransactionType.TOP_UP)
        balance = user.balance
        referrer = (bonus[0].telegram_id, bonus[1]) if bonus else None

    AuditLog.log_admin_action("add_balance", admin_id, target_id, {"amount": amount})
    await notify_user(
        context.bot, target_id,
        f"💰 Ваш баланс пополнен на *{amount:.0f} ₽*\n💳 Текущий баланс: *{balance:.0f} ₽*",
    )
    if referrer:
        await notify_user(
            context.bot, referrer[0],
            f"🎉 Реферальный бонус: *+{referrer[1]:.0f} ₽* за пополнение вашего реферала!",
        )
    await update.effective_message.reply_text(
        f"✅ Баланс `{target_id}` пополнен на {amount:.0f} ₽. Текущий: {balance:.0f} ₽",
        parse_mode=ParseMode.MARKDOWN,
        reply_markup=keyboards.back_to_admin_keyboard(),
    )


@admin_only
async def admin_addbal(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    target_id = parse_int(args[0]) if args else None
    if target_id is None:
        # Pick the user first; the profile card has the top-up button
        await admin_find(update, context)
        return
    rt.registry.enter(FlowKind.BALANCE_TOPUP, actor_id, target_id)
    await respond(
        update,
        f"💰 Пополнение для `{target_id}`\n\nВыберите сумму или введите свою:",
        keyboards.addbal_amount_keyboard(target_id, ADDBAL_AMOUNTS),
    )


@admin_only
async def admin_addbal_amount(update: Update, context: ContextTypes.DEFAULT_TYPE, args) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    target_id, amount = (parse_int(args[0]), parse_int(args[1])) if len(args) >= 2 else (None, None)
    if not target_id or not amount or amount <= 0:
        await respond(update, "❌ Неверные данные.", keyboards.back_to_admin_keyboard())
        return
    rt.registry.exit(FlowKind.BALANCE_TOPUP, actor_id)
    try:
        await _credit(update, context, target_id, amount)
    except UserNotFound:
        await respond(update, "❌ Пользователь не найден.", keyboards.try_again_keyboard("admin_find"))


async def handle_balance_topup_input(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    message = update.effective_message
    amount = parse_positive_number(message.text)
    if amount is None:
        await message.reply_text("❌ Введите положительную сумму:", reply_markup=keyboards.admin_cancel_keyboard())
        return

    target_id = rt.registry.exit(FlowKind.BALANCE_TOPUP, actor_id)
    if target_id is None:
        await message.reply_text(STALE_SESSION_TEXT)
        return
    try:
        await _credit(update, context, target_id, amount)
    except UserNotFound:
        await message.reply_text("❌ Пользователь не найден.", reply_markup=keyboards.try_again_keyboard("admin_find"))


@admin_only
async def cmd_addbal(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    args = context.args or []
    target_id = parse_int(args[0]) if args else None
    amount = parse_positive_number(args[1]) if len(args) >= 2 else None
    if target_id is None or amount is None:
        await update.effective_message.reply_text("Использование: /addbal <id> <сумма>")
        return
    try:
        await _credit(update, context, target_id, amount)
    except UserNotFound:
        await update.effective_message.reply_text("❌ Пользователь не найден.")


# ============================================================================
# GIFT / ISSUE KEYS
# ============================================================================

async def _issue_key(
    update: Update, context: ContextTypes.DEFAULT_TYPE, target_id: int, product_id: int, days: int, retry_markup=None,
) -> bool:
    """
    Provision a free key for ``target_id`` and notify both sides.

    Returns False when the VPN panel is unavailable (nothing was issued).
    Raises UserNotFound.
    """
    rt = get_runtime(context)
    admin_id, _ = actor_of(update)
    with session_scope(rt) as db:
        try:
            sub = subscription_service.gift_subscription(db, rt.provider, target_id, product_id, days)
        except UpstreamUnavailable:
            await update.effective_message.reply_text(
                "❌ Ошибка панели VPN. Попробуйте позже.",
                reply_markup=retry_markup or keyboards.back_to_admin_keyboard(),
            )
            return False
        key, expires_at = sub.key_string, sub.expires_at

    AuditLog.log_admin_action("issue_key", admin_id, target_id, {"product_id": product_id, "days": days})
    if target_id != admin_id:
        await notify_user(
            context.bot, target_id,
            f"🎁 *Вам выдана подписка на {days} дн!*\n\n📅 До: {expires_at:%d.%m.%Y}\n\n🔑 Ключ:\n`{key}`",
        )
    await update.effective_message.reply_text(
        f"✅ Ключ выдан `{target_id}` на {days} дн.\n\n`{key}`",
        parse_mode=ParseMode.MARKDOWN,
        reply_markup=keyboards.back_to_admin_keyboard(),
    )
    return True


@admin_only
async def admin_gift(update: Update, context: ContextTypes.DEFAULT_TYPE, args) -> None:
    rt = get_runtime(context)
    target_id = parse_int(args[0]) if args else None
    if target_id is None:
        await respond(update, "❌ Неверный пользователь.", keyboards.back_to_admin_keyboard())
        return
    with session_scope(rt) as db:
        products = subscription_service.list_products(db)
        markup = keyboards.gift_products_keyboard(target_id, products)
    await respond(update, f"🎁 Подарок для `{target_id}`\n\nВыберите тариф:", markup)


@admin_only
async def admin_gift_product(update: Update, context: ContextTypes.DEFAULT_TYPE, args) -> None:
    target_id, product_id = (parse_int(args[0]), parse_int(args[1])) if len(args) >= 2 else (None, None)
    if target_id is None or product_id is None:
        await respond(update, "❌ Неверные данные.", keyboards.back_to_admin_keyboard())
        return
    await respond(
        update, f"🎁 Подарок для `{target_id}`\n\nВыберите срок:",
        keyboards.gift_days_keyboard(target_id, product_id, GIFT_DAYS),
    )


@admin_only
async def admin_gift_days(update: Update, context: ContextTypes.DEFAULT_TYPE, args) -> None:
    values = [parse_int(a) for a in args[:3]]
    if len(values) < 3 or None in values or values[2] <= 0:
        await respond(update, "❌ Неверные данные.", keyboards.back_to_admin_keyboard())
        return
    target_id, product_id, days = values
    try:
        await _issue_key(update, context, target_id, product_id, days)
    except UserNotFound:
        await respond(update, "❌ Пользователь не найден.", keyboards.try_again_keyboard("admin_find"))


@admin_only
async def cmd_gift(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    values = [parse_int(a) for a in (context.args or [])[:3]]
    if len(values) < 3 or None in values or values[2] <= 0:
        await update.effective_message.reply_text("Использование: /gift <id> <product_id> <дни>")
        return
    target_id, product_id, days = values
    try:
        await _issue_key(update, context, target_id, product_id, days)
    except UserNotFound:
        await update.effective_message.reply_text("❌ Пользователь не найден.")


@admin_only
async def admin_issue(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    """Key issue wizard, step 1: product."""
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    rt.registry.enter(FlowKind.KEY_ISSUE, actor_id, IssueDraft(step=1))
    with session_scope(rt) as db:
        markup = keyboards.issue_products_keyboard(subscription_service.list_products(db))
    await respond(update, "🔑 *Выдача ключа*\n\nШаг 1/3: выберите тариф:", markup)


@admin_only
async def issue_product(update: Update, context: ContextTypes.DEFAULT_TYPE, args) -> None:
    """Step 2: duration."""
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    product_id = parse_int(args[0]) if args else None
    if product_id is None:
        await respond(update, "❌ Неверный тариф.", keyboards.back_to_admin_keyboard())
        return

    def choose(draft: IssueDraft):
        draft.product_id = product_id
        draft.step = 2

    try:
        rt.registry.advance(FlowKind.KEY_ISSUE, actor_id, choose)
    except NotInFlow:
        await respond(update, STALE_SESSION_TEXT, keyboards.try_again_keyboard("admin_issue"))
        return
    await respond(update, "🔑 *Выдача ключа*\n\nШаг 2/3: выберите срок:", keyboards.issue_days_keyboard(ISSUE_DAYS))


@admin_only
async def issue_days(update: Update, context: ContextTypes.DEFAULT_TYPE, args) -> None:
    """Step 3: target user."""
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    days = parse_int(args[0]) if args else None
    if not days or days <= 0:
        await respond(update, "❌ Неверный срок.", keyboards.issue_days_keyboard(ISSUE_DAYS))
        return

    def choose(draft: IssueDraft):
        if draft.product_id is None:
            raise NotInFlow(FlowKind.KEY_ISSUE, actor_id)
        draft.days = days
        draft.step = 3

    try:
        rt.registry.advance(FlowKind.KEY_ISSUE, actor_id, choose)
    except NotInFlow:
        rt.registry.exit(FlowKind.KEY_ISSUE, actor_id)
        await respond(update, STALE_SESSION_TEXT, keyboards.try_again_keyboard("admin_issue"))
        return
    await respond(
        update,
        "🔑 *Выдача ключа*\n\nШаг 3/3: введите Telegram ID пользователя:",
        keyboards.issue_target_keyboard(),
    )


def _parse_target(text: Optional[str]) -> int:
    target = parse_int(text)
    if target is None or target <= 0:
        raise UserInputInvalid("target id", prompt="❌ Введите числовой Telegram ID:")
    return target


async def handle_issue_target_input(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    message = update.effective_message
    try:
        target_id = _parse_target(message.text)
    except UserInputInvalid as e:
        await message.reply_text(e.prompt, reply_markup=keyboards.issue_target_keyboard())
        return

    # Slot is released only once the key is issued or the target is unknown
    draft = rt.registry.peek(FlowKind.KEY_ISSUE, actor_id)
    if draft is None or draft.step != 3:
        rt.registry.exit(FlowKind.KEY_ISSUE, actor_id)
        await message.reply_text(STALE_SESSION_TEXT)
        return
    try:
        issued = await _issue_key(
            update, context, target_id, draft.product_id, draft.days, retry_markup=keyboards.issue_target_keyboard(),
        )
    except UserNotFound:
        rt.registry.exit(FlowKind.KEY_ISSUE, actor_id)
        await message.reply_text(
            "❌ Пользователь не найден. Он должен сначала запустить бота.",
            reply_markup=keyboards.try_again_keyboard("admin_issue"),
        )
        return
    if issued:
        rt.registry.exit(FlowKind.KEY_ISSUE, actor_id)


@admin_only
async def issue_no_user(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    """Issue the key to the staff member themself."""
    rt = get_runtime(context)
    actor_id, username = actor_of(update)
    draft = rt.registry.peek(FlowKind.KEY_ISSUE, actor_id)
    if draft is None or draft.step != 3:
        rt.registry.exit(FlowKind.KEY_ISSUE, actor_id)
        await respond(update, STALE_SESSION_TEXT, keyboards.try_again_keyboard("admin_issue"))
        return
    with session_scope(rt) as db:
        user_service.get_or_create_user(db, actor_id, username)
    if await _issue_key(
        update, context, actor_id, draft.product_id, draft.days, retry_markup=keyboards.issue_target_keyboard(),
    ):
        rt.registry.exit(FlowKind.KEY_ISSUE, actor_id)


# ============================================================================
# PROMO CODES
# ============================================================================

@admin_only
async def admin_promo(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    await respond(update, "🎁 *Промокоды*", keyboards.promo_admin_keyboard())


@admin_only
async def promo_list(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    with session_scope(rt) as db:
        promos = promo_service.list_promo_codes(db)
        lines = ["📋 *Промокоды*\n"] + [
            f"`{p.code}` - {p.amount:.0f} ₽, {p.activations_used}/{p.max_activations}"
            f"{'' if p.is_active else ' (выкл)'}"
            for p in promos
        ]
    if not promos:
        lines.append("Промокодов нет.")
    await respond(update, "\n".join(lines), keyboards.promo_admin_keyboard())


@admin_only
async def promo_create(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    rt.registry.enter(FlowKind.PROMO_CREATE, actor_id, PromoDraft(step=1))
    await respond(
        update, "➕ *Новый промокод*\n\nШаг 1/3: введите код (3-20 символов):", keyboards.admin_cancel_keyboard(),
    )


def _promo_step(db, draft: PromoDraft, text: str) -> Optional[str]:
    """
    Apply one wizard input. Returns the next prompt, or None when the code was created.

    Runs under the slot lock. A code taken by someone else in the meantime
    sends the draft back to step 1.
    """
    if draft.step == 1:
        code = promo_service.normalize_code(text)
        if not promo_service.CODE_MIN_LEN <= len(code) <= promo_service.CODE_MAX_LEN:
            raise UserInputInvalid("code length", prompt="❌ Код должен быть от 3 до 20 символов. Попробуйте снова:")
        if promo_service.promo_code_exists(db, code):
            raise UserInputInvalid("code exists", prompt="❌ Такой промокод уже существует. Введите другой:")
        draft.code = code
        draft.step = 2
        return "Шаг 2/3: введите сумму бонуса в рублях:"

    if draft.step == 2:
        amount = parse_positive_number(text)
        if amount is None:
            raise UserInputInvalid("amount", prompt="❌ Сумма должна быть больше 0. Попробуйте снова:")
        draft.amount = amount
        draft.step = 3
        return "Шаг 3/3: введите количество активаций:"

    activations = parse_int(text)
    if activations is None or activations <= 0:
        raise UserInputInvalid("activations", prompt="❌ Количество должно быть целым числом больше 0. Попробуйте снова:")
    try:
        promo_service.create_promo_code(db, draft.code, draft.amount, activations)
    except UserInputInvalid:
        taken = draft.code
        draft.code = ""
        draft.step = 1
        raise UserInputInvalid(
            "code exists", prompt=f"❌ Код {taken} уже занят.\n\nШаг 1/3: введите другой код (3-20 символов):",
        ) from None
    return None


async def handle_promo_create_input(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    message = update.effective_message
    prompts = []

    with session_scope(rt) as db:
        try:
            draft = rt.registry.advance(
                FlowKind.PROMO_CREATE, actor_id, lambda d: prompts.append(_promo_step(db, d, message.text or "")),
            )
        except NotInFlow:
            await message.reply_text(STALE_SESSION_TEXT, reply_markup=keyboards.try_again_keyboard("promo_create"))
            return
        except UserInputInvalid as e:
            await message.reply_text(
                e.prompt or "❌ Неверное значение. Попробуйте снова:", reply_markup=keyboards.admin_cancel_keyboard(),
            )
            return

    prompt = prompts[0]
    if prompt is not None:
        await message.reply_text(prompt, reply_markup=keyboards.admin_cancel_keyboard())
        return

    rt.registry.exit(FlowKind.PROMO_CREATE, actor_id)
    AuditLog.log_admin_action("promo_create", actor_id, changes={"code": draft.code, "amount": draft.amount})
    await message.reply_text(
        f"✅ Промокод `{draft.code}` создан на {draft.amount:.0f} ₽.",
        parse_mode=ParseMode.MARKDOWN,
        reply_markup=keyboards.promo_admin_keyboard(),
    )


@admin_only
async def promo_delete(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    rt.registry.enter(FlowKind.PROMO_DELETE, actor_id, True)
    await respond(update, "🗑 Введите код для удаления:", keyboards.admin_cancel_keyboard())


async def handle_promo_delete_input(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    message = update.effective_message
    code = (message.text or "").strip()
    rt.registry.exit(FlowKind.PROMO_DELETE, actor_id)

    with session_scope(rt) as db:
        deleted = promo_service.delete_promo_code(db, code)
    if not deleted:
        await message.reply_text("❌ Промокод не найден.", reply_markup=keyboards.try_again_keyboard("promo_delete"))
        return
    AuditLog.log_admin_action("promo_delete", actor_id, changes={"code": code.upper()})
    await message.reply_text(
        f"✅ Промокод `{_md(code.upper())}` удалён.",
        parse_mode=ParseMode.MARKDOWN,
        reply_markup=keyboards.promo_admin_keyboard(),
    )


# ============================================================================
# BROADCAST
# ============================================================================

def format_report(report: BroadcastReport, title: str = "✅ *Рассылка завершена!*") -> str:
    text = (
        f"{title}\n\n"
        f"📤 Отправлено: {report.sent}\n"
        f"❌ Ошибок: {report.failed}\n"
        f"📊 Всего: {report.total}"
    )
    if report.unreachable:
        text += f"\n🚫 Заблокировали бота: {report.unreachable}"
    if report.cancelled:
        text += "\n⛔ Остановлена досрочно"
    return text


def _recipient_count(rt) -> int:
    with session_scope(rt) as db:
        return len(user_service.get_all_user_telegram_ids(db))


def launch_fanout(
    context: ContextTypes.DEFAULT_TYPE,
    initiator_id: int,
    label: str,
    payload: BroadcastPayload,
    on_start=None,
    summary_suffix=None,
):
    """
    Start a broadcast-style job for every registered user.

    Progress and the final summary go to the initiator. ``summary_suffix`` is
    a callable producing extra text for the summary at completion time.
    Raises AlreadyRunning / UpstreamUnavailable from the coordinator.
    """
    rt = get_runtime(context)
    bot = context.bot

    def load_recipients():
        with session_scope(rt) as db:
            return user_service.get_all_user_telegram_ids(db)

    async def deliver(chat_id: int):
        await send_payload(bot, chat_id, payload)

    async def on_progress(done: int, total: int):
        await bot.send_message(chat_id=initiator_id, text=f"📤 Прогресс: {done}/{total}")

    async def on_finish(report: BroadcastReport):
        text = format_report(report)
        if summary_suffix is not None:
            text += summary_suffix()
        await bot.send_message(chat_id=initiator_id, text=text, parse_mode=ParseMode.MARKDOWN)

    return rt.coordinator.launch(
        label, initiator_id, load_recipients, deliver, on_finish,
        on_progress=on_progress, on_start=on_start,
    )


@admin_only
async def admin_broadcast(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    if rt.coordinator.is_running:
        await respond(update, BROADCAST_BUSY_TEXT, keyboards.back_to_admin_keyboard())
        return
    rt.registry.enter(FlowKind.BROADCAST, actor_id, BroadcastDraft())
    await respond(
        update,
        "📢 *Рассылка*\n\nОтправьте сообщение для рассылки: текст, фото, документ или видео с подписью.",
        keyboards.admin_cancel_keyboard(),
    )


async def handle_broadcast_capture(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    message = update.effective_message
    payload = BroadcastPayload.from_message(message)
    if payload is None:
        await message.reply_text(
            "❌ Этот тип сообщения не поддерживается. Отправьте текст, фото, документ или видео:",
            reply_markup=keyboards.admin_cancel_keyboard(),
        )
        return

    count = _recipient_count(rt)

    def capture(draft: BroadcastDraft):
        draft.payload = payload
        draft.recipient_count = count
        draft.stage = BroadcastStage.AWAITING_CONFIRM

    try:
        rt.registry.advance(FlowKind.BROADCAST, actor_id, capture)
    except NotInFlow:
        await message.reply_text(STALE_SESSION_TEXT)
        return
    await message.reply_text(
        f"📢 *Подтверждение рассылки*\n\nСообщение будет отправлено *{count}* пользователям.\n\nОтправить?",
        parse_mode=ParseMode.MARKDOWN,
        reply_markup=keyboards.broadcast_confirm_keyboard(),
    )


@admin_only
async def broadcast_confirm(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    draft = rt.registry.exit(FlowKind.BROADCAST, actor_id)
    if draft is None or draft.payload is None:
        await respond(update, STALE_SESSION_TEXT, keyboards.back_to_admin_keyboard())
        return
    try:
        handle = launch_fanout(context, actor_id, "broadcast", draft.payload)
    except AlreadyRunning:
        await respond(update, BROADCAST_BUSY_TEXT, keyboards.back_to_admin_keyboard())
        return
    except UpstreamUnavailable:
        await respond(update, "❌ Не удалось получить список пользователей.", keyboards.back_to_admin_keyboard())
        return
    await respond(
        update, f"🚀 Рассылка запущена на *{handle.total}* пользователей.", keyboards.broadcast_stop_keyboard(),
    )


@admin_only
async def broadcast_cancel(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    rt.registry.exit(FlowKind.BROADCAST, actor_id)
    await respond(update, "❌ Рассылка отменена.", keyboards.back_to_admin_keyboard())


@admin_only
async def broadcast_stop(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    handle = rt.coordinator.current
    if handle is None:
        await respond(update, "Рассылка не выполняется.", keyboards.back_to_admin_keyboard())
        return
    handle.cancel()
    await respond(update, "⛔ Останавливаю рассылку...", None)
