"""Flash sale wizard: preset or manual discount/duration, confirm, fan-out of the sale card."""
import logging
from decimal import Decimal

from telegram import Update
from telegram.constants import ParseMode
from telegram.ext import ContextTypes

from vpnshop.core.audit import AuditLog
from vpnshop.core.config import settings
from vpnshop.core.exceptions import AlreadyRunning, NotInFlow, UpstreamUnavailable
from vpnshop.db.init_db import DEFAULT_PRODUCT
from vpnshop.flows.broadcast import BroadcastPayload, PayloadKind
from vpnshop.flows.conversation import FlashSaleDraft, FlowKind
from vpnshop.flows.flash_sale import (
    HOUR_OPTIONS,
    MAX_PERCENT,
    PERCENT_OPTIONS,
    QUICK_PRESETS,
    build_confirm_text,
    build_sale_caption,
)
from vpnshop.services import subscription_service, user_service
from vpnshop.telegram import keyboards
from vpnshop.telegram.handlers_admin import BROADCAST_BUSY_TEXT, STALE_SESSION_TEXT, launch_fanout
from vpnshop.telegram.utils import actor_of, admin_only, get_runtime, parse_int, respond, session_scope

logger = logging.getLogger(__name__)


def _base_price(rt) -> Decimal:
    """Monthly price of the first catalog product, the one advertised on the card."""
    with session_scope(rt) as db:
        products = subscription_service.list_products(db)
        if products:
            return Decimal(str(products[0].base_price))
    return Decimal(str(DEFAULT_PRODUCT["base_price"]))


def _recipients(rt) -> int:
    with session_scope(rt) as db:
        return len(user_service.get_all_user_telegram_ids(db))


def _valid(percent, hours) -> bool:
    return percent is not None and hours is not None and 0 < percent <= MAX_PERCENT and hours > 0


async def _show_confirm(update: Update, rt, percent: int, hours: int) -> None:
    text = build_confirm_text(percent, hours, _base_price(rt), _recipients(rt))
    await respond(update, text, keyboards.flash_confirm_keyboard())


@admin_only
async def admin_flash(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    percent, ends_at = rt.flash_sale.snapshot()
    status = f"✅ Активна: *-{percent}%* до {ends_at:%d.%m %H:%M}" if percent else "Сейчас распродажи нет."
    await respond(
        update,
        f"🔥 *Распродажа*\n\n{status}\n\nВыберите готовый вариант или настройте вручную:",
        keyboards.flash_menu_keyboard(QUICK_PRESETS, bool(percent)),
    )


@admin_only
async def cmd_flashsale(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """`/flashsale` opens the menu, `/flashsale <percent> <hours>` jumps to confirmation."""
    rt = get_runtime(context)
    args = context.args or []
    if not args:
        await admin_flash(update, context)
        return

    percent = parse_int(args[0])
    hours = parse_int(args[1]) if len(args) >= 2 else None
    if not _valid(percent, hours):
        await update.effective_message.reply_text(
            f"Использование: /flashsale <процент 1-{MAX_PERCENT}> <часы>\nПример: /flashsale 50 6"
        )
        return
    if rt.coordinator.is_running:
        await update.effective_message.reply_text(BROADCAST_BUSY_TEXT)
        return

    actor_id, _ = actor_of(update)
    rt.registry.enter(FlowKind.FLASH_SALE, actor_id, FlashSaleDraft(step=3, percent=percent, hours=hours))
    await _show_confirm(update, rt, percent, hours)


@admin_only
async def flash_quick(update: Update, context: ContextTypes.DEFAULT_TYPE, args) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    percent, hours = (parse_int(args[0]), parse_int(args[1])) if len(args) >= 2 else (None, None)
    if not _valid(percent, hours):
        await respond(update, "❌ Неверный вариант.", keyboards.back_to_admin_keyboard())
        return
    if rt.coordinator.is_running:
        await respond(update, BROADCAST_BUSY_TEXT, keyboards.back_to_admin_keyboard())
        return
    rt.registry.enter(FlowKind.FLASH_SALE, actor_id, FlashSaleDraft(step=3, percent=percent, hours=hours))
    await _show_confirm(update, rt, percent, hours)


@admin_only
async def flash_manual(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    if rt.coordinator.is_running:
        await respond(update, BROADCAST_BUSY_TEXT, keyboards.back_to_admin_keyboard())
        return
    rt.registry.enter(FlowKind.FLASH_SALE, actor_id, FlashSaleDraft(step=1))
    await respond(update, "🔥 Шаг 1/2: выберите скидку:", keyboards.flash_percent_keyboard(PERCENT_OPTIONS))


@admin_only
async def flash_percent(update: Update, context: ContextTypes.DEFAULT_TYPE, args) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    percent = parse_int(args[0]) if args else None
    if percent is None or not 0 < percent <= MAX_PERCENT:
        await respond(update, "❌ Неверная скидка.", keyboards.flash_percent_keyboard(PERCENT_OPTIONS))
        return

    def choose(draft: FlashSaleDraft):
        draft.percent = percent
        draft.step = 2

    try:
        rt.registry.advance(FlowKind.FLASH_SALE, actor_id, choose)
    except NotInFlow:
        await respond(update, STALE_SESSION_TEXT, keyboards.try_again_keyboard("admin_flash"))
        return
    await respond(
        update, f"🔥 Скидка *-{percent}%*\n\nШаг 2/2: выберите длительность:",
        keyboards.flash_hours_keyboard(HOUR_OPTIONS),
    )


@admin_only
async def flash_hours(update: Update, context: ContextTypes.DEFAULT_TYPE, args) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    hours = parse_int(args[0]) if args else None
    if not hours or hours <= 0:
        await respond(update, "❌ Неверная длительность.", keyboards.flash_hours_keyboard(HOUR_OPTIONS))
        return

    def choose(draft: FlashSaleDraft):
        if not draft.percent:
            raise NotInFlow(FlowKind.FLASH_SALE, actor_id)
        draft.hours = hours
        draft.step = 3

    try:
        draft = rt.registry.advance(FlowKind.FLASH_SALE, actor_id, choose)
    except NotInFlow:
        rt.registry.exit(FlowKind.FLASH_SALE, actor_id)
        await respond(update, STALE_SESSION_TEXT, keyboards.try_again_keyboard("admin_flash"))
        return
    await _show_confirm(update, rt, draft.percent, draft.hours)


@admin_only
async def flash_confirm(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    """
    Activate the sale and send the sale card to every user.

    The sale is switched on only once the recipient snapshot succeeded, so a
    refused or failed launch leaves prices untouched.
    """
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    draft = rt.registry.exit(FlowKind.FLASH_SALE, actor_id)
    if draft is None or draft.step != 3:
        await respond(update, STALE_SESSION_TEXT, keyboards.try_again_keyboard("admin_flash"))
        return

    percent, hours = draft.percent, draft.hours
    caption = build_sale_caption(percent, hours, _base_price(rt))
    if settings.FLASH_SALE_IMAGE_URL:
        payload = BroadcastPayload(
            PayloadKind.PHOTO, text=caption, file_id=settings.FLASH_SALE_IMAGE_URL,
            parse_mode=ParseMode.MARKDOWN, reply_markup=keyboards.flash_card_keyboard(),
        )
    else:
        payload = BroadcastPayload(
            PayloadKind.TEXT, text=caption, parse_mode=ParseMode.MARKDOWN, reply_markup=keyboards.flash_card_keyboard(),
        )

    def activate():
        rt.flash_sale.set(percent, hours)
        AuditLog.log_admin_action("flash_sale_start", actor_id, changes={"percent": percent, "hours": hours})

    def sale_until() -> str:
        ends_at = rt.flash_sale.ends_at()
        return f"\n\n🔥 Распродажа активна до {ends_at:%d.%m %H:%M}" if ends_at else ""

    try:
        handle = launch_fanout(context, actor_id, "flash_sale", payload, on_start=activate, summary_suffix=sale_until)
    except AlreadyRunning:
        await respond(update, BROADCAST_BUSY_TEXT, keyboards.back_to_admin_keyboard())
        return
    except UpstreamUnavailable:
        await respond(update, "❌ Не удалось получить список пользователей.", keyboards.back_to_admin_keyboard())
        return
    await respond(
        update,
        f"🚀 Распродажа *-{percent}%* запущена, рассылка на *{handle.total}* пользователей.",
        keyboards.broadcast_stop_keyboard(),
    )


@admin_only
async def flash_cancel(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    rt.registry.exit(FlowKind.FLASH_SALE, actor_id)
    await respond(update, "❌ Распродажа отменена.", keyboards.back_to_admin_keyboard())


@admin_only
async def flash_stop(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    was_active = rt.flash_sale.is_active()
    rt.flash_sale.clear()
    AuditLog.log_admin_action("flash_sale_stop", actor_id)
    text = "⛔ Распродажа остановлена. Цены вернулись к обычным." if was_active else "Распродажа не активна."
    if update.callback_query is not None:
        await respond(update, text, keyboards.back_to_admin_keyboard())
    else:
        await update.effective_message.reply_text(text, parse_mode=ParseMode.MARKDOWN)
