"""Support desk handlers, user side and staff side."""
import logging

from telegram import Update
from telegram.constants import ParseMode
from telegram.error import TelegramError
from telegram.ext import ContextTypes

from vpnshop.core.exceptions import DeliveryFailed, RouteNotFound
from vpnshop.flows.conversation import FlowKind
from vpnshop.flows.support import TicketStatus, encode_ticket_tag
from vpnshop.services import user_service
from vpnshop.telegram import keyboards
from vpnshop.telegram.utils import actor_of, admin_only, get_runtime, parse_int, respond, session_scope

logger = logging.getLogger(__name__)


# ============================================================================
# USER SIDE
# ============================================================================

async def show_support_hub(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    await respond(
        update,
        "🆘 *Поддержка*\n\n"
        "Опишите проблему, и оператор ответит вам прямо в этом чате.\n"
        "Обычно мы отвечаем в течение 15 минут.",
        keyboards.support_hub_keyboard(),
    )


async def leave_support_hub(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    rt.registry.exit(FlowKind.SUPPORT_MODE, actor_id)
    await respond(update, "🏠 *Главное меню*", keyboards.main_menu_keyboard(rt.is_admin(actor_id)))


async def ticket_create(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    rt.registry.enter(FlowKind.SUPPORT_MODE, actor_id, True)
    await respond(
        update,
        "✍️ *Режим поддержки*\n\n"
        "Напишите сообщение, можно приложить фото или файл.\n"
        "Все сообщения будут переданы оператору.",
        keyboards.support_mode_keyboard(),
    )


async def ticket_my(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    ticket = rt.tickets.get(actor_id)
    if ticket is None:
        await respond(update, "📨 У вас нет открытых обращений.", keyboards.support_hub_keyboard())
        return
    status = "🔴 ожидает ответа" if ticket.status == TicketStatus.WAITING else "🟢 есть ответ"
    await respond(
        update,
        f"📨 *Ваше обращение*\n\n"
        f"Статус: {status}\n"
        f"Сообщений: {ticket.message_count}\n"
        f"Последняя активность: {ticket.last_activity:%d.%m %H:%M}",
        keyboards.ticket_answer_keyboard(),
    )


async def ticket_reply(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    """User wants to continue the dialog after a staff answer."""
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    rt.registry.enter(FlowKind.SUPPORT_MODE, actor_id, True)
    await update.callback_query.message.reply_text(
        "✍️ Напишите ваше сообщение:", reply_markup=keyboards.cancel_reply_keyboard(),
    )


async def exit_support(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    rt.registry.exit(FlowKind.SUPPORT_MODE, actor_id)
    await respond(update, "🚪 Вы вышли из режима поддержки.", keyboards.back_to_menu_keyboard())


async def ticket_solve(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    actor_id, username = actor_of(update)
    await rt.bridge.resolve_by_user(context.bot, actor_id, username)
    await update.callback_query.message.reply_text(
        "✅ Рады, что смогли помочь! Обращение закрыто.", reply_markup=keyboards.back_to_menu_keyboard(),
    )


async def cmd_stop_support(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    rt = get_runtime(context)
    actor_id, _ = actor_of(update)
    rt.registry.exit(FlowKind.SUPPORT_MODE, actor_id)
    await update.effective_message.reply_text(
        "🚪 Режим поддержки выключен.", reply_markup=keyboards.back_to_menu_keyboard(),
    )


async def handle_support_forward(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Message from an actor in support mode: relay to the staff group."""
    rt = get_runtime(context)
    actor_id, username = actor_of(update)
    message = update.effective_message
    with session_scope(rt) as db:
        user, _ = user_service.get_or_create_user(db, actor_id, username)
        balance = float(user.balance or 0)

    try:
        await rt.bridge.forward_to_staff(context.bot, message, actor_id, username, balance)
    except TelegramError as e:
        logger.error(f"[Support] Forward from {actor_id} failed: {e}")
        await message.reply_text("❌ Не удалось отправить сообщение. Попробуйте позже.")
        return
    await message.reply_text("✅ Отправлено. Ожидайте ответа.", reply_markup=keyboards.support_mode_keyboard())


# ============================================================================
# STAFF SIDE
# ============================================================================

async def handle_staff_reply(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Reply in the staff group to a ticket post."""
    rt = get_runtime(context)
    message = update.effective_message
    try:
        user_id = await rt.bridge.route_staff_reply(context.bot, message)
    except RouteNotFound as e:
        logger.info(f"[Support] Staff reply dropped: {e}")
        return
    except DeliveryFailed as e:
        logger.warning(f"[Support] {e}")
        reason = "пользователь заблокировал бота" if e.unreachable else "ошибка доставки"
        await message.reply_text(f"❌ Не удалось доставить ответ {encode_ticket_tag(e.chat_id)}: {reason}")
        return
    logger.info(f"[Support] Staff answer routed to {user_id}")


@admin_only
async def admin_close_ticket(update: Update, context: ContextTypes.DEFAULT_TYPE, args) -> None:
    rt = get_runtime(context)
    query = update.callback_query
    user_id = parse_int(args[0]) if args else None
    if user_id is None:
        await query.answer("❌ Неверный тикет")
        return
    _, staff_name = actor_of(update)
    closed = await rt.bridge.close_ticket(context.bot, user_id, staff_name, post=query.message)
    await query.answer("✅ Тикет закрыт" if closed else "Тикет уже закрыт")


@admin_only
async def support_reply_start(update: Update, context: ContextTypes.DEFAULT_TYPE, args) -> None:
    """Staff pressed "reply" on a ticket post: next private text goes to the user."""
    rt = get_runtime(context)
    query = update.callback_query
    staff_id, _ = actor_of(update)
    user_id = parse_int(args[0]) if args else None
    if user_id is None:
        await query.answer("❌ Неверный тикет")
        return

    rt.registry.enter(FlowKind.SUPPORT_REPLY, staff_id, user_id)
    try:
        await context.bot.send_message(
            chat_id=staff_id,
            text=f"✍️ Напишите ответ для {encode_ticket_tag(user_id)}:",
            reply_markup=keyboards.cancel_reply_keyboard("admin_reply_cancel"),
        )
    except TelegramError as e:
        rt.registry.exit(FlowKind.SUPPORT_REPLY, staff_id)
        logger.info(f"[Support] Cannot DM staff {staff_id}: {e}")
        await query.answer("Сначала запустите бота в личных сообщениях", show_alert=True)
        return
    await query.answer("Ответ ожидается в личных сообщениях")


async def handle_support_reply_input(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    rt = get_runtime(context)
    staff_id, _ = actor_of(update)
    message = update.effective_message
    user_id = rt.registry.exit(FlowKind.SUPPORT_REPLY, staff_id)
    if user_id is None:
        return
    try:
        await rt.bridge.deliver_staff_answer(context.bot, user_id, message)
    except DeliveryFailed as e:
        logger.warning(f"[Support] {e}")
        await message.reply_text("❌ Не удалось доставить ответ.", reply_markup=keyboards.back_to_admin_keyboard())
        return
    await message.reply_text(
        f"✅ Ответ отправлен {encode_ticket_tag(user_id)}", reply_markup=keyboards.back_to_admin_keyboard(),
    )


@admin_only
async def support_reply_cancel(update: Update, context: ContextTypes.DEFAULT_TYPE, args=None) -> None:
    rt = get_runtime(context)
    staff_id, _ = actor_of(update)
    rt.registry.exit(FlowKind.SUPPORT_REPLY, staff_id)
    await respond(update, "❌ Ответ отменён.", keyboards.back_to_admin_keyboard())


@admin_only
async def cmd_init_dashboard(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    rt = get_runtime(context)
    if update.effective_chat.id != rt.support_group_id:
        await update.effective_message.reply_text("Команда работает только в группе поддержки.")
        return
    try:
        await rt.bridge.init_dashboard(context.bot)
    except TelegramError as e:
        logger.error(f"[Support] Dashboard init failed: {e}")
        await update.effective_message.reply_text("❌ Не удалось создать панель.")


@admin_only
async def show_ticket_dashboard(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Staff `/tickets` in private chat: current dashboard text."""
    rt = get_runtime(context)
    await update.effective_message.reply_text(
        rt.bridge.dashboard_text(), parse_mode=ParseMode.MARKDOWN, reply_markup=keyboards.back_to_admin_keyboard(),
    )
