import asyncio
import logging
import threading
from typing import Optional

from telegram import Update, error
from telegram.constants import ParseMode
from telegram.ext import Application, CallbackQueryHandler, CommandHandler, ContextTypes, MessageHandler, filters

from vpnshop.core.audit import AuditLog
from vpnshop.core.config import settings
from vpnshop.core.rate_limiter import build_broadcast_limiter
from vpnshop.db.session import SessionLocal
from vpnshop.flows.broadcast import BroadcastCoordinator
from vpnshop.flows.watchdog import WatchdogLoop
from vpnshop.services.vpn_provider import build_provider
from vpnshop.telegram import handlers_admin as admin
from vpnshop.telegram import handlers_flash as flash
from vpnshop.telegram import handlers_support as support
from vpnshop.telegram import handlers_user as user
from vpnshop.telegram.keyboards import decode_payload
from vpnshop.telegram.router import DispatchRouter, Route
from vpnshop.telegram.utils import RUNTIME_KEY, BotRuntime, actor_of, get_runtime

logger = logging.getLogger(__name__)

_bot_app: Optional[Application] = None
_bot_loop: Optional[asyncio.AbstractEventLoop] = None

COMMANDS = [
    ("start", user.handle_start),
    ("help", support.show_support_hub),
    ("tariffs", user.show_tariffs),
    ("mysubs", user.show_subscriptions),
    ("privacy", user.show_privacy),
    ("stop_support", support.cmd_stop_support),
    ("cancel", user.handle_cancel),
    # staff
    ("admin", admin.admin_panel),
    ("stats", admin.admin_stats),
    ("find", admin.cmd_find),
    ("addbal", admin.cmd_addbal),
    ("gift", admin.cmd_gift),
    ("issue", admin.admin_issue),
    ("broadcast", admin.admin_broadcast),
    ("flashsale", flash.cmd_flashsale),
    ("stopsale", flash.flash_stop),
    ("tickets", support.show_ticket_dashboard),
    ("ahelp", admin.admin_help),
    ("watchdog_test", admin.watchdog_test),
    ("init_dashboard", support.cmd_init_dashboard),
]

CALLBACKS = {
    # storefront
    "menu": user.show_menu,
    "delete_msg": user.delete_message,
    "tariffs": user.show_tariffs,
    "product": user.show_product,
    "plan": user.select_plan,
    "pay_balance": user.pay_with_balance,
    "mysubs": user.show_subscriptions,
    "sub": user.show_subscription,
    "copy_key": user.copy_key,
    "extend": user.extend_menu,
    "extend_pay": user.extend_pay,
    "balance": user.show_balance,
    "topup": user.topup_instructions,
    "promo_enter": user.promo_enter,
    "ref_system": user.show_referral,
    "ref_list": user.show_referral_list,
    "instruction": user.show_instruction,
    "instr": user.show_platform_instruction,
    "faq": user.show_faq,
    "privacy": user.show_privacy,
    # support, user side
    "help": support.show_support_hub,
    "back_to_support_hub": support.show_support_hub,
    "ticket_create": support.ticket_create,
    "ticket_my": support.ticket_my,
    "ticket_reply": support.ticket_reply,
    "ticket_cancel_reply": support.exit_support,
    "ticket_solve": support.ticket_solve,
    "exit_support": support.leave_support_hub,
    # support, staff side
    "support_reply": support.support_reply_start,
    "admin_close_ticket": support.admin_close_ticket,
    "admin_reply_cancel": support.support_reply_cancel,
    # staff
    "admin_panel": admin.admin_panel,
    "admin_stats": admin.admin_stats,
    "admin_top_ref": admin.admin_top_referrers,
    "admin_promo_stats": admin.admin_promo_stats,
    "admin_cancel": admin.admin_cancel,
    "admin_find": admin.admin_find,
    "admin_addbal": admin.admin_addbal,
    "admin_addbal_amount": admin.admin_addbal_amount,
    "admin_gift": admin.admin_gift,
    "admin_gift_product": admin.admin_gift_product,
    "admin_gift_days": admin.admin_gift_days,
    "admin_issue": admin.admin_issue,
    "issue_product": admin.issue_product,
    "issue_days": admin.issue_days,
    "issue_no_user": admin.issue_no_user,
    "admin_promo": admin.admin_promo,
    "promo_create": admin.promo_create,
    "promo_list": admin.promo_list,
    "promo_delete": admin.promo_delete,
    "admin_broadcast": admin.admin_broadcast,
    "broadcast_confirm": admin.broadcast_confirm,
    "broadcast_cancel": admin.broadcast_cancel,
    "broadcast_stop": admin.broadcast_stop,
    # flash sale
    "admin_flash": flash.admin_flash,
    "flash_quick": flash.flash_quick,
    "flash_manual": flash.flash_manual,
    "flash_pct": flash.flash_percent,
    "flash_hours": flash.flash_hours,
    "flash_confirm": flash.flash_confirm,
    "flash_cancel": flash.flash_cancel,
    "flash_stop": flash.flash_stop,
}

# These answer the callback query themselves (toast text)
SELF_ANSWERING = {"support_reply", "admin_close_ticket", "copy_key"}

MESSAGE_ROUTES = {
    Route.STAFF_REPLY: support.handle_staff_reply,
    Route.PROMO_ENTRY: user.handle_promo_input,
    Route.SUPPORT_FORWARD: support.handle_support_forward,
    Route.SUPPORT_REPLY: support.handle_support_reply_input,
    Route.BROADCAST_CAPTURE: admin.handle_broadcast_capture,
    Route.BALANCE_TOPUP: admin.handle_balance_topup_input,
    Route.USER_SEARCH: admin.handle_user_search_input,
    Route.KEY_ISSUE: admin.handle_issue_target_input,
    Route.PROMO_CREATE: admin.handle_promo_create_input,
    Route.PROMO_DELETE: admin.handle_promo_delete_input,
}


async def handle_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Decode ``action:field:...`` and dispatch to the button handler."""
    query = update.callback_query
    action, args = decode_payload(query.data or "")
    handler = CALLBACKS.get(action)
    if handler is None:
        logger.info(f"[Telegram] Unknown callback action: {action!r}")
        await query.answer()
        return

    if getattr(handler, "staff_only", False):
        actor_id, _ = actor_of(update)
        if not get_runtime(context).is_admin(actor_id):
            AuditLog.log_access_denied(actor_id, action)
            await query.answer("⛔ Нет доступа")
            return

    if action not in SELF_ANSWERING:
        await query.answer()
    await handler(update, context, args)


async def handle_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    logger.error(f"[Telegram] Update handling failed: {context.error}", exc_info=context.error)


def build_runtime() -> BotRuntime:
    return BotRuntime(
        session_factory=SessionLocal,
        provider=build_provider(),
        admin_ids=set(settings.ADMIN_IDS),
        support_group_id=settings.SUPPORT_GROUP_ID,
        coordinator=BroadcastCoordinator(build_broadcast_limiter, settings.BROADCAST_PROGRESS_EVERY),
    )


def build_application(runtime: Optional[BotRuntime] = None) -> Application:
    app = Application.builder().token(settings.TELEGRAM_BOT_TOKEN).build()
    app.bot_data[RUNTIME_KEY] = runtime or build_runtime()

    for name, handler in COMMANDS:
        app.add_handler(CommandHandler(name, handler))
    app.add_handler(CallbackQueryHandler(handle_callback))

    inbound = (filters.TEXT & ~filters.COMMAND) | filters.PHOTO | filters.Document.ALL | filters.VIDEO
    app.add_handler(MessageHandler(inbound, DispatchRouter(MESSAGE_ROUTES)))
    app.add_error_handler(handle_error)
    return app


def _start_watchdog(app: Application) -> None:
    rt = app.bot_data[RUNTIME_KEY]

    async def notify_staff(text: str) -> None:
        for admin_id in rt.admin_ids:
            try:
                await app.bot.send_message(chat_id=admin_id, text=text, parse_mode=ParseMode.MARKDOWN)
            except error.TelegramError as e:
                logger.warning(f"[Watchdog] Alert to {admin_id} failed: {e}")

    rt.watchdog = WatchdogLoop(rt.provider, notify_staff)
    rt.watchdog.start()


async def _start_polling_with_retry(app, max_retries=3, initial_backoff=2):
    for attempt in range(max_retries):
        try:
            print(f"[Telegram] Starting polling (attempt {attempt + 1}/{max_retries})...")
            await app.updater.start_polling(drop_pending_updates=True)
            print("[Telegram] ✓ Polling started")
            return True
        except error.Conflict as e:
            if attempt < max_retries - 1:
                backoff = initial_backoff * (2 ** attempt)
                print(f"[Telegram] ⚠ Conflict: {e}. Retrying in {backoff}s...")
                await asyncio.sleep(backoff)
            else:
                print(f"[Telegram] ✗ Failed after {max_retries} retries. Bot disabled. Error: {e}")
                return False
        except Exception as e:
            print(f"[Telegram] Unexpected error: {e}")
            return False


def _run_bot():
    global _bot_app, _bot_loop
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    _bot_loop = loop

    try:
        _bot_app = build_application()
        loop.run_until_complete(_bot_app.initialize())
        loop.run_until_complete(_bot_app.start())
        if loop.run_until_complete(_start_polling_with_retry(_bot_app)):
            _start_watchdog(_bot_app)
        loop.run_forever()
    except Exception as e:
        print(f"[Telegram] Bot error: {e}")
    finally:
        try:
            if _bot_app:
                loop.run_until_complete(_bot_app.shutdown())
        except Exception as e:
            print(f"[Telegram] Shutdown error: {e}")
        loop.close()


def start_bot_background():
    if not settings.TELEGRAM_BOT_TOKEN:
        return
    t = threading.Thread(target=_run_bot, daemon=True)
    t.start()


async def _stop_app(app: Application) -> None:
    rt = app.bot_data.get(RUNTIME_KEY)
    if rt is not None and rt.watchdog is not None:
        await rt.watchdog.stop()
    if app.updater and app.updater.running:
        await app.updater.stop()
    if app.running:
        await app.stop()


def stop_bot_background(timeout: float = 10.0):
    """Stop the watchdog and polling, then the bot loop. Called on FastAPI shutdown."""
    if _bot_app is None or _bot_loop is None or not _bot_loop.is_running():
        return
    future = asyncio.run_coroutine_threadsafe(_stop_app(_bot_app), _bot_loop)
    try:
        future.result(timeout=timeout)
    except Exception as e:
        print(f"[Telegram] Stop error: {e}")
    _bot_loop.call_soon_threadsafe(_bot_loop.stop)


def bot_status() -> dict:
    rt = current_runtime()
    percent, ends_at = rt.flash_sale.snapshot() if rt else (0, None)
    return {
        "bot": bool(_bot_app is not None and _bot_app.running),
        "broadcast_running": bool(rt and rt.coordinator.is_running),
        "flash_sale": {"percent": percent, "ends_at": ends_at.isoformat() if ends_at else None},
    }


def current_runtime() -> Optional[BotRuntime]:
    return _bot_app.bot_data.get(RUNTIME_KEY) if _bot_app else None


async def send_telegram_message(chat_id: int | str, message: str) -> bool:
    """Send a Markdown message from the running bot. True if sent."""
    if not _bot_app:
        logger.warning("[Telegram] Bot not initialized")
        return False
    try:
        await _bot_app.bot.send_message(chat_id=int(chat_id), text=message, parse_mode=ParseMode.MARKDOWN)
        return True
    except error.TelegramError as e:
        logger.warning(f"[Telegram] Failed to send message to {chat_id}: {e}")
        return False
