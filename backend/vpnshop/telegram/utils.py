"""
Shared bot runtime and small helpers used by all handler modules.

The runtime bundles the in-memory stores (conversation slots, tickets, flash
sale), the background job owners and the storage/provisioning backends. One
instance lives in ``application.bot_data["runtime"]``; tests build their own.
"""
import functools
from contextlib import contextmanager
import math
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Set

from sqlalchemy.orm import Session
from telegram import Update
from telegram.constants import ParseMode
from telegram.error import BadRequest
from telegram.ext import ContextTypes

from vpnshop.core.audit import AuditLog
from vpnshop.flows.broadcast import BroadcastCoordinator
from vpnshop.flows.conversation import ConversationRegistry
from vpnshop.flows.flash_sale import FlashSale
from vpnshop.flows.support import SupportTicketBridge, TicketRegistry
from vpnshop.services.vpn_provider import VPNProvider

logger = logging.getLogger(__name__)

RUNTIME_KEY = "runtime"


@dataclass
class BotRuntime:
    session_factory: Callable[[], Session]
    provider: VPNProvider
    admin_ids: Set[int]
    support_group_id: int
    registry: ConversationRegistry = field(default_factory=ConversationRegistry)
    tickets: TicketRegistry = field(default_factory=TicketRegistry)
    flash_sale: FlashSale = field(default_factory=FlashSale)
    coordinator: BroadcastCoordinator = field(default_factory=BroadcastCoordinator)
    watchdog: Optional[object] = None
    bridge: Optional[SupportTicketBridge] = None

    def __post_init__(self):
        if self.bridge is None:
            self.bridge = SupportTicketBridge(self.registry, self.tickets, self.support_group_id)

    def is_admin(self, telegram_id: Optional[int]) -> bool:
        return telegram_id is not None and telegram_id in self.admin_ids


def get_runtime(context: ContextTypes.DEFAULT_TYPE) -> BotRuntime:
    return context.bot_data[RUNTIME_KEY]


def actor_of(update: Update):
    """(telegram id, username) of whoever triggered the update."""
    user = update.effective_user
    if user is None:
        return None, None
    return user.id, user.username


async def respond(update: Update, text: str, reply_markup=None, parse_mode: Optional[str] = ParseMode.MARKDOWN):
    """
    Answer in place for button presses (edit the menu message), otherwise
    send a new message. Falls back to a new message when the edit fails,
    e.g. the menu message was a photo.
    """
    query = update.callback_query
    if query is not None and query.message is not None:
        try:
            return await query.edit_message_text(text, reply_markup=reply_markup, parse_mode=parse_mode)
        except BadRequest as e:
            if "not modified" in str(e).lower():
                return None
            logger.debug(f"[Telegram] Edit failed, sending new message: {e}")
        return await query.message.reply_text(text, reply_markup=reply_markup, parse_mode=parse_mode)
    return await update.effective_message.reply_text(text, reply_markup=reply_markup, parse_mode=parse_mode)


def admin_only(handler):
    """Silently ignore staff triggers from non-staff actors."""

    @functools.wraps(handler)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE, *args, **kwargs):
        rt = get_runtime(context)
        actor_id, _ = actor_of(update)
        if not rt.is_admin(actor_id):
            AuditLog.log_access_denied(actor_id, handler.__name__)
            if update.callback_query is not None:
                await update.callback_query.answer("⛔ Нет доступа")
            return None
        return await handler(update, context, *args, **kwargs)

    wrapper.staff_only = True
    return wrapper


def parse_int(text: Optional[str]) -> Optional[int]:
    text = (text or "").strip()
    if text.lstrip("-").isdigit():
        return int(text)
    return None


def parse_positive_number(text: Optional[str]) -> Optional[float]:
    try:
        value = float((text or "").strip().replace(",", "."))
    except ValueError:
        return None
    return value if value > 0 and math.isfinite(value) else None


@contextmanager
def session_scope(rt: BotRuntime):
    db = rt.session_factory()
    try:
        yield db
    finally:
        db.close()
