"""
Support desk relay between users and the staff group.

User messages are re-posted to the staff group with a header carrying the
ticket tag ``#user_<id>``. Staff answer by replying to such a post; the tag
(or the forward origin) identifies the user to deliver the answer to. The tag
format lives only in encode_ticket_tag/decode_ticket_tag.

Open tickets are tracked in memory and summarised on a pinned dashboard
message in the staff group.
"""
import logging
import re
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, List, Optional

from telegram import LinkPreviewOptions
from telegram.constants import ParseMode
from telegram.error import BadRequest, Forbidden, TelegramError
from telegram.helpers import escape_markdown

from vpnshop.core.audit import AuditLog
from vpnshop.core.exceptions import DeliveryFailed, RouteNotFound
from vpnshop.flows.conversation import ConversationRegistry, FlowKind
from vpnshop.telegram import keyboards

logger = logging.getLogger(__name__)

TICKET_TAG_RE = re.compile(r"#user_(\d+)")
HEADER_RULE = "━━━━━━━━━━━━━━━━━━━━"
CAPTION_LIMIT = 1024
MESSAGE_LIMIT = 4096
DASHBOARD_LIMIT = 15
NO_PREVIEW = LinkPreviewOptions(is_disabled=True)


def encode_ticket_tag(user_id: int) -> str:
    return f"#user_{user_id}"


def decode_ticket_tag(text: Optional[str]) -> Optional[int]:
    if not text:
        return None
    match = TICKET_TAG_RE.search(text)
    return int(match.group(1)) if match else None


class TicketStatus:
    WAITING = "waiting"
    REPLIED = "replied"


@dataclass
class Ticket:
    user_id: int
    username: str
    last_activity: datetime
    status: str = TicketStatus.WAITING
    post_message_id: Optional[int] = None
    message_count: int = 0


class TicketRegistry:
    """At most one open ticket per user. Returned tickets are copies."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or datetime.now
        self._lock = threading.Lock()
        self._tickets = {}
        self._dashboard_message_id: Optional[int] = None

    def now(self) -> datetime:
        return self._clock()

    def upsert(self, user_id: int, username: str, post_message_id: Optional[int]) -> Ticket:
        with self._lock:
            ticket = self._tickets.get(user_id)
            if ticket is None:
                ticket = Ticket(user_id=user_id, username=username, last_activity=self._clock())
                self._tickets[user_id] = ticket
            ticket.username = username or ticket.username
            ticket.status = TicketStatus.WAITING
            ticket.last_activity = self._clock()
            ticket.message_count += 1
            if post_message_id is not None:
                ticket.post_message_id = post_message_id
            return replace(ticket)

    def mark_replied(self, user_id: int) -> bool:
        with self._lock:
            ticket = self._tickets.get(user_id)
            if ticket is None:
                return False
            ticket.status = TicketStatus.REPLIED
            ticket.last_activity = self._clock()
            return True

    def remove(self, user_id: int) -> Optional[Ticket]:
        with self._lock:
            return self._tickets.pop(user_id, None)

    def get(self, user_id: int) -> Optional[Ticket]:
        with self._lock:
            ticket = self._tickets.get(user_id)
            return replace(ticket) if ticket else None

    def listing(self) -> List[Ticket]:
        """Waiting tickets first, oldest activity first within each group."""
        with self._lock:
            tickets = [replace(t) for t in self._tickets.values()]
        return sorted(tickets, key=lambda t: (t.status != TicketStatus.WAITING, t.last_activity))

    def waiting_count(self) -> int:
        with self._lock:
            return sum(1 for t in self._tickets.values() if t.status == TicketStatus.WAITING)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tickets)

    @property
    def dashboard_message_id(self) -> Optional[int]:
        with self._lock:
            return self._dashboard_message_id

    @dashboard_message_id.setter
    def dashboard_message_id(self, message_id: Optional[int]) -> None:
        with self._lock:
            self._dashboard_message_id = message_id


def display_name(username: Optional[str]) -> str:
    return f"@{username}" if username else "нет"


def build_ticket_header(user_id: int, username: Optional[str], balance: float) -> str:
    return (
        f"🎫 {encode_ticket_tag(user_id)}\n"
        f"👤 {display_name(username)} | 💰 {balance:.0f} ₽\n"
        f"{HEADER_RULE}\n"
    )


def _origin_sender_id(message) -> Optional[int]:
    origin = getattr(message, "forward_origin", None)
    sender = getattr(origin, "sender_user", None) if origin else None
    return sender.id if sender else None


def resolve_reply_target(message) -> int:
    """
    Find the user a staff reply is meant for.

    Checked in order: replied-to text, its caption, its forward origin, and
    the text/caption of the message it in turn replied to.
    """
    parent = getattr(message, "reply_to_message", None)
    if parent is None:
        raise RouteNotFound("not a reply")

    for text in (parent.text, parent.caption):
        user_id = decode_ticket_tag(text)
        if user_id is not None:
            return user_id

    user_id = _origin_sender_id(parent)
    if user_id is not None:
        return user_id

    nested = getattr(parent, "reply_to_message", None)
    if nested is not None:
        for text in (nested.text, nested.caption):
            user_id = decode_ticket_tag(text)
            if user_id is not None:
                return user_id

    raise RouteNotFound("no ticket tag in reply chain")


def wait_text(delta_seconds: float) -> str:
    minutes = int(delta_seconds // 60)
    if minutes < 1:
        return "только что"
    if minutes < 60:
        return f"{minutes} мин"
    hours, minutes = divmod(minutes, 60)
    if hours < 24:
        return f"{hours} ч {minutes} мин"
    return f"{hours // 24} д"


def post_link(group_id: int, message_id: int) -> str:
    chat = str(abs(group_id))
    if chat.startswith("100"):
        chat = chat[3:]
    return f"https://t.me/c/{chat}/{message_id}"


def render_dashboard(tickets: List[Ticket], group_id: int, now: datetime, limit: int = DASHBOARD_LIMIT) -> str:
    waiting = sum(1 for t in tickets if t.status == TicketStatus.WAITING)
    lines = [
        "📊 *Панель управления поддержкой*",
        "",
        f"🔴 Ожидают ответа: *{waiting}*",
        f"📋 Всего открыто: *{len(tickets)}*",
        "",
    ]
    if not tickets:
        lines.append("✅ Нет открытых обращений")
    for i, t in enumerate(tickets[:limit], 1):
        name = escape_markdown(display_name(t.username), version=1)
        label = f"[{name}]({post_link(group_id, t.post_message_id)})" if t.post_message_id else name
        if t.status == TicketStatus.WAITING:
            status = f"🔴 ждёт {wait_text((now - t.last_activity).total_seconds())}"
        else:
            status = "🟢 ✅ Отвечено"
        lines.append(f"{i}. {label} - {status}")
    if len(tickets) > limit:
        lines.append(f"_... и ещё {len(tickets) - limit} обращений_")
    lines += ["", f"🕐 Обновлено: {now:%H:%M}"]
    return "\n".join(lines)


def _truncate(text: str, limit: int = CAPTION_LIMIT) -> str:
    return text if len(text) <= limit else text[: limit - 1] + "…"


class SupportTicketBridge:
    def __init__(self, registry: ConversationRegistry, tickets: TicketRegistry, support_group_id: int):
        self.registry = registry
        self.tickets = tickets
        self.support_group_id = support_group_id

    async def forward_to_staff(self, bot, message, user_id: int, username: Optional[str], balance: float):
        """Re-post a user message to the staff group and open/refresh the ticket."""
        header = build_ticket_header(user_id, username, balance)
        markup = keyboards.close_ticket_keyboard(user_id)
        gid = self.support_group_id

        if message.photo:
            post = await bot.send_photo(
                chat_id=gid, photo=message.photo[-1].file_id,
                caption=_truncate(header + (message.caption or "[Фото без подписи]")), reply_markup=markup,
            )
        elif message.document:
            post = await bot.send_document(
                chat_id=gid, document=message.document.file_id,
                caption=_truncate(header + (message.caption or "[Документ]")), reply_markup=markup,
            )
        elif message.video:
            post = await bot.send_video(
                chat_id=gid, video=message.video.file_id,
                caption=_truncate(header + (message.caption or "[Видео]")), reply_markup=markup,
            )
        else:
            post = await bot.send_message(
                chat_id=gid, text=_truncate(header + (message.text or "[Сообщение]"), MESSAGE_LIMIT),
                reply_markup=markup,
            )

        ticket = self.tickets.upsert(user_id, username or "", post.message_id)
        AuditLog.log_ticket("open" if ticket.message_count == 1 else "message", user_id)
        logger.info(f"[Support] Ticket {encode_ticket_tag(user_id)} message #{ticket.message_count}")
        await self.refresh_dashboard(bot)
        return post

    async def route_staff_reply(self, bot, message) -> int:
        """
        Deliver a staff reply to the ticket owner.

        Raises RouteNotFound when the reply chain has no ticket reference and
        DeliveryFailed when the user cannot be reached.
        """
        user_id = resolve_reply_target(message)
        await self.deliver_staff_answer(bot, user_id, message)
        staff = getattr(message, "from_user", None)
        AuditLog.log_ticket("reply", user_id, staff.id if staff else None)
        return user_id

    async def deliver_staff_answer(self, bot, user_id: int, message) -> None:
        markup = keyboards.ticket_answer_keyboard()
        try:
            if message.photo:
                await bot.send_photo(
                    chat_id=user_id, photo=message.photo[-1].file_id,
                    caption=_truncate("👨‍💻 Поддержка:\n\n" + (message.caption or "")), reply_markup=markup,
                )
            elif message.document:
                await bot.send_document(
                    chat_id=user_id, document=message.document.file_id,
                    caption=_truncate("👨‍💻 Поддержка:\n\n" + (message.caption or "")), reply_markup=markup,
                )
            elif message.video:
                await bot.send_video(
                    chat_id=user_id, video=message.video.file_id,
                    caption=_truncate("👨‍💻 Поддержка:\n\n" + (message.caption or "")), reply_markup=markup,
                )
            else:
                try:
                    await bot.send_message(
                        chat_id=user_id, text=_truncate(f"👨‍💻 *Поддержка:*\n\n{message.text}", MESSAGE_LIMIT),
                        parse_mode=ParseMode.MARKDOWN, reply_markup=markup,
                    )
                except BadRequest as e:
                    if "parse entities" not in str(e).lower():
                        raise
                    await bot.send_message(
                        chat_id=user_id, text=_truncate(f"👨‍💻 Поддержка:\n\n{message.text}", MESSAGE_LIMIT),
                        reply_markup=markup,
                    )
        except Forbidden as e:
            raise DeliveryFailed(user_id, str(e), unreachable=True) from e
        except TelegramError as e:
            raise DeliveryFailed(user_id, str(e)) from e

        self.tickets.mark_replied(user_id)
        logger.info(f"[Support] Reply delivered to {encode_ticket_tag(user_id)}")
        await self.refresh_dashboard(bot)

    async def close_ticket(self, bot, user_id: int, closed_by: Optional[str], post=None) -> bool:
        """
        Staff closes a ticket. Returns False if it was already closed.

        ``post`` is the staff-group message holding the close button; it is
        rewritten to a closed marker without buttons. For an already closed
        ticket only the buttons are removed.
        """
        self.registry.exit(FlowKind.SUPPORT_MODE, user_id)
        ticket = self.tickets.remove(user_id)
        if ticket is None:
            logger.info(f"[Support] Ticket {encode_ticket_tag(user_id)} already closed")
            if post is not None:
                await self._strip_buttons(bot, post)
            return False

        try:
            await bot.send_message(
                chat_id=user_id,
                text="✅ *Тикет закрыт*\n\nОператор завершил обращение. "
                     "Если вопрос остался, создайте новый тикет в разделе поддержки.",
                parse_mode=ParseMode.MARKDOWN,
                reply_markup=keyboards.back_to_menu_keyboard(),
            )
        except TelegramError as e:
            logger.warning(f"[Support] Close notice to {user_id} failed: {e}")

        if post is not None:
            original = post.text or post.caption or ""
            closed = f"✅ Тикет закрыт\n\n{original}\n\nЗакрыл: {display_name(closed_by)}"
            try:
                if post.text is not None:
                    await bot.edit_message_text(
                        chat_id=post.chat_id, message_id=post.message_id,
                        text=_truncate(closed, MESSAGE_LIMIT), reply_markup=None,
                    )
                else:
                    await bot.edit_message_caption(
                        chat_id=post.chat_id, message_id=post.message_id,
                        caption=_truncate(closed), reply_markup=None,
                    )
            except TelegramError as e:
                logger.warning(f"[Support] Could not mark post closed: {e}")

        AuditLog.log_ticket("close", user_id)
        await self.refresh_dashboard(bot)
        return True

    async def _strip_buttons(self, bot, post) -> None:
        try:
            await bot.edit_message_reply_markup(chat_id=post.chat_id, message_id=post.message_id, reply_markup=None)
        except BadRequest as e:
            # already stripped
            logger.debug(f"[Support] Post {post.message_id} unchanged: {e}")
        except TelegramError as e:
            logger.warning(f"[Support] Could not strip buttons of post {post.message_id}: {e}")

    async def resolve_by_user(self, bot, user_id: int, username: Optional[str]) -> bool:
        """User marked their issue solved."""
        self.registry.exit(FlowKind.SUPPORT_MODE, user_id)
        ticket = self.tickets.remove(user_id)
        if ticket is None:
            return False
        try:
            await bot.send_message(
                chat_id=self.support_group_id,
                text=f"✅ Тикет закрыт пользователем\n\n🎫 {encode_ticket_tag(user_id)} | {display_name(username)}",
            )
        except TelegramError as e:
            logger.warning(f"[Support] Could not notify staff group: {e}")
        AuditLog.log_ticket("close", user_id, user_id)
        await self.refresh_dashboard(bot)
        return True

    def dashboard_text(self) -> str:
        return render_dashboard(self.tickets.listing(), self.support_group_id, self.tickets.now())

    async def init_dashboard(self, bot) -> int:
        msg = await bot.send_message(
            chat_id=self.support_group_id, text=self.dashboard_text(), parse_mode=ParseMode.MARKDOWN,
            link_preview_options=NO_PREVIEW,
        )
        try:
            await bot.pin_chat_message(chat_id=self.support_group_id, message_id=msg.message_id, disable_notification=True)
        except TelegramError as e:
            logger.warning(f"[Support] Could not pin dashboard: {e}")
        self.tickets.dashboard_message_id = msg.message_id
        return msg.message_id

    async def refresh_dashboard(self, bot) -> None:
        message_id = self.tickets.dashboard_message_id
        if message_id is None:
            return
        try:
            await bot.edit_message_text(
                chat_id=self.support_group_id, message_id=message_id, text=self.dashboard_text(),
                parse_mode=ParseMode.MARKDOWN, link_preview_options=NO_PREVIEW,
            )
        except BadRequest as e:
            if "not modified" not in str(e).lower():
                logger.warning(f"[Support] Dashboard update failed: {e}")
        except TelegramError as e:
            logger.warning(f"[Support] Dashboard update failed: {e}")
