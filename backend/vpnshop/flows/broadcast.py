"""
Mass fan-out of one message to every user (broadcast and flash sale).

Only one fan-out may run at a time; broadcast and flash sale share the
running flag. ``launch`` snapshots the recipient list, starts the send loop as
an asyncio task on the bot loop and returns a handle immediately. The loop
walks recipients in snapshot order, waits on the rate limiter before every
send and never aborts on a single failure. When it ends (normally, by
cancellation or by error) the flag is cleared first and the initiator then
gets exactly one summary.
"""
import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional

from telegram.error import BadRequest, Forbidden

from vpnshop.core.audit import AuditLog
from vpnshop.core.config import settings
from vpnshop.core.exceptions import AlreadyRunning, DeliveryFailed, UpstreamUnavailable
from vpnshop.core.rate_limiter import RateLimitedDispatcher, build_broadcast_limiter

logger = logging.getLogger(__name__)


class PayloadKind:
    TEXT = "text"
    PHOTO = "photo"
    DOCUMENT = "document"
    VIDEO = "video"


@dataclass(frozen=True)
class BroadcastPayload:
    kind: str
    text: str = ""  # message text, or caption for media
    file_id: str = ""
    parse_mode: Optional[str] = None
    reply_markup: Any = None

    @classmethod
    def from_message(cls, message) -> Optional["BroadcastPayload"]:
        """Capture what staff sent. Returns None for unsupported content."""
        caption = message.caption or ""
        if message.photo:
            return cls(PayloadKind.PHOTO, caption, message.photo[-1].file_id)
        if message.document:
            return cls(PayloadKind.DOCUMENT, caption, message.document.file_id)
        if message.video:
            return cls(PayloadKind.VIDEO, caption, message.video.file_id)
        if message.text:
            return cls(PayloadKind.TEXT, message.text)
        return None


async def send_payload(bot, chat_id: int, payload: BroadcastPayload, reply_markup=None):
    markup = reply_markup if reply_markup is not None else payload.reply_markup
    caption = payload.text or None
    if payload.kind == PayloadKind.PHOTO:
        return await bot.send_photo(
            chat_id=chat_id, photo=payload.file_id, caption=caption,
            parse_mode=payload.parse_mode, reply_markup=markup,
        )
    if payload.kind == PayloadKind.DOCUMENT:
        return await bot.send_document(
            chat_id=chat_id, document=payload.file_id, caption=caption,
            parse_mode=payload.parse_mode, reply_markup=markup,
        )
    if payload.kind == PayloadKind.VIDEO:
        return await bot.send_video(
            chat_id=chat_id, video=payload.file_id, caption=caption,
            parse_mode=payload.parse_mode, reply_markup=markup,
        )
    return await bot.send_message(
        chat_id=chat_id, text=payload.text, parse_mode=payload.parse_mode, reply_markup=markup,
    )


@dataclass
class BroadcastReport:
    sent: int = 0
    failed: int = 0
    total: int = 0
    # blocked / deactivated recipients, included in ``failed``
    unreachable: int = 0
    cancelled: bool = False


class BroadcastHandle:
    def __init__(self, label: str, initiator_id: int, total: int):
        self.label = label
        self.initiator_id = initiator_id
        self.total = total
        self._cancel_requested = False
        self._task: Optional[asyncio.Task] = None

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def cancel(self) -> None:
        """Ask the loop to stop before its next send."""
        if not self._cancel_requested:
            self._cancel_requested = True
            AuditLog.log_broadcast("cancel", self.label, self.initiator_id)

    def done(self) -> bool:
        return self._task is not None and self._task.done()

    async def wait(self) -> BroadcastReport:
        return await self._task


def _is_unreachable(exc: Exception) -> bool:
    if isinstance(exc, Forbidden):
        return True
    if isinstance(exc, DeliveryFailed):
        return exc.unreachable
    if isinstance(exc, BadRequest):
        return "chat not found" in str(exc).lower()
    return False


class BroadcastCoordinator:
    """Owns the single running flag and launches fan-out tasks."""

    def __init__(
        self,
        limiter_factory: Callable[[], RateLimitedDispatcher] = build_broadcast_limiter,
        progress_every: int = settings.BROADCAST_PROGRESS_EVERY,
    ):
        self._limiter_factory = limiter_factory
        self.progress_every = progress_every
        self._lock = threading.Lock()
        self._running = False
        self._current: Optional[BroadcastHandle] = None

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def current(self) -> Optional[BroadcastHandle]:
        with self._lock:
            return self._current

    def _release(self, handle: BroadcastHandle) -> None:
        with self._lock:
            self._running = False
            if self._current is handle:
                self._current = None

    def launch(
        self,
        label: str,
        initiator_id: int,
        recipients_loader: Callable[[], List[int]],
        deliver: Callable[[int], Awaitable[Any]],
        on_finish: Callable[[BroadcastReport], Awaitable[Any]],
        on_progress: Optional[Callable[[int, int], Awaitable[Any]]] = None,
        on_start: Optional[Callable[[], Any]] = None,
    ) -> BroadcastHandle:
        """
        Start a fan-out and return immediately.

        Raises AlreadyRunning if a fan-out is in progress, UpstreamUnavailable
        if the recipient list cannot be loaded (nothing is sent). ``on_start``
        runs after the snapshot, before the first send.
        """
        with self._lock:
            if self._running:
                raise AlreadyRunning(f"{label} refused, fan-out in progress")
            self._running = True

        try:
            recipients = list(recipients_loader())
        except Exception as e:
            logger.error(f"[Broadcast] Recipient snapshot failed: {e}")
            with self._lock:
                self._running = False
            raise UpstreamUnavailable("recipient list unavailable") from e

        handle = BroadcastHandle(label, initiator_id, len(recipients))
        try:
            if on_start is not None:
                on_start()
            handle._task = asyncio.get_running_loop().create_task(
                self._run(handle, recipients, deliver, on_finish, on_progress)
            )
        except Exception:
            self._release(handle)
            raise

        with self._lock:
            self._current = handle
        AuditLog.log_broadcast("launch", label, initiator_id, {"total": len(recipients)})
        logger.info(f"[Broadcast] {label} started by {initiator_id}: {len(recipients)} recipients")
        return handle

    async def _run(self, handle, recipients, deliver, on_finish, on_progress) -> BroadcastReport:
        report = BroadcastReport(total=len(recipients))
        limiter = self._limiter_factory()
        try:
            for chat_id in recipients:
                if handle.cancel_requested:
                    report.cancelled = True
                    break

                await limiter.wait()
                try:
                    await deliver(chat_id)
                    report.sent += 1
                except Exception as e:
                    report.failed += 1
                    if _is_unreachable(e):
                        report.unreachable += 1
                        logger.debug(f"[Broadcast] {chat_id} unreachable: {e}")
                    else:
                        logger.warning(f"[Broadcast] Send to {chat_id} failed: {e}")

                done = report.sent + report.failed
                if on_progress and report.total > self.progress_every and done % self.progress_every == 0:
                    try:
                        await on_progress(done, report.total)
                    except Exception as e:
                        logger.warning(f"[Broadcast] Progress update failed: {e}")
        finally:
            self._release(handle)
            logger.info(
                f"[Broadcast] {handle.label} finished: sent={report.sent} failed={report.failed} "
                f"total={report.total} cancelled={report.cancelled}"
            )
            AuditLog.log_broadcast("finish", handle.label, handle.initiator_id, {
                "sent": report.sent,
                "failed": report.failed,
                "total": report.total,
                "unreachable": report.unreachable,
                "cancelled": report.cancelled,
            })
            try:
                await on_finish(report)
            except Exception as e:
                logger.error(f"[Broadcast] Final summary failed: {e}", exc_info=True)
        return report
