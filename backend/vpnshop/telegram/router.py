"""
Single entry point for inbound text and media messages.

``decide`` is a pure function of (event, active slots, staff flag) that picks
exactly one route by fixed precedence:

    1. staff group reply           -> staff reply to ticket owner
       (any other staff group message is ignored)
    2. user in promo entry         -> promo code submission      (text only)
    3. actor in support mode       -> forward to staff group
    4. non-staff actor             -> drop
    5. staff in support reply      -> answer that ticket          (text only)
    6. staff broadcast draft       -> capture broadcast payload
    7. staff wizard step input     -> balance top-up, user search,
       key issue target, promo create, promo delete              (text only)
    8. otherwise                   -> nothing

``DispatchRouter`` maps the chosen route to its handler.
"""
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from telegram import Update
from telegram.constants import ChatType
from telegram.ext import ContextTypes

from vpnshop.flows.conversation import BroadcastStage, ConversationRegistry, FlowKind, IssueDraft
from vpnshop.telegram.utils import get_runtime

logger = logging.getLogger(__name__)


class Route:
    IGNORE = "ignore"
    STAFF_REPLY = "staff_reply"
    PROMO_ENTRY = "promo_entry"
    SUPPORT_FORWARD = "support_forward"
    DROP = "drop"
    SUPPORT_REPLY = "support_reply"
    BROADCAST_CAPTURE = "broadcast_capture"
    BALANCE_TOPUP = "balance_topup"
    USER_SEARCH = "user_search"
    KEY_ISSUE = "key_issue"
    PROMO_CREATE = "promo_create"
    PROMO_DELETE = "promo_delete"
    NOOP = "noop"


@dataclass(frozen=True)
class InboundEvent:
    actor_id: int
    chat_id: int
    is_private: bool
    is_reply: bool = False
    is_media: bool = False

    @classmethod
    def from_update(cls, update: Update) -> Optional["InboundEvent"]:
        message = update.effective_message
        user = update.effective_user
        if message is None or user is None:
            return None
        chat = update.effective_chat
        return cls(
            actor_id=user.id,
            chat_id=chat.id,
            is_private=chat.type == ChatType.PRIVATE,
            is_reply=message.reply_to_message is not None,
            is_media=bool(message.photo or message.document or message.video),
        )


def _issue_awaits_target(state) -> bool:
    return isinstance(state, IssueDraft) and state.step == 3


def decide(registry: ConversationRegistry, event: InboundEvent, is_staff: bool, support_group_id: int) -> str:
    actor = event.actor_id
    text_only = not event.is_media

    if not event.is_private:
        if event.chat_id == support_group_id and event.is_reply:
            return Route.STAFF_REPLY
        return Route.IGNORE

    if not is_staff and text_only and registry.is_active(FlowKind.PROMO_ENTRY, actor):
        return Route.PROMO_ENTRY

    if registry.is_active(FlowKind.SUPPORT_MODE, actor):
        return Route.SUPPORT_FORWARD

    if not is_staff:
        return Route.DROP

    if text_only and registry.is_active(FlowKind.SUPPORT_REPLY, actor):
        return Route.SUPPORT_REPLY

    draft = registry.peek(FlowKind.BROADCAST, actor)
    if draft is not None and draft.stage == BroadcastStage.AWAITING_MESSAGE:
        return Route.BROADCAST_CAPTURE

    if text_only:
        if registry.is_active(FlowKind.BALANCE_TOPUP, actor):
            return Route.BALANCE_TOPUP
        if registry.is_active(FlowKind.USER_SEARCH, actor):
            return Route.USER_SEARCH
        if _issue_awaits_target(registry.peek(FlowKind.KEY_ISSUE, actor)):
            return Route.KEY_ISSUE
        if registry.is_active(FlowKind.PROMO_CREATE, actor):
            return Route.PROMO_CREATE
        if registry.is_active(FlowKind.PROMO_DELETE, actor):
            return Route.PROMO_DELETE

    return Route.NOOP


Handler = Callable[[Update, ContextTypes.DEFAULT_TYPE], Awaitable[None]]


class DispatchRouter:
    """Picks a route for each inbound message and invokes its handler."""

    def __init__(self, handlers: Dict[str, Handler]):
        self.handlers = handlers

    def route_for(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> str:
        event = InboundEvent.from_update(update)
        if event is None:
            return Route.IGNORE
        rt = get_runtime(context)
        return decide(rt.registry, event, rt.is_admin(event.actor_id), rt.support_group_id)

    async def __call__(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        route = self.route_for(update, context)
        handler = self.handlers.get(route)
        if handler is None:
            logger.debug(f"[Router] {route}: no handler")
            return
        logger.debug(f"[Router] {route}")
        await handler(update, context)
