"""Support desk relay: ticket tags, staff replies, closing, dashboard."""
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from telegram.error import Forbidden

from conftest import SUPPORT_GROUP_ID, make_bot, make_message
from vpnshop.core.exceptions import DeliveryFailed, RouteNotFound
from vpnshop.flows.conversation import ConversationRegistry, FlowKind
from vpnshop.flows.support import (
    MESSAGE_LIMIT,
    SupportTicketBridge,
    TicketRegistry,
    TicketStatus,
    decode_ticket_tag,
    encode_ticket_tag,
    render_dashboard,
    resolve_reply_target,
)

USER = 4242


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def make_bridge(clock=None):
    registry = ConversationRegistry()
    tickets = TicketRegistry(clock=clock or Clock(datetime(2026, 5, 1, 10, 0)))
    return SupportTicketBridge(registry, tickets, SUPPORT_GROUP_ID), registry, tickets


def test_ticket_tag_round_trip():
    tag = encode_ticket_tag(USER)
    assert decode_ticket_tag(f"🎫 {tag} | @bob") == USER
    assert decode_ticket_tag("no tag here") is None
    assert decode_ticket_tag(None) is None


def test_reply_target_from_parent_caption_and_forward_origin():
    post = make_message(SUPPORT_GROUP_ID, caption=f"header {encode_ticket_tag(USER)}")
    assert resolve_reply_target(make_message(SUPPORT_GROUP_ID, text="hi", reply_to=post)) == USER

    forwarded = make_message(SUPPORT_GROUP_ID, text="forwarded")
    forwarded.forward_origin = SimpleNamespace(sender_user=SimpleNamespace(id=77))
    assert resolve_reply_target(make_message(SUPPORT_GROUP_ID, text="hi", reply_to=forwarded)) == 77


def test_tampered_tag_raises_route_not_found():
    post = make_message(SUPPORT_GROUP_ID, text="header #user_abc")
    with pytest.raises(RouteNotFound):
        resolve_reply_target(make_message(SUPPORT_GROUP_ID, text="hi", reply_to=post))
    with pytest.raises(RouteNotFound):
        resolve_reply_target(make_message(SUPPORT_GROUP_ID, text="not a reply"))


@pytest.mark.asyncio
async def test_forward_opens_ticket_with_tagged_header():
    bridge, _, tickets = make_bridge()
    bot = make_bot()
    await bridge.forward_to_staff(bot, make_message(USER, text="VPN is down"), USER, "bob", 120.0)
    await bridge.forward_to_staff(bot, make_message(USER, text="still down"), USER, "bob", 120.0)

    kwargs = bot.send_message.call_args.kwargs
    assert kwargs["chat_id"] == SUPPORT_GROUP_ID
    assert encode_ticket_tag(USER) in kwargs["text"]
    ticket = tickets.get(USER)
    assert ticket.message_count == 2
    assert ticket.post_message_id == 42


@pytest.mark.asyncio
async def test_staff_reply_delivered_and_marked_answered():
    bridge, _, tickets = make_bridge()
    bot = make_bot()
    await bridge.forward_to_staff(bot, make_message(USER, text="help"), USER, "bob", 0)

    post = make_message(SUPPORT_GROUP_ID, text=f"header {encode_ticket_tag(USER)}")
    reply = make_message(SUPPORT_GROUP_ID, text="Try reconnecting", reply_to=post)
    assert await bridge.route_staff_reply(bot, reply) == USER

    assert bot.send_message.call_args.kwargs["chat_id"] == USER
    assert tickets.get(USER).status == TicketStatus.REPLIED


@pytest.mark.asyncio
async def test_blocked_user_reply_raises_unreachable():
    bridge, _, _ = make_bridge()
    bot = make_bot()
    bot.send_message.side_effect = Forbidden("bot was blocked by the user")
    with pytest.raises(DeliveryFailed) as exc:
        await bridge.deliver_staff_answer(bot, USER, make_message(SUPPORT_GROUP_ID, text="hi"))
    assert exc.value.unreachable


@pytest.mark.asyncio
async def test_close_ticket_is_idempotent():
    bridge, registry, tickets = make_bridge()
    bot = make_bot()
    registry.enter(FlowKind.SUPPORT_MODE, USER)
    await bridge.forward_to_staff(bot, make_message(USER, text="help"), USER, "bob", 0)

    post = make_message(SUPPORT_GROUP_ID, text=f"header {encode_ticket_tag(USER)}")
    assert await bridge.close_ticket(bot, USER, "admin", post=post) is True
    assert await bridge.close_ticket(bot, USER, "admin", post=post) is False

    assert tickets.get(USER) is None
    assert not registry.is_active(FlowKind.SUPPORT_MODE, USER), "Closing ends the user's support mode"
    edited = bot.edit_message_text.call_args.kwargs["text"]
    assert edited.startswith("✅ Тикет закрыт")


@pytest.mark.asyncio
async def test_forward_of_longest_text_fits_one_message():
    bridge, _, tickets = make_bridge()
    bot = make_bot()
    await bridge.forward_to_staff(bot, make_message(USER, text="x" * MESSAGE_LIMIT), USER, "bob", 0)

    text = bot.send_message.call_args.kwargs["text"]
    assert len(text) <= MESSAGE_LIMIT
    assert decode_ticket_tag(text) == USER, "Header with the tag survives the cut"
    assert tickets.get(USER) is not None


@pytest.mark.asyncio
async def test_staff_answer_of_longest_text_fits_one_message():
    bridge, _, _ = make_bridge()
    bot = make_bot()
    await bridge.deliver_staff_answer(bot, USER, make_message(SUPPORT_GROUP_ID, text="y" * MESSAGE_LIMIT))

    assert len(bot.send_message.call_args.kwargs["text"]) <= MESSAGE_LIMIT


@pytest.mark.asyncio
async def test_close_after_user_resolved_still_strips_post_buttons():
    bridge, _, tickets = make_bridge()
    bot = make_bot()
    await bridge.forward_to_staff(bot, make_message(USER, text="help"), USER, "bob", 0)
    await bridge.resolve_by_user(bot, USER, "bob")

    post = make_message(SUPPORT_GROUP_ID, text=f"header {encode_ticket_tag(USER)}")
    post.message_id = 42
    assert await bridge.close_ticket(bot, USER, "admin", post=post) is False

    bot.edit_message_reply_markup.assert_awaited_once_with(
        chat_id=SUPPORT_GROUP_ID, message_id=42, reply_markup=None,
    )
    bot.edit_message_text.assert_not_awaited()
    assert tickets.get(USER) is None


def test_dashboard_lists_waiting_first_oldest_first():
    clock = Clock(datetime(2026, 5, 1, 10, 0))
    tickets = TicketRegistry(clock=clock)
    tickets.upsert(1, "answered", 10)
    clock.now += timedelta(minutes=5)
    tickets.upsert(2, "late", 11)
    clock.now += timedelta(minutes=5)
    tickets.upsert(3, "early", 12)
    tickets.mark_replied(1)

    order = [t.user_id for t in tickets.listing()]
    assert order == [2, 3, 1]

    text = render_dashboard(tickets.listing(), SUPPORT_GROUP_ID, clock.now + timedelta(minutes=20))
    assert "Ожидают ответа: *2*" in text
    assert "https://t.me/c/1234567890/11" in text
    assert text.index("@late") < text.index("@early") < text.index("@answered")


def test_dashboard_caps_rows():
    now = datetime(2026, 5, 1, 10, 0)
    tickets = TicketRegistry(clock=Clock(now))
    for uid in range(20):
        tickets.upsert(uid, f"u{uid}", None)
    text = render_dashboard(tickets.listing(), SUPPORT_GROUP_ID, now, limit=15)
    assert "и ещё 5 обращений" in text
