"""Storefront handlers: referral start, promo entry, support mode, subscriptions, help pages."""
from datetime import datetime, timedelta

import pytest

from conftest import SUPPORT_GROUP_ID, make_context, make_update
from vpnshop.flows.conversation import FlowKind
from vpnshop.models import User
from vpnshop.services import promo_service, subscription_service, user_service
from vpnshop.telegram import handlers_support as support
from vpnshop.telegram import handlers_user as user
from vpnshop.telegram.bot import handle_callback


@pytest.mark.asyncio
async def test_start_with_referral_records_inviter(runtime, db):
    user_service.get_or_create_user(db, 10, "boss")
    context = make_context(runtime, args=["10"])
    await user.handle_start(make_update(11, text="/start 10", username="newbie"), context)

    db.expire_all()
    newbie = db.query(User).filter(User.telegram_id == 11).one()
    assert newbie.referrer_id == 10


@pytest.mark.asyncio
async def test_short_promo_keeps_entry_mode(runtime, db):
    context = make_context(runtime)
    runtime.registry.enter(FlowKind.PROMO_ENTRY, 21)

    update = make_update(21, text="ab")
    await user.handle_promo_input(update, context)
    assert runtime.registry.is_active(FlowKind.PROMO_ENTRY, 21)


@pytest.mark.asyncio
async def test_promo_entry_credits_and_exits(runtime, db):
    promo_service.create_promo_code(db, "HELLO", 150, 10)
    context = make_context(runtime)
    runtime.registry.enter(FlowKind.PROMO_ENTRY, 22)

    update = make_update(22, text="hello")
    await user.handle_promo_input(update, context)

    assert not runtime.registry.is_active(FlowKind.PROMO_ENTRY, 22)
    assert "150" in update.effective_message.reply_text.call_args.args[0]


@pytest.mark.asyncio
async def test_rejected_promo_exits_with_retry(runtime):
    context = make_context(runtime)
    runtime.registry.enter(FlowKind.PROMO_ENTRY, 23)
    update = make_update(23, text="NOPE")
    await user.handle_promo_input(update, context)

    assert not runtime.registry.is_active(FlowKind.PROMO_ENTRY, 23)
    assert "не найден" in update.effective_message.reply_text.call_args.args[0]


@pytest.mark.asyncio
async def test_support_message_forwarded_to_staff_group(runtime):
    context = make_context(runtime)
    await support.ticket_create(make_update(31, callback=True), context)
    assert runtime.registry.is_active(FlowKind.SUPPORT_MODE, 31)

    update = make_update(31, text="Не подключается")
    await support.handle_support_forward(update, context)

    assert context.bot.send_message.call_args.kwargs["chat_id"] == SUPPORT_GROUP_ID
    assert runtime.tickets.get(31) is not None
    update.effective_message.reply_text.assert_awaited()


def give_subscription(db, telegram_id, key="vless://owner-key@host:443"):
    owner, _ = user_service.get_or_create_user(db, telegram_id, "owner")
    product = subscription_service.list_products(db)[0]
    return subscription_service.create_subscription(
        db, owner, product, key, f"user_{telegram_id}", datetime.utcnow() + timedelta(days=30)
    )


@pytest.mark.asyncio
async def test_subscription_card_hides_key_and_is_owner_only(runtime, db):
    sub = give_subscription(db, 41)
    context = make_context(runtime)

    update = make_update(41, callback=True)
    await user.show_subscription(update, context, [str(sub.id)])
    text = update.callback_query.edit_message_text.call_args.args[0]
    assert f"#{sub.id}" in text
    assert "vless://" not in text

    stranger = make_update(42, callback=True)
    await user.show_subscription(stranger, context, [str(sub.id)])
    assert "не найдена" in stranger.callback_query.edit_message_text.call_args.args[0]


@pytest.mark.asyncio
async def test_copy_key_sends_key_alone_and_answers_toast(runtime, db):
    sub = give_subscription(db, 43, key="vless://copy-me@host:443")
    context = make_context(runtime)

    update = make_update(43, callback=True)
    await user.copy_key(update, context, [str(sub.id)])
    assert update.effective_message.reply_text.call_args.args[0] == "`vless://copy-me@host:443`"
    update.callback_query.answer.assert_awaited_once_with("✅ Ключ отправлен")

    stranger = make_update(44, callback=True)
    await user.copy_key(stranger, context, [str(sub.id)])
    stranger.effective_message.reply_text.assert_not_awaited()
    stranger.callback_query.answer.assert_awaited_once_with("❌ Подписка не найдена")


@pytest.mark.asyncio
async def test_platform_instruction_links_download_and_unknown_falls_back(runtime):
    context = make_context(runtime)

    update = make_update(45, callback=True)
    await user.show_platform_instruction(update, context, ["android"])
    assert user.HAPP_ANDROID_URL in update.callback_query.edit_message_text.call_args.args[0]

    other = make_update(45, callback=True)
    await user.show_platform_instruction(other, context, ["symbian"])
    assert "Выберите устройство" in other.callback_query.edit_message_text.call_args.args[0]


@pytest.mark.asyncio
async def test_privacy_command_replies_with_offer_link(runtime):
    update = make_update(46, text="/privacy")
    await user.show_privacy(update, make_context(runtime))

    call = update.effective_message.reply_text.call_args
    assert "соглашение" in call.args[0]
    button = call.kwargs["reply_markup"].inline_keyboard[0][0]
    assert button.url.startswith("https://")


@pytest.mark.asyncio
async def test_faq_mentions_referral_share(runtime):
    update = make_update(47, callback=True)
    await user.show_faq(update, make_context(runtime))
    assert f"{user.REFERRAL_PERCENT:.0f}%" in update.callback_query.edit_message_text.call_args.args[0]


@pytest.mark.asyncio
async def test_copy_key_button_answered_once_through_dispatcher(runtime, db):
    sub = give_subscription(db, 48)
    update = make_update(48, callback=True)
    update.callback_query.data = f"copy_key:{sub.id}"
    await handle_callback(update, make_context(runtime))

    update.callback_query.answer.assert_awaited_once_with("✅ Ключ отправлен")
