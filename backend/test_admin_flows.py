"""Staff wizards driven through the chat handlers."""
import asyncio

import pytest

from conftest import ADMIN_ID, make_context, make_update
from vpnshop.core.exceptions import ProvisioningError
from vpnshop.flows.conversation import BroadcastStage, FlowKind
from vpnshop.models import PromoCode, Subscription, User
from vpnshop.services import promo_service, user_service
from vpnshop.services.vpn_provider import MockVPNProvider
from vpnshop.telegram import handlers_admin as admin
from vpnshop.telegram import handlers_flash as flash
from vpnshop.telegram.bot import handle_callback
from vpnshop.telegram.router import InboundEvent, Route, decide


async def drain(coordinator):
    """Let the fan-out task run to completion."""
    for _ in range(200):
        if not coordinator.is_running:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("fan-out did not finish")


class BrokenProvider(MockVPNProvider):
    def create_user(self, username, tag, expires_at):
        raise ProvisioningError("panel unreachable")


def button(actor=ADMIN_ID):
    return make_update(actor, callback=True)


async def start_issue(runtime, context):
    await admin.admin_issue(button(), context)
    await admin.issue_product(button(), context, ["1"])
    await admin.issue_days(button(), context, ["30"])


@pytest.mark.asyncio
async def test_issue_flow_invalid_target_reprompts(runtime, db):
    context = make_context(runtime)
    await start_issue(runtime, context)

    draft = runtime.registry.peek(FlowKind.KEY_ISSUE, ADMIN_ID)
    assert draft.step == 3 and draft.product_id == 1 and draft.days == 30

    event = InboundEvent(actor_id=ADMIN_ID, chat_id=ADMIN_ID, is_private=True)
    assert decide(runtime.registry, event, True, runtime.support_group_id) == Route.KEY_ISSUE

    update = make_update(ADMIN_ID, text="abc")
    await admin.handle_issue_target_input(update, context)

    update.effective_message.reply_text.assert_awaited_once()
    assert "ID" in update.effective_message.reply_text.call_args.args[0]
    assert runtime.registry.peek(FlowKind.KEY_ISSUE, ADMIN_ID).step == 3, "Invalid id keeps the wizard at step 3"
    assert db.query(Subscription).count() == 0


@pytest.mark.asyncio
async def test_issue_flow_provisions_for_target(runtime, db):
    user_service.get_or_create_user(db, 777, "target")
    context = make_context(runtime)
    await start_issue(runtime, context)

    await admin.handle_issue_target_input(make_update(ADMIN_ID, text="777"), context)

    assert not runtime.registry.is_active(FlowKind.KEY_ISSUE, ADMIN_ID)
    subs = db.query(Subscription).all()
    assert len(subs) == 1
    notified = [c.kwargs["chat_id"] for c in context.bot.send_message.call_args_list]
    assert 777 in notified


@pytest.mark.asyncio
async def test_issue_flow_unknown_target_ends_session(runtime, db):
    context = make_context(runtime)
    await start_issue(runtime, context)
    update = make_update(ADMIN_ID, text="123456")
    await admin.handle_issue_target_input(update, context)

    assert not runtime.registry.is_active(FlowKind.KEY_ISSUE, ADMIN_ID)
    assert "не найден" in update.effective_message.reply_text.call_args.args[0]
    assert db.query(Subscription).count() == 0


@pytest.mark.asyncio
async def test_issue_flow_panel_outage_keeps_session_for_retry(runtime, db):
    user_service.get_or_create_user(db, 777, "target")
    context = make_context(runtime)
    await start_issue(runtime, context)

    runtime.provider = BrokenProvider()
    update = make_update(ADMIN_ID, text="777")
    await admin.handle_issue_target_input(update, context)

    assert "Ошибка панели" in update.effective_message.reply_text.call_args.args[0]
    draft = runtime.registry.peek(FlowKind.KEY_ISSUE, ADMIN_ID)
    assert draft is not None and draft.step == 3
    assert db.query(Subscription).count() == 0

    runtime.provider = MockVPNProvider()
    await admin.handle_issue_target_input(make_update(ADMIN_ID, text="777"), context)

    assert not runtime.registry.is_active(FlowKind.KEY_ISSUE, ADMIN_ID)
    assert db.query(Subscription).count() == 1


@pytest.mark.asyncio
async def test_issue_to_self_keeps_session_on_panel_outage(runtime, db):
    context = make_context(runtime)
    await start_issue(runtime, context)

    runtime.provider = BrokenProvider()
    await admin.issue_no_user(button(), context)

    assert runtime.registry.is_active(FlowKind.KEY_ISSUE, ADMIN_ID)
    assert db.query(Subscription).count() == 0


@pytest.mark.asyncio
async def test_staff_buttons_refused_for_regular_users(runtime):
    context = make_context(runtime)
    update = make_update(1001, callback=True)
    update.callback_query.data = "admin_issue"
    await handle_callback(update, context)

    update.callback_query.answer.assert_awaited_once_with("⛔ Нет доступа")
    assert not runtime.registry.is_active(FlowKind.KEY_ISSUE, 1001)


@pytest.mark.asyncio
async def test_promo_create_wizard(runtime, db):
    context = make_context(runtime)
    await admin.promo_create(button(), context)

    short = make_update(ADMIN_ID, text="ab")
    await admin.handle_promo_create_input(short, context)
    assert "от 3 до 20" in short.effective_message.reply_text.call_args.args[0]
    assert runtime.registry.peek(FlowKind.PROMO_CREATE, ADMIN_ID).step == 1

    for text in ("bonus100", "100", "5"):
        await admin.handle_promo_create_input(make_update(ADMIN_ID, text=text), context)

    assert not runtime.registry.is_active(FlowKind.PROMO_CREATE, ADMIN_ID)
    promo = db.query(PromoCode).one()
    assert promo.code == "BONUS100"
    assert promo.max_activations == 5


@pytest.mark.asyncio
async def test_promo_create_code_taken_meanwhile_restarts_at_code_step(runtime, db):
    context = make_context(runtime)
    await admin.promo_create(button(), context)
    for text in ("summer", "150"):
        await admin.handle_promo_create_input(make_update(ADMIN_ID, text=text), context)
    assert runtime.registry.peek(FlowKind.PROMO_CREATE, ADMIN_ID).step == 3

    # another staff member takes the code before the last step
    promo_service.create_promo_code(db, "SUMMER", 50, 1)

    taken = make_update(ADMIN_ID, text="10")
    await admin.handle_promo_create_input(taken, context)
    assert "уже занят" in taken.effective_message.reply_text.call_args.args[0]
    draft = runtime.registry.peek(FlowKind.PROMO_CREATE, ADMIN_ID)
    assert draft.step == 1 and draft.code == ""

    for text in ("winter", "150", "10"):
        await admin.handle_promo_create_input(make_update(ADMIN_ID, text=text), context)
    assert not runtime.registry.is_active(FlowKind.PROMO_CREATE, ADMIN_ID)
    assert {p.code for p in db.query(PromoCode).all()} == {"SUMMER", "WINTER"}


@pytest.mark.asyncio
async def test_promo_input_without_session_asks_to_start_over(runtime):
    context = make_context(runtime)
    update = make_update(ADMIN_ID, text="bonus")
    await admin.handle_promo_create_input(update, context)

    assert update.effective_message.reply_text.call_args.args[0] == admin.STALE_SESSION_TEXT


@pytest.mark.asyncio
async def test_manual_top_up_pays_referrer(runtime, db):
    user_service.get_or_create_user(db, 10, "boss")
    user_service.create_user_with_referrer(db, 11, "newbie", 10)
    context = make_context(runtime)

    await admin.admin_addbal(button(), context, ["11"])
    assert runtime.registry.peek(FlowKind.BALANCE_TOPUP, ADMIN_ID) == 11

    bad = make_update(ADMIN_ID, text="-5")
    await admin.handle_balance_topup_input(bad, context)
    assert runtime.registry.is_active(FlowKind.BALANCE_TOPUP, ADMIN_ID)

    await admin.handle_balance_topup_input(make_update(ADMIN_ID, text="400"), context)
    assert not runtime.registry.is_active(FlowKind.BALANCE_TOPUP, ADMIN_ID)

    db.expire_all()
    balances = {u.telegram_id: u.balance for u in db.query(User).all()}
    assert float(balances[11]) == 400
    assert float(balances[10]) == 100


@pytest.mark.asyncio
async def test_broadcast_wizard_end_to_end(runtime, db):
    for tid in (1, 2, 3):
        user_service.get_or_create_user(db, tid)
    context = make_context(runtime)

    await admin.admin_broadcast(button(), context)
    await admin.handle_broadcast_capture(make_update(ADMIN_ID, text="Новости!"), context)
    draft = runtime.registry.peek(FlowKind.BROADCAST, ADMIN_ID)
    assert draft.stage == BroadcastStage.AWAITING_CONFIRM
    assert draft.recipient_count == 3

    await admin.broadcast_confirm(button(), context)
    assert not runtime.registry.is_active(FlowKind.BROADCAST, ADMIN_ID)
    await drain(runtime.coordinator)

    texts = [c.kwargs.get("text") for c in context.bot.send_message.call_args_list]
    assert texts.count("Новости!") == 3
    assert any(t and t.startswith("✅ *Рассылка завершена!*") and "Отправлено: 3" in t for t in texts)


@pytest.mark.asyncio
async def test_broadcast_refused_while_running(runtime):
    gate = asyncio.Event()

    async def slow(chat_id):
        await gate.wait()

    async def finish(report):
        pass

    handle = runtime.coordinator.launch("broadcast", ADMIN_ID, lambda: [1], slow, finish)
    update = button()
    await admin.admin_broadcast(update, make_context(runtime))

    assert "уже выполняется" in update.callback_query.edit_message_text.call_args.args[0]
    assert not runtime.registry.is_active(FlowKind.BROADCAST, ADMIN_ID)
    gate.set()
    await handle.wait()


@pytest.mark.asyncio
async def test_flash_sale_activates_after_launch(runtime, db):
    user_service.get_or_create_user(db, 1)
    context = make_context(runtime)

    await flash.flash_quick(button(), context, ["50", "6"])
    assert not runtime.flash_sale.is_active(), "Nothing changes before confirmation"

    await flash.flash_confirm(button(), context)
    assert runtime.flash_sale.discount() == 50
    await drain(runtime.coordinator)

    summary = context.bot.send_message.call_args_list[-1].kwargs["text"]
    assert "Распродажа активна до" in summary
