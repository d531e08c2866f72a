"""Conversation slots: one session per actor and wizard kind."""
import threading

import pytest

from vpnshop.core.exceptions import NotInFlow
from vpnshop.flows.conversation import ConversationRegistry, FlowKind, IssueDraft, PromoDraft


def test_enter_peek_exit():
    reg = ConversationRegistry()
    reg.enter(FlowKind.PROMO_ENTRY, 1)

    assert reg.is_active(FlowKind.PROMO_ENTRY, 1)
    assert not reg.is_active(FlowKind.PROMO_ENTRY, 2), "Other actors must not see the slot"
    assert not reg.is_active(FlowKind.SUPPORT_MODE, 1), "Other kinds must not see the slot"

    assert reg.exit(FlowKind.PROMO_ENTRY, 1) is True
    assert reg.exit(FlowKind.PROMO_ENTRY, 1) is None, "Second exit is a no-op"


def test_enter_overwrites_existing_session():
    reg = ConversationRegistry()
    reg.enter(FlowKind.KEY_ISSUE, 7, IssueDraft(step=2, product_id=1))
    reg.enter(FlowKind.KEY_ISSUE, 7, IssueDraft(step=1))

    assert reg.peek(FlowKind.KEY_ISSUE, 7).step == 1


def test_advance_mutates_in_place():
    reg = ConversationRegistry()
    reg.enter(FlowKind.PROMO_CREATE, 9, PromoDraft())

    def set_code(draft):
        draft.code = "SUMMER"
        draft.step = 2

    state = reg.advance(FlowKind.PROMO_CREATE, 9, set_code)
    assert state.code == "SUMMER"
    assert reg.peek(FlowKind.PROMO_CREATE, 9).step == 2


def test_advance_replaces_when_mutator_returns_value():
    reg = ConversationRegistry()
    reg.enter(FlowKind.BALANCE_TOPUP, 3, 100)
    reg.advance(FlowKind.BALANCE_TOPUP, 3, lambda _: 200)
    assert reg.peek(FlowKind.BALANCE_TOPUP, 3) == 200


def test_advance_without_session_raises():
    reg = ConversationRegistry()
    with pytest.raises(NotInFlow):
        reg.advance(FlowKind.KEY_ISSUE, 1, lambda d: None)


def test_unknown_kind_rejected():
    reg = ConversationRegistry()
    with pytest.raises(ValueError):
        reg.enter("nope", 1)


def test_exit_all_clears_every_kind():
    reg = ConversationRegistry()
    reg.enter(FlowKind.SUPPORT_MODE, 5)
    reg.enter(FlowKind.BROADCAST, 5)
    reg.enter(FlowKind.SUPPORT_MODE, 6)

    assert set(reg.active_kinds(5)) == {FlowKind.SUPPORT_MODE, FlowKind.BROADCAST}
    reg.exit_all(5)
    assert reg.active_kinds(5) == []
    assert reg.is_active(FlowKind.SUPPORT_MODE, 6), "Other actors keep their sessions"


def test_concurrent_advances_are_serialized():
    reg = ConversationRegistry()
    reg.enter(FlowKind.BALANCE_TOPUP, 1, 0)

    def bump():
        for _ in range(500):
            reg.advance(FlowKind.BALANCE_TOPUP, 1, lambda v: v + 1)

    threads = [threading.Thread(target=bump) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert reg.peek(FlowKind.BALANCE_TOPUP, 1) == 2000
