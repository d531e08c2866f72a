"""
In-memory conversation slots for multi-step chat wizards.

Each wizard kind owns one SlotStore: a dict of actor id -> session value
guarded by its own lock. An actor has at most one active session per kind;
entering again overwrites. Nothing here is persisted, a restart drops every
in-flight wizard.

Kinds are listed in FlowKind. Session values are small dataclasses carrying
the step ordinal and the partial input collected so far.
"""
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from vpnshop.core.exceptions import NotInFlow


class FlowKind:
    # Staff wizards
    BROADCAST = "broadcast"
    FLASH_SALE = "flash_sale"
    PROMO_CREATE = "promo_create"
    PROMO_DELETE = "promo_delete"
    KEY_ISSUE = "key_issue"
    BALANCE_TOPUP = "balance_topup"
    USER_SEARCH = "user_search"
    SUPPORT_REPLY = "support_reply"

    # User modes
    PROMO_ENTRY = "promo_entry"
    SUPPORT_MODE = "support_mode"

    ALL = (
        BROADCAST, FLASH_SALE, PROMO_CREATE, PROMO_DELETE, KEY_ISSUE,
        BALANCE_TOPUP, USER_SEARCH, SUPPORT_REPLY, PROMO_ENTRY, SUPPORT_MODE,
    )


class BroadcastStage:
    AWAITING_MESSAGE = "awaiting_message"
    AWAITING_CONFIRM = "awaiting_confirm"


@dataclass
class BroadcastDraft:
    stage: str = BroadcastStage.AWAITING_MESSAGE
    payload: Any = None  # flows.broadcast.BroadcastPayload once captured
    recipient_count: int = 0


@dataclass
class FlashSaleDraft:
    step: int = 1  # 1 percent, 2 hours, 3 confirm
    percent: int = 0
    hours: int = 0


@dataclass
class PromoDraft:
    step: int = 1  # 1 code, 2 amount, 3 activations
    code: str = ""
    amount: float = 0.0


@dataclass
class IssueDraft:
    step: int = 1  # 1 product, 2 days, 3 target user
    product_id: Optional[int] = None
    days: int = 0


class SlotStore:
    """One wizard kind: actor id -> session, under a dedicated lock."""

    def __init__(self, kind: str):
        self.kind = kind
        self._slots: Dict[int, Any] = {}
        self._lock = threading.Lock()

    def put(self, actor_id: int, state: Any) -> None:
        with self._lock:
            self._slots[actor_id] = state

    def get(self, actor_id: int) -> Optional[Any]:
        with self._lock:
            return self._slots.get(actor_id)

    def pop(self, actor_id: int) -> Optional[Any]:
        with self._lock:
            return self._slots.pop(actor_id, None)

    def update(self, actor_id: int, mutator: Callable[[Any], Any]) -> Any:
        with self._lock:
            if actor_id not in self._slots:
                raise NotInFlow(self.kind, actor_id)
            state = self._slots[actor_id]
            replaced = mutator(state)
            if replaced is not None:
                state = replaced
                self._slots[actor_id] = state
            return state

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)


class ConversationRegistry:
    def __init__(self):
        self._stores: Dict[str, SlotStore] = {kind: SlotStore(kind) for kind in FlowKind.ALL}

    def _store(self, kind: str) -> SlotStore:
        try:
            return self._stores[kind]
        except KeyError:
            raise ValueError(f"unknown flow kind: {kind}") from None

    def enter(self, kind: str, actor_id: int, state: Any = True) -> None:
        """Install a session, replacing any existing one of the same kind."""
        self._store(kind).put(actor_id, state)

    def advance(self, kind: str, actor_id: int, mutator: Callable[[Any], Any]) -> Any:
        """
        Apply ``mutator`` to the actor's session under the slot lock.

        A non-None return value from the mutator replaces the session.
        Raises NotInFlow if the actor has no session of this kind.
        """
        return self._store(kind).update(actor_id, mutator)

    def exit(self, kind: str, actor_id: int) -> Optional[Any]:
        return self._store(kind).pop(actor_id)

    def peek(self, kind: str, actor_id: int) -> Optional[Any]:
        return self._store(kind).get(actor_id)

    def is_active(self, kind: str, actor_id: int) -> bool:
        return self.peek(kind, actor_id) is not None

    def exit_all(self, actor_id: int) -> None:
        for store in self._stores.values():
            store.pop(actor_id)

    def active_kinds(self, actor_id: int) -> list:
        return [kind for kind, store in self._stores.items() if store.get(actor_id) is not None]
