"""Time-boxed storewide discount and its announcement card."""
import logging
import threading
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional, Tuple

from vpnshop.services.balance_service import to_money

logger = logging.getLogger(__name__)

MAX_PERCENT = 90

# percent, hours
QUICK_PRESETS = [(50, 6), (50, 24), (30, 12), (25, 48)]
PERCENT_OPTIONS = [20, 25, 30, 40, 50, 60, 70]
HOUR_OPTIONS = [1, 2, 3, 6, 12, 24]


class FlashSale:
    """Active iff percent > 0 and now < ends_at. All reads and writes take the lock."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or datetime.now
        self._lock = threading.Lock()
        self._percent = 0
        self._ends_at: Optional[datetime] = None

    def now(self) -> datetime:
        return self._clock()

    def set(self, percent: int, hours: int) -> datetime:
        if not 0 < percent <= MAX_PERCENT:
            raise ValueError(f"discount must be 1..{MAX_PERCENT}, got {percent}")
        if hours <= 0:
            raise ValueError(f"duration must be positive, got {hours}")
        with self._lock:
            self._percent = percent
            self._ends_at = self._clock() + timedelta(hours=hours)
            ends_at = self._ends_at
        logger.info(f"[FlashSale] -{percent}% until {ends_at:%d.%m %H:%M}")
        return ends_at

    def clear(self) -> None:
        with self._lock:
            self._percent = 0
            self._ends_at = None
        logger.info("[FlashSale] Cleared")

    def snapshot(self) -> Tuple[int, Optional[datetime]]:
        """(percent, ends_at) if active, else (0, None)."""
        with self._lock:
            if self._percent > 0 and self._ends_at is not None and self._clock() < self._ends_at:
                return self._percent, self._ends_at
            return 0, None

    def is_active(self) -> bool:
        return self.snapshot()[0] > 0

    def discount(self) -> int:
        return self.snapshot()[0]

    def ends_at(self) -> Optional[datetime]:
        return self.snapshot()[1]

    def apply(self, price: Decimal | float) -> Decimal:
        percent = self.discount()
        if not percent:
            return to_money(price)
        return to_money(Decimal(str(price)) * (100 - percent) / 100)


def hours_text(hours: int) -> str:
    if hours % 10 == 1 and hours % 100 != 11:
        return f"{hours} час"
    if 2 <= hours % 10 <= 4 and not 12 <= hours % 100 <= 14:
        return f"{hours} часа"
    return f"{hours} часов"


def discounted_price(price: Decimal | float, percent: int) -> Decimal:
    return to_money(Decimal(str(price)) * (100 - percent) / 100)


def build_sale_caption(percent: int, hours: int, base_price: Decimal | float) -> str:
    new_price = discounted_price(base_price, percent)
    return (
        f"🚨 *РАСПРОДАЖА! СКИДКИ -{percent}%*\n\n"
        f"⏰ Только {hours_text(hours)}!\n\n"
        f"🔥 X-RAY MODE: {Decimal(str(base_price)):.0f} ₽ → *{new_price:.0f} ₽*/мес\n\n"
        f"Скидка применяется ко всем тарифам и продлениям.\n"
        f"Успейте, пока действует предложение! 👇"
    )


def build_confirm_text(percent: int, hours: int, base_price: Decimal | float, recipients: int) -> str:
    new_price = discounted_price(base_price, percent)
    return (
        f"🔥 *Подтверждение распродажи*\n\n"
        f"💸 Скидка: *{percent}%*\n"
        f"⏰ Длительность: *{hours_text(hours)}*\n"
        f"📦 X-RAY MODE: {Decimal(str(base_price)):.0f} ₽ → *{new_price:.0f} ₽*\n\n"
        f"Рассылка уйдёт *{recipients}* пользователям.\n\n"
        f"Запустить?"
    )
