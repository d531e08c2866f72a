"""Flash sale window, price application and announcement texts."""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from vpnshop.flows.flash_sale import FlashSale, build_sale_caption, discounted_price, hours_text


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


START = datetime(2026, 3, 1, 12, 0)


def test_sale_active_inside_window_only():
    clock = Clock(START)
    sale = FlashSale(clock=clock)
    sale.set(50, 6)

    clock.now = START + timedelta(hours=1)
    assert sale.is_active()
    assert sale.apply(450) == Decimal("225.00")

    clock.now = START + timedelta(hours=7)
    assert not sale.is_active()
    assert sale.apply(450) == Decimal("450.00"), "Expired sale must not discount"
    assert sale.snapshot() == (0, None)


def test_clear_stops_sale():
    sale = FlashSale(clock=Clock(START))
    sale.set(30, 12)
    sale.clear()
    assert sale.discount() == 0
    assert sale.ends_at() is None


@pytest.mark.parametrize("percent,hours", [(0, 6), (91, 6), (-5, 6), (50, 0)])
def test_invalid_sale_rejected(percent, hours):
    sale = FlashSale(clock=Clock(START))
    with pytest.raises(ValueError):
        sale.set(percent, hours)
    assert not sale.is_active()


def test_hours_text_declension():
    assert hours_text(1) == "1 час"
    assert hours_text(3) == "3 часа"
    assert hours_text(6) == "6 часов"
    assert hours_text(12) == "12 часов"
    assert hours_text(24) == "24 часа"


def test_caption_shows_old_and_new_price():
    caption = build_sale_caption(50, 6, 450)
    assert caption.startswith("🚨 *РАСПРОДАЖА! СКИДКИ -50%*")
    assert "450 ₽ → *225 ₽*" in caption
    assert "6 часов" in caption
    assert discounted_price(450, 30) == Decimal("315.00")
