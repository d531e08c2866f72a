"""Inline keyboards and callback payload format.

Callback data is ``action[:field1[:field2...]]``; the action selects the
handler from the bot's callback table.
"""
from typing import Iterable, List, Tuple

from telegram import InlineKeyboardButton, InlineKeyboardMarkup

from vpnshop.core.config import settings

SEP = ":"


def encode_payload(action: str, *fields) -> str:
    return SEP.join([action, *(str(f) for f in fields)])


def decode_payload(data: str) -> Tuple[str, List[str]]:
    parts = (data or "").split(SEP)
    return parts[0], parts[1:]


def _btn(text: str, action: str, *fields) -> InlineKeyboardButton:
    return InlineKeyboardButton(text, callback_data=encode_payload(action, *fields))


def _markup(rows: Iterable[Iterable[InlineKeyboardButton]]) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([list(r) for r in rows])


# ============================================================================
# USER
# ============================================================================

def main_menu_keyboard(is_admin: bool = False) -> InlineKeyboardMarkup:
    rows = [
        [_btn("🚀 Тарифы", "tariffs"), _btn("🔑 Мои подписки", "mysubs")],
        [_btn("💰 Баланс", "balance"), _btn("🎁 Промокод", "promo_enter")],
        [_btn("👥 Рефералы", "ref_system"), _btn("📚 Инструкция", "instruction")],
        [_btn("🆘 Поддержка", "help")],
        [
            InlineKeyboardButton("📢 Канал", url=settings.CHANNEL_URL),
            InlineKeyboardButton("💬 Чат", url=settings.CHAT_URL),
        ],
    ]
    if is_admin:
        rows.append([_btn("⚙️ Админ-панель", "admin_panel")])
    return _markup(rows)


def back_to_menu_keyboard() -> InlineKeyboardMarkup:
    return _markup([[_btn("◀️ В меню", "menu")]])


def try_again_keyboard(action: str) -> InlineKeyboardMarkup:
    return _markup([[_btn("🔄 Попробовать снова", action)], [_btn("◀️ В меню", "menu")]])


def products_keyboard(products) -> InlineKeyboardMarkup:
    rows = [[_btn(f"{p.country_flag or ''} {p.name}".strip(), "product", p.id)] for p in products]
    rows.append([_btn("◀️ В меню", "menu")])
    return _markup(rows)


def plans_keyboard(product_id: int, plans, action: str = "plan") -> InlineKeyboardMarkup:
    rows = []
    for plan in plans:
        label = f"{plan.months} мес - {plan.price:.0f} ₽"
        if plan.discount_percent:
            label += f" (-{plan.discount_percent}%)"
        rows.append([_btn(label, action, product_id, plan.months)])
    rows.append([_btn("◀️ Назад", "tariffs")])
    return _markup(rows)


def invoice_keyboard(product_id: int, months: int) -> InlineKeyboardMarkup:
    return _markup([
        [_btn("💳 Оплатить с баланса", "pay_balance", product_id, months)],
        [_btn("💰 Пополнить баланс", "balance")],
        [_btn("◀️ Назад", "product", product_id)],
    ])


def subscriptions_keyboard(subscriptions) -> InlineKeyboardMarkup:
    rows = [[_btn(f"📦 Подписка #{s.id}", "sub", s.id)] for s in subscriptions]
    rows.append([_btn("🚀 Купить ещё", "tariffs"), _btn("📚 Инструкция", "instruction")])
    rows.append([_btn("◀️ В меню", "menu")])
    return _markup(rows)


def subscription_detail_keyboard(subscription_id: int) -> InlineKeyboardMarkup:
    return _markup([
        [_btn("📋 Скопировать ключ", "copy_key", subscription_id)],
        [_btn("🔄 Продлить", "extend", subscription_id), _btn("📚 Инструкция", "instruction")],
        [_btn("◀️ Назад", "mysubs")],
    ])


def instruction_keyboard(platforms) -> InlineKeyboardMarkup:
    """``platforms`` is a list of (platform key, button title) pairs, two per row."""
    buttons = [_btn(title, "instr", key) for key, title in platforms]
    rows = [buttons[i:i + 2] for i in range(0, len(buttons), 2)]
    rows.append([_btn("◀️ В меню", "menu")])
    return _markup(rows)


def platform_keyboard(download_url: str) -> InlineKeyboardMarkup:
    return _markup([
        [InlineKeyboardButton("📥 Скачать Happ", url=download_url)],
        [_btn("◀️ Назад", "instruction")],
    ])


def balance_keyboard(amounts: Iterable[int]) -> InlineKeyboardMarkup:
    rows = [[_btn(f"➕ {a} ₽", "topup", a)] for a in amounts]
    rows.append([_btn("◀️ В меню", "menu")])
    return _markup(rows)


def topup_keyboard() -> InlineKeyboardMarkup:
    return _markup([[_btn("🆘 Написать в поддержку", "ticket_create")], [_btn("◀️ Назад", "balance")]])


def referral_keyboard() -> InlineKeyboardMarkup:
    return _markup([[_btn("📋 Мои рефералы", "ref_list", 0)], [_btn("◀️ В меню", "menu")]])


def referral_list_keyboard(page: int, total_pages: int) -> InlineKeyboardMarkup:
    nav = []
    if page > 0:
        nav.append(_btn("⬅️", "ref_list", page - 1))
    if page < total_pages - 1:
        nav.append(_btn("➡️", "ref_list", page + 1))
    rows = [nav] if nav else []
    rows.append([_btn("◀️ Назад", "ref_system")])
    return _markup(rows)


# ============================================================================
# SUPPORT
# ============================================================================

def support_hub_keyboard() -> InlineKeyboardMarkup:
    return _markup([
        [_btn("✍️ Написать в поддержку", "ticket_create")],
        [_btn("📨 Мои обращения", "ticket_my")],
        [_btn("⁉️ Частые вопросы", "faq"), _btn("📄 Соглашение", "privacy")],
        [_btn("◀️ В меню", "exit_support")],
    ])


def faq_keyboard() -> InlineKeyboardMarkup:
    return _markup([[_btn("🆘 Поддержка", "ticket_create")], [_btn("◀️ Назад", "help")]])


def privacy_keyboard() -> InlineKeyboardMarkup:
    return _markup([
        [InlineKeyboardButton("📖 Читать соглашение", url=settings.PRIVACY_URL)],
        [_btn("◀️ Назад", "help")],
    ])


def support_mode_keyboard() -> InlineKeyboardMarkup:
    return _markup([[_btn("🚪 Выйти из поддержки", "exit_support")]])


def close_ticket_keyboard(user_id: int) -> InlineKeyboardMarkup:
    return _markup([
        [_btn("✍️ Ответить", "support_reply", user_id), _btn("🔒 Закрыть тикет", "admin_close_ticket", user_id)],
    ])


def ticket_answer_keyboard() -> InlineKeyboardMarkup:
    return _markup([[_btn("💬 Ответить", "ticket_reply"), _btn("✅ Вопрос решён", "ticket_solve")]])


def cancel_reply_keyboard(action: str = "ticket_cancel_reply") -> InlineKeyboardMarkup:
    return _markup([[_btn("❌ Отмена", action)]])


# ============================================================================
# STAFF
# ============================================================================

def admin_panel_keyboard(sale_active: bool = False) -> InlineKeyboardMarkup:
    return _markup([
        [_btn("📊 Статистика", "admin_stats"), _btn("🔍 Найти юзера", "admin_find")],
        [_btn("📢 Рассылка", "admin_broadcast"), _btn("🔥 Распродажа" + (" ✅" if sale_active else ""), "admin_flash")],
        [_btn("🔑 Выдать ключ", "admin_issue"), _btn("💰 Пополнить", "admin_addbal")],
        [_btn("🎁 Промокоды", "admin_promo"), _btn("📈 Статистика промо", "admin_promo_stats")],
        [_btn("🏆 Топ рефереров", "admin_top_ref")],
        [_btn("◀️ В меню", "menu")],
    ])


def back_to_admin_keyboard() -> InlineKeyboardMarkup:
    return _markup([[_btn("◀️ Админ-панель", "admin_panel")]])


def admin_cancel_keyboard() -> InlineKeyboardMarkup:
    return _markup([[_btn("❌ Отмена", "admin_cancel")]])


def broadcast_confirm_keyboard() -> InlineKeyboardMarkup:
    return _markup([[_btn("✅ Отправить", "broadcast_confirm"), _btn("❌ Отмена", "broadcast_cancel")]])


def broadcast_stop_keyboard() -> InlineKeyboardMarkup:
    return _markup([[_btn("⛔ Остановить", "broadcast_stop")]])


def user_profile_keyboard(telegram_id: int) -> InlineKeyboardMarkup:
    return _markup([
        [_btn("💰 Пополнить", "admin_addbal", telegram_id), _btn("🎁 Подарить дни", "admin_gift", telegram_id)],
        [_btn("◀️ Админ-панель", "admin_panel")],
    ])


def addbal_amount_keyboard(telegram_id: int, amounts: Iterable[int]) -> InlineKeyboardMarkup:
    return _markup([
        [_btn(f"+{a} ₽", "admin_addbal_amount", telegram_id, a) for a in amounts],
        [_btn("❌ Отмена", "admin_cancel")],
    ])


def gift_products_keyboard(telegram_id: int, products) -> InlineKeyboardMarkup:
    rows = [[_btn(p.name, "admin_gift_product", telegram_id, p.id)] for p in products]
    rows.append([_btn("❌ Отмена", "admin_cancel")])
    return _markup(rows)


def gift_days_keyboard(telegram_id: int, product_id: int, days: Iterable[int]) -> InlineKeyboardMarkup:
    return _markup([
        [_btn(f"{d} дн", "admin_gift_days", telegram_id, product_id, d) for d in days],
        [_btn("❌ Отмена", "admin_cancel")],
    ])


def issue_products_keyboard(products) -> InlineKeyboardMarkup:
    rows = [[_btn(p.name, "issue_product", p.id)] for p in products]
    rows.append([_btn("❌ Отмена", "admin_cancel")])
    return _markup(rows)


def issue_days_keyboard(days: Iterable[int]) -> InlineKeyboardMarkup:
    return _markup([[_btn(f"{d} дн", "issue_days", d) for d in days], [_btn("❌ Отмена", "admin_cancel")]])


def issue_target_keyboard() -> InlineKeyboardMarkup:
    return _markup([[_btn("🙋 Выдать себе", "issue_no_user")], [_btn("❌ Отмена", "admin_cancel")]])


def promo_admin_keyboard() -> InlineKeyboardMarkup:
    return _markup([
        [_btn("➕ Создать", "promo_create"), _btn("📋 Список", "promo_list")],
        [_btn("🗑 Удалить", "promo_delete")],
        [_btn("◀️ Админ-панель", "admin_panel")],
    ])


# ============================================================================
# FLASH SALE
# ============================================================================

def flash_menu_keyboard(presets, sale_active: bool) -> InlineKeyboardMarkup:
    rows = [
        [_btn(f"⚡ -{p}% на {h} ч", "flash_quick", p, h) for p, h in presets[i:i + 2]]
        for i in range(0, len(presets), 2)
    ]
    rows.append([_btn("⚙️ Настроить вручную", "flash_manual")])
    if sale_active:
        rows.append([_btn("⛔ Остановить распродажу", "flash_stop")])
    rows.append([_btn("◀️ Админ-панель", "admin_panel")])
    return _markup(rows)


def flash_percent_keyboard(options: List[int]) -> InlineKeyboardMarkup:
    rows = [[_btn(f"-{p}%", "flash_pct", p) for p in options[i:i + 4]] for i in range(0, len(options), 4)]
    rows.append([_btn("❌ Отмена", "flash_cancel")])
    return _markup(rows)


def flash_hours_keyboard(options: List[int]) -> InlineKeyboardMarkup:
    rows = [[_btn(f"{h} ч", "flash_hours", h) for h in options[i:i + 3]] for i in range(0, len(options), 3)]
    rows.append([_btn("❌ Отмена", "flash_cancel")])
    return _markup(rows)


def flash_confirm_keyboard() -> InlineKeyboardMarkup:
    return _markup([[_btn("🚀 Запустить", "flash_confirm"), _btn("❌ Отмена", "flash_cancel")]])


def flash_card_keyboard() -> InlineKeyboardMarkup:
    return _markup([
        [_btn("🔥 Купить со скидкой", "tariffs")],
        [_btn("🔄 Продлить подписку", "mysubs")],
        [_btn("✖️ Скрыть", "delete_msg")],
    ])
