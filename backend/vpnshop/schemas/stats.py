from pydantic import BaseModel
from typing import Optional
from decimal import Decimal


class AdminStats(BaseModel):
    total_users: int
    new_users_today: int
    active_subscriptions: int
    revenue_today: Decimal
    revenue_month: Decimal
    revenue_total: Decimal


class TopReferrer(BaseModel):
    telegram_id: int
    username: Optional[str] = None
    referral_count: int
    total_earnings: Decimal


class PromoStats(BaseModel):
    code: str
    amount: Decimal
    max_activations: int
    activations_used: int
    total_bonus_paid: Decimal

    class Config:
        from_attributes = True
