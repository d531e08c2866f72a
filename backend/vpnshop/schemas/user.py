from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime
from decimal import Decimal


class SubscriptionRecord(BaseModel):
    id: int
    product_id: int
    key_string: str
    expires_at: datetime
    is_active: bool

    class Config:
        from_attributes = True


class TransactionRecord(BaseModel):
    id: int
    amount: Decimal
    type: str
    status: str
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class UserProfile(BaseModel):
    id: int
    telegram_id: int
    username: Optional[str] = None
    balance: Decimal
    referrer_id: Optional[int] = None
    created_at: Optional[datetime] = None
    subscriptions: List[SubscriptionRecord] = []
    recent_transactions: List[TransactionRecord] = []


class ReferralInfo(BaseModel):
    telegram_id: int
    username: Optional[str] = None
    joined_at: Optional[datetime] = None
    # Sum of the referral's completed purchases
    total_spent: Decimal


class ReferralPage(BaseModel):
    items: List[ReferralInfo]
    page: int
    total_pages: int
    total_count: int
