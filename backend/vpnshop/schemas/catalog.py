from pydantic import BaseModel
from decimal import Decimal


class PricingPlan(BaseModel):
    months: int
    price: Decimal
    discount_percent: int
