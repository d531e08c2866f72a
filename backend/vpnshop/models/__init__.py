from vpnshop.models.user import User
from vpnshop.models.product import Product
from vpnshop.models.subscription import Subscription
from vpnshop.models.transaction import Transaction, TransactionType, TransactionStatus
from vpnshop.models.promo_code import PromoCode, PromoActivation

__all__ = [
    "User", "Product", "Subscription", "Transaction", "TransactionType",
    "TransactionStatus", "PromoCode", "PromoActivation",
]
