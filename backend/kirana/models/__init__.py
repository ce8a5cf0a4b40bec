from .auth import User, Role, UserRole
from .addresses import Address
from .coupons import Coupon, CouponUsage
from .loyalty import LoyaltyAccount, LoyaltyTransaction, LoyaltySettings
from .wallets import Wallet, WalletTransaction
from .orders import Order, OrderItem, OrderNote, OrderStatusHistory

__all__ = [
    'User', 'Role', 'UserRole',
    'Address',
    'Coupon', 'CouponUsage',
    'LoyaltyAccount', 'LoyaltyTransaction', 'LoyaltySettings',
    'Wallet', 'WalletTransaction',
    'Order', 'OrderItem', 'OrderNote', 'OrderStatusHistory',
]
