from .user_store import UserStore, FirestoreUserStore, update_with_retry
from .subscription_db import SubscriptionDB
from .schema import SubscriptionHistory

__all__ = ['UserStore', 'FirestoreUserStore', 'update_with_retry', 'SubscriptionDB', 'SubscriptionHistory']
