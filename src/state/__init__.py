"""
Subscription state models and persistence.

Each webhook subscription owns one record (credentials, delta cursor, last
notification time) stored as Fernet-encrypted JSON under its own S3 key.
"""

from .locks import KeyedLocks
from .models import SubscriptionState

__all__ = ["KeyedLocks", "SubscriptionState"]
