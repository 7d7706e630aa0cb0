"""
Entitlement ledger stores - memory, JSON file and PostgreSQL backends.
"""

from iap.store.base import IapStore, choose_subscription
from iap.store.file import JsonFileIapStore
from iap.store.memory import InMemoryIapStore
from iap.store.sql import SqlIapStore

__all__ = [
    "IapStore",
    "choose_subscription",
    "InMemoryIapStore",
    "JsonFileIapStore",
    "SqlIapStore",
]
