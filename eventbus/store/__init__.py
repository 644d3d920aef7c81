"""Durable storage: Event Store and Subscription Registry over one SQLite database."""

from eventbus.store.db import Database
from eventbus.store.events import EventStore
from eventbus.store.subscriptions import SubscriptionRegistry

__all__ = ["Database", "EventStore", "SubscriptionRegistry"]
