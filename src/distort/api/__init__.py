from .accounts import AccountService
from .node import DistortNode
from .scheduler import Scheduler
from .subscriptions import SubscriptionManager

__all__ = ["AccountService", "DistortNode", "Scheduler", "SubscriptionManager"]
