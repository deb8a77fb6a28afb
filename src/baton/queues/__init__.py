from baton.queues.base import Delivery, OfferQueue, QueueRouter, WorkQueue
from baton.queues.memory import InMemoryOfferQueue, InMemoryQueueRouter, InMemoryWorkQueue
from baton.queues.sql import SqlOfferQueue, SqlQueueRouter, SqlWorkQueue

__all__ = [
    "Delivery",
    "InMemoryOfferQueue",
    "InMemoryQueueRouter",
    "InMemoryWorkQueue",
    "OfferQueue",
    "QueueRouter",
    "SqlOfferQueue",
    "SqlQueueRouter",
    "SqlWorkQueue",
    "WorkQueue",
]
