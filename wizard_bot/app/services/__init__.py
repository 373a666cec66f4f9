from .cache_service import CacheService
from .data_store import SqlDataStore
from .dispatch_service import DispatchController
from .lifecycle_service import LifecycleStateMachine, TransportState
from .queue_service import RedisJobQueue
from .throttle_service import RateLimiterService
from .unread_service import UnreadReconciliationLoop
from .whatsapp_service import WhatsAppService

__all__ = [
    "CacheService",
    "SqlDataStore",
    "DispatchController",
    "LifecycleStateMachine", "TransportState",
    "RedisJobQueue",
    "RateLimiterService",
    "UnreadReconciliationLoop",
    "WhatsAppService",
]
