from .handler import SyncEvent, SyncHandler, SyncResult, SyncState, lambda_handler

__all__ = [
    "SyncEvent",
    "SyncHandler",
    "SyncResult",
    "SyncState",
    "lambda_handler",
]
