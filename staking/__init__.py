from .broadcaster import ApiBroadcaster, BroadcastResult, Broadcaster, Confirmation, broadcast_body
from .client import BroadcastReceipt, StakingApiClient, StakingTransaction, TransactionStatus

__all__ = [
    "ApiBroadcaster",
    "BroadcastReceipt",
    "BroadcastResult",
    "Broadcaster",
    "Confirmation",
    "StakingApiClient",
    "StakingTransaction",
    "TransactionStatus",
    "broadcast_body",
]
