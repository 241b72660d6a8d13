from .errors import FeedError, MalformedEventError, SnapshotFetchError, SubscriptionError
from .event_list import BoundedEventList, MergeResult, MergeStatus, initialize, merge

__all__ = [
    "BoundedEventList",
    "FeedError",
    "MalformedEventError",
    "MergeResult",
    "MergeStatus",
    "SnapshotFetchError",
    "SubscriptionError",
    "initialize",
    "merge",
]
