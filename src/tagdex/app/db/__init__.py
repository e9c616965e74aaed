from .tags import TagsRepository
from .records import RecordsRepository
from .failed_batches import FailedBatchesRepository
from .sync_state import SyncStateRepository

__all__ = [
    "TagsRepository",
    "RecordsRepository",
    "FailedBatchesRepository",
    "SyncStateRepository",
]
