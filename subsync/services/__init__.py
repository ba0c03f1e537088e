"""Business logic services for the sync core."""

from subsync.services.sync_lock import CancellationToken, SyncLockManager
from subsync.services.sync_orchestrator import SyncOrchestrator, SyncOutcome, SyncRunResult
from subsync.services.sync_progress import SyncProgressTracker

__all__ = [
    "CancellationToken",
    "SyncLockManager",
    "SyncOrchestrator",
    "SyncOutcome",
    "SyncProgressTracker",
    "SyncRunResult",
]
