from claw_keeper.storage.mount_manager import (
    MOUNT_STATUS_FAILED,
    MOUNT_STATUS_MOUNTED,
    MOUNT_STATUS_MOUNTING,
    MOUNT_STATUS_UNMOUNTED,
    MountManager,
    MountResult,
)
from claw_keeper.storage.restore_policy import RestoreDecision, RestorePolicy
from claw_keeper.storage.scheduler import PeriodicSyncScheduler
from claw_keeper.storage.sync_engine import (
    SYNC_OUTCOME_FAILURE,
    SYNC_OUTCOME_SKIPPED,
    SYNC_OUTCOME_SUCCESS,
    SYNC_TRIGGER_MANUAL,
    SYNC_TRIGGER_PERIODIC,
    SyncEngine,
    SyncRun,
)
from claw_keeper.storage.transfer import RsyncTransfer, TransferError, TransferResult

__all__ = [
    "MOUNT_STATUS_FAILED",
    "MOUNT_STATUS_MOUNTED",
    "MOUNT_STATUS_MOUNTING",
    "MOUNT_STATUS_UNMOUNTED",
    "MountManager",
    "MountResult",
    "PeriodicSyncScheduler",
    "RestoreDecision",
    "RestorePolicy",
    "RsyncTransfer",
    "SYNC_OUTCOME_FAILURE",
    "SYNC_OUTCOME_SKIPPED",
    "SYNC_OUTCOME_SUCCESS",
    "SYNC_TRIGGER_MANUAL",
    "SYNC_TRIGGER_PERIODIC",
    "SyncEngine",
    "SyncRun",
    "TransferError",
    "TransferResult",
]
