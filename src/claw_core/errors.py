from __future__ import annotations


class TypedKeeperError(RuntimeError):
    """Base class for typed operational errors surfaced to operators."""

    error_code = "INTERNAL_ERROR"
    failure_class = "internal"
    user_message = "An internal error occurred."

    def metadata(self) -> dict[str, str]:
        return {
            "error_code": self.error_code,
            "failure_class": self.failure_class,
            "user_message": self.user_message,
        }

    def payload(self, *, detail: str | None = None) -> dict[str, str]:
        payload = self.metadata()
        payload["detail"] = str(self) if detail is None else str(detail)
        return payload


def typed_error_metadata(exc: BaseException) -> dict[str, str] | None:
    if isinstance(exc, TypedKeeperError):
        return exc.metadata()
    return None


def typed_error_payload(exc: BaseException) -> dict[str, str] | None:
    if isinstance(exc, TypedKeeperError):
        return exc.payload()
    return None


class ConfigError(TypedKeeperError):
    """Configuration parsing or validation error."""

    error_code = "CONFIG_ERROR"
    failure_class = "configuration"
    user_message = "Configuration is invalid."


MOUNT_REASON_CREDENTIALS = "credentials"
MOUNT_REASON_BINARY_MISSING = "binary_missing"
MOUNT_REASON_MOUNT_FAILED = "mount_failed"
MOUNT_REASON_TIMEOUT = "timeout"


class MountError(TypedKeeperError):
    """Remote bucket could not be mounted."""

    error_code = "MOUNT_FAILURE"
    failure_class = "mount"
    user_message = "Durable storage could not be mounted."

    def __init__(self, message: str, *, reason: str = MOUNT_REASON_MOUNT_FAILED) -> None:
        super().__init__(message)
        self.reason = reason

    def metadata(self) -> dict[str, str]:
        metadata = super().metadata()
        metadata["reason"] = self.reason
        return metadata


class RestoreError(TypedKeeperError):
    """Remote state exists but could not be copied to local state."""

    error_code = "RESTORE_FAILURE"
    failure_class = "restore"
    user_message = "Durable state could not be restored; starting with local state."


class SyncError(TypedKeeperError):
    """Local state could not be pushed to the remote mount."""

    error_code = "SYNC_FAILURE"
    failure_class = "sync"
    user_message = "Backup to durable storage failed; it will be retried."


class ProcessStartError(TypedKeeperError):
    """Gateway process could not be started or exited immediately."""

    error_code = "PROCESS_START_FAILURE"
    failure_class = "process_start"
    user_message = "The gateway process failed to start."


class ReadinessTimeoutError(TypedKeeperError):
    """Gateway process started but never became reachable."""

    error_code = "READINESS_TIMEOUT"
    failure_class = "readiness"
    user_message = "The gateway process started but did not become ready in time."
