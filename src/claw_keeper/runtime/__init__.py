from claw_keeper.runtime.process_registry import (
    ContainerProcessRegistry,
    ProcessHandle,
    ProcessRegistry,
    ProcessSignature,
    ProcessSpec,
)
from claw_keeper.runtime.readiness import (
    READINESS_ABORTED,
    READINESS_CANCELLED,
    READINESS_READY,
    READINESS_TIMED_OUT,
    ReadinessResult,
    tcp_probe,
    wait_until_ready,
)

__all__ = [
    "ContainerProcessRegistry",
    "ProcessHandle",
    "ProcessRegistry",
    "ProcessSignature",
    "ProcessSpec",
    "READINESS_ABORTED",
    "READINESS_CANCELLED",
    "READINESS_READY",
    "READINESS_TIMED_OUT",
    "ReadinessResult",
    "tcp_probe",
    "wait_until_ready",
]
