from claw_keeper.domains.gateway_domain import (
    GATEWAY_CRASHED,
    GATEWAY_NOT_STARTED,
    GATEWAY_READY,
    GATEWAY_STARTING,
    GatewayLifecycleManager,
    GatewayProcess,
)

__all__ = [
    "GATEWAY_CRASHED",
    "GATEWAY_NOT_STARTED",
    "GATEWAY_READY",
    "GATEWAY_STARTING",
    "GatewayLifecycleManager",
    "GatewayProcess",
]
