"""Claw Keeper service modules."""

__all__ = [
    "gateway_service",
    "status_service",
    "storage_service",
]
