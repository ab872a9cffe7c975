from __future__ import annotations

from typing import Any


class GatewayService:
    def __init__(self, *, state: Any) -> None:
        self._state = state

    def ensure_gateway_running(self, *, timeout: float | None = None) -> dict[str, Any]:
        process = self._state.ensure_gateway_running(timeout=timeout)
        return process.to_payload()

    def output_tail(self, lines: int) -> str:
        return self._state.gateway_output_tail(lines)

    def run_cli(self, args: list[str], *, timeout: float | None = None) -> dict[str, Any]:
        result = self._state.run_gateway_cli(args, timeout=timeout)
        return {
            "exit_code": result.returncode,
            "stdout": result.stdout or "",
            "stderr": result.stderr or "",
        }


__all__ = ["GatewayService"]
