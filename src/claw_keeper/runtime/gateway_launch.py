from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from claw_core import shared as core_shared
from claw_core.config import GatewayConfig


GATEWAY_TOKEN_ENV = "OPENCLAW_GATEWAY_TOKEN"


@dataclass(frozen=True)
class GatewayLaunchSpec:
    command: str
    port: int
    bind: str
    token: str = ""
    verbose: bool = True
    allow_unconfigured: bool = True
    extra_args: tuple[str, ...] = ()


def build_gateway_env(config: GatewayConfig, secrets: Mapping[str, str]) -> dict[str, str]:
    """Map hosting-environment secrets to the names the gateway expects.

    Unset and blank secrets are left out so the gateway sees them as absent.
    """
    env: dict[str, str] = {}
    for source_name, target_name in config.env_map.items():
        value = core_shared.env_value(secrets, source_name)
        if value and target_name:
            env[target_name] = value
    return env


def gateway_launch_spec(config: GatewayConfig, env: Mapping[str, str]) -> GatewayLaunchSpec:
    return GatewayLaunchSpec(
        command=config.command,
        port=config.port,
        bind=config.bind,
        token=str(env.get(GATEWAY_TOKEN_ENV) or ""),
        extra_args=tuple(config.extra_args),
    )


def compile_gateway_command(spec: GatewayLaunchSpec) -> list[str]:
    cmd = [str(spec.command), "gateway", "--port", str(spec.port)]
    if spec.verbose:
        cmd.append("--verbose")
    if spec.allow_unconfigured:
        cmd.append("--allow-unconfigured")
    if spec.bind:
        cmd.extend(["--bind", str(spec.bind)])
    if spec.token:
        cmd.extend(["--token", str(spec.token)])
    cmd.extend(str(arg) for arg in spec.extra_args)
    return cmd


def compile_gateway_cli_command(config: GatewayConfig, args: Sequence[str], *, token: str = "") -> list[str]:
    cmd = [str(config.command), *(str(arg) for arg in args), "--url", config.ws_url]
    if token:
        cmd.extend(["--token", str(token)])
    return cmd
