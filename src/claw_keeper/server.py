from __future__ import annotations

import json
import logging
import subprocess
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any

import click
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from claw_core import ConfigError, KeeperConfig, default_keeper_config, load_keeper_config
from claw_core.errors import TypedKeeperError, typed_error_payload
from claw_core import logging as core_logging
from claw_keeper.api import register_keeper_routes
from claw_keeper.sandbox import SandboxState


DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8790
DEFAULT_STATUS_TIMEOUT_SECONDS = 10.0
KEEPER_LOG_LEVEL_CHOICES = core_logging.LOG_LEVEL_CHOICES

LOGGER = logging.getLogger("claw_keeper")
LOGGER.addHandler(logging.NullHandler())


def _repo_root() -> Path:
    for parent in Path(__file__).resolve().parents:
        if (parent / "pyproject.toml").exists():
            return parent
    return Path(__file__).resolve().parents[2]


def _default_config_file() -> Path:
    return _repo_root() / "config" / "keeper.config.toml"


def _configure_keeper_logging(level: str) -> None:
    core_logging.configure_structured_logger(LOGGER, level=core_logging.normalize_log_level(level))


def _resolve_keeper_log_level(log_level: str | None, config: KeeperConfig | None) -> str:
    cli_value = str(log_level or "").strip()
    if cli_value:
        return core_logging.normalize_log_level(cli_value)
    config_value = ""
    if config is not None and isinstance(config.logging.values, dict):
        config_value = str(config.logging.values.get("level") or "").strip()
    return core_logging.normalize_log_level(config_value or "info")


def _configure_domain_log_levels(config: KeeperConfig | None) -> None:
    if config is None or not isinstance(config.logging.values, dict):
        return
    core_logging.configure_domain_log_levels(
        domains=config.logging.values.get("domains"),
        logger_prefix="claw_keeper",
    )


def _core_error_payload(exc: BaseException) -> tuple[int, dict[str, Any]]:
    typed_payload = typed_error_payload(exc)
    if typed_payload is not None:
        status_by_code = {
            "CONFIG_ERROR": 400,
            "MOUNT_FAILURE": 503,
            "RESTORE_FAILURE": 500,
            "SYNC_FAILURE": 502,
            "PROCESS_START_FAILURE": 502,
            "READINESS_TIMEOUT": 504,
        }
        status = status_by_code.get(str(typed_payload.get("error_code") or ""), 500)
        return status, typed_payload
    return 500, {"error_code": "INTERNAL_ERROR", "detail": str(exc)}


def _http_error_code(status_code: int) -> str:
    status = int(status_code or 500)
    if status == 400:
        return "BAD_REQUEST"
    if status == 404:
        return "NOT_FOUND"
    if status == 405:
        return "METHOD_NOT_ALLOWED"
    if status == 409:
        return "CONFLICT"
    if status == 422:
        return "UNPROCESSABLE_ENTITY"
    if status in {500, 502, 503, 504}:
        return "UPSTREAM_ERROR"
    return f"HTTP_{status}"


def _uvicorn_log_level(keeper_level: str) -> str:
    normalized = core_logging.normalize_log_level(keeper_level)
    if normalized == "debug":
        return "info"
    return normalized


def build_app(state: SandboxState) -> FastAPI:
    app = FastAPI()
    app.state.keeper_state = state

    @app.exception_handler(TypedKeeperError)
    async def _handle_typed_keeper_error(_request: Request, exc: TypedKeeperError) -> JSONResponse:
        status, payload = _core_error_payload(exc)
        return JSONResponse(status_code=status, content=payload)

    @app.exception_handler(HTTPException)
    async def _handle_http_exception(_request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=int(exc.status_code or 500),
            content={"error_code": _http_error_code(int(exc.status_code or 500)), "detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    register_keeper_routes(app, state=state, logger=LOGGER)
    return app


def _load_config(config_file: Path | None) -> KeeperConfig:
    resolved = config_file
    if resolved is None:
        candidate = _default_config_file()
        if not candidate.exists():
            return default_keeper_config()
        resolved = candidate
    try:
        config = load_keeper_config(resolved)
    except ConfigError as exc:
        click.echo(
            json.dumps(
                {"event": "claw_keeper_config_load_error", "config_path": str(resolved), "error": str(exc)},
                sort_keys=True,
            ),
            err=True,
        )
        raise click.ClickException(str(exc)) from exc
    click.echo(
        json.dumps(
            {
                "event": "claw_keeper_config_loaded",
                "config_path": str(resolved),
                "strict_mode": bool(config.runtime.strict_mode),
            },
            sort_keys=True,
        ),
        err=True,
    )
    return config


def _build_state(ctx: click.Context) -> SandboxState:
    options = ctx.obj
    config = _load_config(options["config_file"])
    level = _resolve_keeper_log_level(options["log_level"], config)
    _configure_keeper_logging(level)
    _configure_domain_log_levels(config)
    options["resolved_log_level"] = level
    return SandboxState(config=config, data_dir=options["data_dir"])


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True))


@click.group(help="Keep the assistant gateway running and its state durable.")
@click.option(
    "--config-file",
    default=None,
    show_default="config/keeper.config.toml when present, else built-in defaults",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Keeper TOML config file.",
)
@click.option(
    "--data-dir",
    default=None,
    show_default="config runtime.data_dir or ~/.local/share/claw_keeper",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory for keeper logs.",
)
@click.option(
    "--log-level",
    default=None,
    show_default="config logging.level or info",
    type=click.Choice(KEEPER_LOG_LEVEL_CHOICES, case_sensitive=False),
    help="Keeper logging verbosity (applies to keeper logs and Uvicorn).",
)
@click.pass_context
def main(ctx: click.Context, config_file: Path | None, data_dir: Path | None, log_level: str | None) -> None:
    ctx.obj = {"config_file": config_file, "data_dir": data_dir, "log_level": log_level}


@main.command(help="Boot the sandbox in the background and serve the control API.")
@click.option("--host", default=DEFAULT_HOST, show_default=True)
@click.option("--port", default=DEFAULT_PORT, show_default=True, type=int)
@click.option("--boot/--no-boot", default=True, show_default=True, help="Start the boot sequence on startup.")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int, boot: bool) -> None:
    state = _build_state(ctx)
    level = ctx.obj["resolved_log_level"]
    LOGGER.info(
        "Starting claw keeper host=%s port=%s log_level=%s",
        host,
        port,
        level,
        extra={"component": "startup", "operation": "keeper_start", "result": "started"},
    )
    if boot:
        state.schedule_startup_boot()
    app = build_app(state)
    try:
        uvicorn.run(app, host=host, port=port, log_level=_uvicorn_log_level(level))
    finally:
        state.shutdown()


@main.command(help="Run mount, restore and gateway start once in the foreground.")
@click.option("--timeout", default=None, type=float, help="Seconds to wait for readiness; capped at gateway.startup_timeout_seconds.")
@click.pass_context
def boot(ctx: click.Context, timeout: float | None) -> None:
    state = _build_state(ctx)
    try:
        state.ensure_gateway_running(timeout=timeout)
    except TypedKeeperError as exc:
        _echo_json(state.status_payload())
        raise click.ClickException(f"{exc.error_code}: {exc}") from exc
    finally:
        state.shutdown()
    _echo_json(state.status_payload())


@main.command(help="Mount, settle the restore decision, then push local state to the bucket once.")
@click.pass_context
def sync(ctx: click.Context) -> None:
    state = _build_state(ctx)
    try:
        state.prepare_storage()
    except TypedKeeperError as exc:
        raise click.ClickException(f"{exc.error_code}: {exc}") from exc
    run = state.trigger_manual_sync()
    _echo_json(run.to_payload())
    if not run.succeeded:
        detail = (run.error or {}).get("user_message") or run.outcome
        raise click.ClickException(f"Sync {run.outcome}: {detail}")


@main.command(help="Print the status of a running keeper.")
@click.option("--url", default=f"http://127.0.0.1:{DEFAULT_PORT}", show_default=True, help="Keeper control API base URL.")
@click.option("--timeout", default=DEFAULT_STATUS_TIMEOUT_SECONDS, show_default=True, type=float)
def status(url: str, timeout: float) -> None:
    request = urllib.request.Request(
        url.rstrip("/") + "/api/status",
        headers={"Accept": "application/json"},
        method="GET",
    )
    try:
        with urllib.request.urlopen(request, timeout=max(1.0, float(timeout))) as response:
            body = response.read().decode("utf-8", errors="ignore")
    except (urllib.error.URLError, TimeoutError, OSError) as exc:
        raise click.ClickException(f"Failed to reach keeper at {url}: {exc}") from exc
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"Keeper at {url} returned invalid JSON.") from exc
    _echo_json(payload)


@main.command("gateway-cli", help="Run a one-shot gateway CLI command against the live gateway.")
@click.option("--timeout", default=None, type=float, help="Seconds to allow the CLI command to run.")
@click.argument("args", nargs=-1, required=True)
@click.pass_context
def gateway_cli(ctx: click.Context, timeout: float | None, args: tuple[str, ...]) -> None:
    state = _build_state(ctx)
    try:
        result = state.run_gateway_cli(list(args), timeout=timeout)
    except TypedKeeperError as exc:
        raise click.ClickException(f"{exc.error_code}: {exc}") from exc
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise click.ClickException(f"Gateway CLI command failed: {exc}") from exc
    if result.stdout:
        click.echo(result.stdout, nl=False)
    if result.stderr:
        click.echo(result.stderr, nl=False, err=True)
    ctx.exit(result.returncode)


if __name__ == "__main__":
    main()
