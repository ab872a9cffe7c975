from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from claw_core import shared as core_shared


LOGGER = logging.getLogger("claw_keeper.gateway")

ASSISTANT_CONFIG_FILE_NAME = "openclaw.json"
AI_GATEWAY_ACCOUNT_ID_ENV = "CF_AI_GATEWAY_ACCOUNT_ID"
AI_GATEWAY_GATEWAY_ID_ENV = "CF_AI_GATEWAY_GATEWAY_ID"
AI_GATEWAY_API_KEY_ENV = "CLOUDFLARE_AI_GATEWAY_API_KEY"
AI_GATEWAY_BASE_URL = "https://gateway.ai.cloudflare.com/v1"
DEFAULT_PRIMARY_MODEL = "ai-gateway-anthropic/claude-sonnet-4-5-20250929"

ANTHROPIC_MODELS: tuple[dict[str, Any], ...] = (
    {"id": "claude-opus-4-6", "name": "Claude Opus 4.6", "contextWindow": 200000, "maxTokens": 16000},
    {"id": "claude-sonnet-4-5-20250929", "name": "Claude Sonnet 4.5", "contextWindow": 200000, "maxTokens": 16000},
    {"id": "claude-haiku-4-5-20251001", "name": "Claude Haiku 4.5", "contextWindow": 200000, "maxTokens": 16000},
)
OPENAI_MODELS: tuple[dict[str, Any], ...] = (
    {"id": "gpt-4o", "name": "GPT-4o", "contextWindow": 128000, "maxTokens": 16000},
    {"id": "gpt-4o-mini", "name": "GPT-4o Mini", "contextWindow": 128000, "maxTokens": 16000},
    {"id": "o1", "name": "o1", "contextWindow": 128000, "maxTokens": 16000},
    {"id": "o1-mini", "name": "o1 Mini", "contextWindow": 128000, "maxTokens": 16000},
)


def _ensure_table(parent: dict[str, Any], key: str) -> dict[str, Any]:
    value = parent.get(key)
    if not isinstance(value, dict):
        value = {}
        parent[key] = value
    return value


def apply_ai_gateway_providers(config: dict[str, Any], *, account_id: str, gateway_id: str, api_key: str) -> dict[str, Any]:
    patched = dict(config)
    models = _ensure_table(patched, "models")
    providers = _ensure_table(models, "providers")
    base_url = f"{AI_GATEWAY_BASE_URL}/{account_id}/{gateway_id}"
    providers["ai-gateway-anthropic"] = {
        "baseUrl": f"{base_url}/anthropic",
        "apiKey": api_key,
        "api": "anthropic-messages",
        "models": [dict(model) for model in ANTHROPIC_MODELS],
    }
    providers["ai-gateway-openai"] = {
        "baseUrl": f"{base_url}/openai",
        "apiKey": api_key,
        "api": "openai-completions",
        "models": [dict(model) for model in OPENAI_MODELS],
    }
    agents = _ensure_table(patched, "agents")
    defaults = _ensure_table(agents, "defaults")
    if not defaults.get("model"):
        defaults["model"] = {"primary": DEFAULT_PRIMARY_MODEL}
    return patched


def configure_ai_gateway_providers(config_path: Path, secrets: Mapping[str, str]) -> bool:
    """Patch the assistant config with AI Gateway providers when credentials exist.

    Returns False without touching the file when any credential is missing.
    An unreadable or malformed config file is replaced by a fresh one, matching
    the assistant's own behavior of starting from an empty config.
    """
    account_id = core_shared.env_value(secrets, AI_GATEWAY_ACCOUNT_ID_ENV)
    gateway_id = core_shared.env_value(secrets, AI_GATEWAY_GATEWAY_ID_ENV)
    api_key = core_shared.env_value(secrets, AI_GATEWAY_API_KEY_ENV)
    if not account_id or not gateway_id or not api_key:
        LOGGER.debug(
            "AI Gateway credentials incomplete; provider config left unchanged",
            extra={"component": "gateway", "operation": "configure_providers", "result": "skipped"},
        )
        return False

    config_path = Path(config_path)
    current: dict[str, Any] = {}
    try:
        loaded = json.loads(config_path.read_text(encoding="utf-8"))
        if isinstance(loaded, dict):
            current = loaded
    except FileNotFoundError:
        pass
    except (OSError, json.JSONDecodeError) as exc:
        LOGGER.warning(
            "Assistant config %s unreadable, starting from empty config: %s",
            config_path,
            exc,
            extra={"component": "gateway", "operation": "configure_providers", "result": "reset"},
        )

    patched = apply_ai_gateway_providers(current, account_id=account_id, gateway_id=gateway_id, api_key=api_key)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as fp:
        json.dump(patched, fp, indent=2)
    LOGGER.info(
        "AI Gateway providers configured in %s",
        config_path,
        extra={"component": "gateway", "operation": "configure_providers", "result": "patched"},
    )
    return True
