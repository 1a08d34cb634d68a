"""Global app configuration (provider keys, endpoints, default models).

Stored values live in {data_dir}/config.json. Provider keys that the file
leaves empty are filled from the environment (loaded from .env by the app).
"""

import json
import os
from pathlib import Path
from typing import Any

from storyforge.models import AISettings

DEFAULT_LOCAL_API_URL = "http://localhost:1234/v1"

_CONFIG_DEFAULTS: dict[str, Any] = {
    "openai_key": "",
    "openrouter_key": "",
    "gemini_key": "",
    "local_api_url": DEFAULT_LOCAL_API_URL,
    "default_models": {
        "local": None,
        "openai": None,
        "openrouter": None,
        "gemini": None,
    },
    "available_models": [],
    "last_models_fetch": None,
}

_ENV_KEYS = {
    "openai_key": "OPENAI_API_KEY",
    "openrouter_key": "OPENROUTER_API_KEY",
    "gemini_key": "GEMINI_API_KEY",
    "local_api_url": "LOCAL_API_URL",
}


def _config_path(data_dir: Path) -> Path:
    return data_dir / "config.json"


def get_config(data_dir: Path) -> dict[str, Any]:
    """Read config, returning defaults merged with stored values."""
    config: dict[str, Any] = json.loads(json.dumps(_CONFIG_DEFAULTS))
    path = _config_path(data_dir)
    stored: dict[str, Any] = json.loads(path.read_text()) if path.is_file() else {}
    for key in ("openai_key", "openrouter_key", "gemini_key", "local_api_url",
                "available_models", "last_models_fetch"):
        if key in stored:
            config[key] = stored[key]
    if isinstance(stored.get("default_models"), dict):
        for provider, model in stored["default_models"].items():
            if provider in config["default_models"]:
                config["default_models"][provider] = model
    # The environment fills whatever the file leaves unset or empty
    for key, env_name in _ENV_KEYS.items():
        if not stored.get(key) and os.getenv(env_name):
            config[key] = os.getenv(env_name)
    return config


def update_config(data_dir: Path, fields: dict[str, Any]) -> dict[str, Any]:
    """Merge fields into the stored config and persist. Returns full config."""
    path = _config_path(data_dir)
    stored: dict[str, Any] = json.loads(path.read_text()) if path.is_file() else {}
    for key in ("openai_key", "openrouter_key", "gemini_key", "local_api_url",
                "available_models", "last_models_fetch"):
        if key in fields:
            stored[key] = fields[key]
    if "default_models" in fields:
        stored.setdefault("default_models", {}).update(fields["default_models"])
    path.write_text(json.dumps(stored, indent=2, default=str))
    return get_config(data_dir)


def load_ai_settings(data_dir: Path) -> AISettings:
    config = get_config(data_dir)
    defaults = config["default_models"]
    return AISettings(
        openai_key=config["openai_key"],
        openrouter_key=config["openrouter_key"],
        gemini_key=config["gemini_key"],
        local_api_url=config["local_api_url"],
        default_local_model=defaults["local"],
        default_openai_model=defaults["openai"],
        default_openrouter_model=defaults["openrouter"],
        default_gemini_model=defaults["gemini"],
        available_models=config["available_models"],
        last_models_fetch=config["last_models_fetch"],
    )
