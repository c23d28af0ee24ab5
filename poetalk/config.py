import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_BOT_NAME = "Claude-Sonnet-4.5"


class PoeConfig(BaseModel):
    api_key: str = ""
    bot_name: str = DEFAULT_BOT_NAME
    proxy_url: str = ""    # e.g. http://127.0.0.1:7890, falls back to *_PROXY env vars
    referer_url: str = ""  # Sent as HTTP-Referer when set
    app_title: str = ""    # Sent as X-Title when set


class AppConfig(BaseModel):
    poe: PoeConfig = PoeConfig()
    language: str = "en"


_config_dir = Path(os.environ.get("POETALK_CONFIG_DIR", Path.home() / ".poetalk"))
_CONFIG_FILENAME = "config.json"

# Dot-path ("section.field") of values encrypted at rest
SENSITIVE_FIELDS: list[str] = [
    "poe.api_key",
]


def get_config_dir() -> Path:
    return _config_dir


def get_config_file() -> Path:
    return _config_dir / _CONFIG_FILENAME


def get_conversations_dir() -> Path:
    return _config_dir / "conversations"


def _encrypt_sensitive(data: dict) -> dict:
    """Encrypt sensitive fields in a config dict before writing to disk."""
    from .crypto import encrypt_value

    for dotpath in SENSITIVE_FIELDS:
        section, field = dotpath.split(".", 1)
        if section in data and field in data[section]:
            data[section][field] = encrypt_value(data[section][field])
    return data


def _decrypt_sensitive(data: dict) -> dict:
    """Decrypt sensitive fields in a config dict after reading from disk."""
    from .crypto import decrypt_value

    for dotpath in SENSITIVE_FIELDS:
        section, field = dotpath.split(".", 1)
        if section in data and field in data[section]:
            data[section][field] = decrypt_value(data[section][field])
    return data


def _needs_migration(data: dict) -> bool:
    """Return True if any sensitive field is non-empty plaintext (no ENC: prefix)."""
    from .crypto import _ENC_PREFIX

    for dotpath in SENSITIVE_FIELDS:
        section, field = dotpath.split(".", 1)
        val = data.get(section, {}).get(field, "")
        if val and not val.startswith(_ENC_PREFIX):
            return True
    return False


def _ensure_config_dir() -> None:
    _config_dir.mkdir(parents=True, exist_ok=True)


def load_config() -> AppConfig:
    _ensure_config_dir()
    config_file = get_config_file()
    if config_file.exists():
        try:
            data = json.loads(config_file.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.error("Failed to load config.json: %s", e)
            return AppConfig()

        migrate = _needs_migration(data)
        data = _decrypt_sensitive(data)
        config = AppConfig(**data)

        # Re-save with encryption on first load of a plaintext config
        if migrate:
            logger.info("Migrating config to encrypted storage")
            save_config(config)

        return config
    return AppConfig()


def save_config(config: AppConfig) -> None:
    from .crypto import set_strict_permissions

    _ensure_config_dir()
    data = json.loads(config.model_dump_json())
    data = _encrypt_sensitive(data)
    config_file = get_config_file()
    config_file.write_text(
        json.dumps(data, indent=2, ensure_ascii=False),
        encoding="utf-8",
    )
    set_strict_permissions(config_file)


_current_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    global _current_config
    if _current_config is None:
        _current_config = load_config()
    return _current_config


def update_config(config: AppConfig) -> AppConfig:
    global _current_config
    save_config(config)
    _current_config = config
    return _current_config


def reset_config_cache() -> None:
    global _current_config
    _current_config = None
