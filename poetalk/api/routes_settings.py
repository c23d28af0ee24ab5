from fastapi import APIRouter

from ..config import AppConfig, get_config, update_config
from ..crypto import mask_secret
from ..llm.connection_test import check_connection, validate_api_key
from .deps import reset_sessions

router = APIRouter(prefix="/api/settings", tags=["settings"])


def _public(config: AppConfig) -> dict:
    data = config.model_dump()
    data["poe"]["api_key"] = mask_secret(config.poe.api_key)
    return data


@router.get("")
async def get_settings():
    return _public(get_config())


@router.put("")
async def update_settings(config: AppConfig):
    current = get_config()
    # The masked key from GET comes back unchanged when the user did not edit it
    if not config.poe.api_key or config.poe.api_key == mask_secret(current.poe.api_key):
        config.poe.api_key = current.poe.api_key

    updated = update_config(config)
    await reset_sessions()  # Sessions read settings once, at start

    valid, warning = validate_api_key(updated.poe.api_key)
    data = _public(updated)
    data["api_key_warning"] = None if valid else warning
    return data


@router.post("/test-connection")
async def test_connection():
    result = await check_connection(get_config().poe)
    return result.model_dump()
