import pytest

from poetalk import config, crypto
from poetalk.api import deps
from poetalk.config import PoeConfig
from poetalk.conversation.storage import ConversationStore
from poetalk.llm.proxy import PROXY_ENV_VARS


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point the config dir at a temp folder and clear proxy env vars."""
    for name in PROXY_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    config_dir = tmp_path / "config"
    monkeypatch.setattr(config, "_config_dir", config_dir)
    config.reset_config_cache()
    crypto.reset_key_cache()
    deps.reset_state()
    yield config_dir
    config.reset_config_cache()
    crypto.reset_key_cache()
    deps.reset_state()


@pytest.fixture
def poe_config():
    return PoeConfig(api_key="pk_test_key_123", bot_name="TestBot")


@pytest.fixture
def store(tmp_path):
    return ConversationStore(tmp_path / "conversations", write_delay=0.05)


@pytest.fixture
def sync_store(tmp_path):
    """Write-through store; nothing is left pending between awaits."""
    return ConversationStore(tmp_path / "conversations", write_delay=0)
