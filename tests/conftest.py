import pytest
from pathlib import Path

from provkeep.config import StoreConfig
from provkeep.crypto import SecretCipher, derive_machine_key
from provkeep.store import ProviderStore
from provkeep.snapshot import SnapshotManager


@pytest.fixture
def config(tmp_path: Path) -> StoreConfig:
    settings = tmp_path / "settings"
    settings.mkdir()
    (settings / "settings.json").write_text('{"theme": "dark"}')
    return StoreConfig(root=tmp_path / "store", settings_dir=settings)

@pytest.fixture
def cipher() -> SecretCipher:
    return SecretCipher(derive_machine_key("test-host-tester"))

@pytest.fixture
def store(config: StoreConfig, cipher: SecretCipher) -> ProviderStore:
    return ProviderStore(config, cipher=cipher)

@pytest.fixture
def manager(config: StoreConfig, store: ProviderStore) -> SnapshotManager:
    return SnapshotManager(config, lock=store.lock, audit=store.audit)

@pytest.fixture
def fields():
    """Factory for a valid provider field mapping."""
    def make(alias: str = "openrouter", **extra):
        data = {
            "alias": alias,
            "baseURL": "https://api.openrouter.ai/v1",
            "apiKey": "sk-or-v1-a8f3c9d2e7b1",
        }
        data.update(extra)
        return data
    return make
