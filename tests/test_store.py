import json
from pathlib import Path
import pytest

from provkeep.config import StoreConfig
from provkeep.crypto import SecretCipher, derive_machine_key, is_encrypted
from provkeep.errors import (
    CapacityError,
    DecryptionError,
    DuplicateAliasError,
    LockConflictError,
    ProviderNotFoundError,
    ValidationError,
)
from provkeep.models import RECORD_VERSION
from provkeep.store import REDACTED, ProviderStore


def test_add_and_get(store: ProviderStore, config: StoreConfig, fields):
    added = store.add(fields(timeout=60000, description="Router"))
    assert added.api_key == "sk-or-v1-a8f3c9d2e7b1"
    assert added.version == RECORD_VERSION
    assert added.created is not None and added.id

    on_disk = json.loads(config.provider_path("openrouter").read_text())
    assert is_encrypted(on_disk["apiKey"])
    assert on_disk["baseURL"] == "https://api.openrouter.ai/v1"
    assert on_disk["timeout"] == 60000

    record = store.get("openrouter")
    assert record.api_key == "sk-or-v1-a8f3c9d2e7b1"
    assert record.description == "Router"
    assert record.enabled is True

def test_add_rejects_invalid(store: ProviderStore, config: StoreConfig, fields):
    with pytest.raises(ValidationError):
        store.add(fields(baseURL="http://api.example.com"))
    assert store.count() == 0
    assert not config.lock_path.exists()

def test_duplicate_alias(store: ProviderStore, fields):
    store.add(fields())
    with pytest.raises(DuplicateAliasError):
        store.add(fields(apiKey="sk-another-key-123"))

def test_capacity(config: StoreConfig, cipher: SecretCipher, fields):
    small = ProviderStore(config.model_copy(update={"max_providers": 2}), cipher=cipher)
    small.add(fields("one"))
    small.add(fields("two"))
    with pytest.raises(CapacityError):
        small.add(fields("three"))

def test_mutation_blocked_while_locked(store: ProviderStore, config: StoreConfig, fields):
    config.lock_path.write_text(json.dumps({
        "operation": "restore", "owner": "1@other#beef", "created": "2099-01-01T00:00:00+00:00",
    }))
    with pytest.raises(LockConflictError):
        store.add(fields())
    assert not store.exists("openrouter")

def test_weak_secret_warning(store: ProviderStore, fields):
    store.add(fields(apiKey="sk-demo-abcdef"))
    assert store.last_warnings

def test_get_missing(store: ProviderStore):
    with pytest.raises(ProviderNotFoundError):
        store.get("ghost")

def test_unsafe_lookup_alias(store: ProviderStore):
    with pytest.raises(ValidationError):
        store.get("../etc/passwd")

def test_update_preserves_identity(store: ProviderStore, config: StoreConfig, fields):
    original = store.add(fields())
    stored_secret = json.loads(config.provider_path("openrouter").read_text())["apiKey"]

    updated = store.update("openrouter", {"timeout": 90000, "description": "Edited"})
    assert updated.created == original.created
    assert updated.id == original.id
    assert updated.last_updated >= original.last_updated
    assert updated.timeout == 90000
    # Unchanged secrets are not re-encrypted.
    assert json.loads(config.provider_path("openrouter").read_text())["apiKey"] == stored_secret

def test_update_changes_secret(store: ProviderStore, fields):
    store.add(fields())
    store.update("openrouter", {"apiKey": "sk-rotated-key-9876"})
    assert store.get("openrouter").api_key == "sk-rotated-key-9876"

def test_update_rekeys_foreign_record(store: ProviderStore, config: StoreConfig, fields):
    foreign = SecretCipher(derive_machine_key("other-host-other-user"))
    ProviderStore(config, cipher=foreign).add(fields())
    with pytest.raises(DecryptionError):
        store.update("openrouter", {"timeout": 60000})

    updated = store.update("openrouter", {"apiKey": "sk-brand-new-key-1234"})
    assert updated.api_key == "sk-brand-new-key-1234"
    assert store.get("openrouter").api_key == "sk-brand-new-key-1234"
    assert [r.alias for r in store.list()] == ["openrouter"]

def test_update_cannot_rename(store: ProviderStore, fields):
    store.add(fields())
    with pytest.raises(ValidationError):
        store.update("openrouter", {"alias": "renamed"})
    with pytest.raises(ValidationError):
        store.update("openrouter", {"created": "2020-01-01"})

def test_update_validates_merged(store: ProviderStore, fields):
    store.add(fields())
    with pytest.raises(ValidationError):
        store.update("openrouter", {"timeout": 5})
    assert store.get("openrouter").timeout is None

def test_set_enabled(store: ProviderStore, fields):
    store.add(fields())
    assert store.set_enabled("openrouter", False).enabled is False
    assert store.stats()["disabled"] == 1

def test_default_pointer(store: ProviderStore, fields):
    store.add(fields("first"))
    store.add(fields("second"))
    assert store.get_default() is None

    used = store.set_default("second")
    assert used.last_used is not None
    assert store.get_default() == "second"

    store.remove("second")
    assert store.get_default() is None
    assert store.descriptor().default_provider is None

def test_remove_keeps_unrelated_default(store: ProviderStore, fields):
    store.add(fields("first"))
    store.add(fields("second"))
    store.set_default("first")
    store.remove("second")
    assert store.get_default() == "first"

def test_remove_missing(store: ProviderStore):
    with pytest.raises(ProviderNotFoundError):
        store.remove("ghost")

def test_dangling_default_reads_none(store: ProviderStore, config: StoreConfig, fields):
    store.add(fields())
    store.set_default("openrouter")
    config.provider_path("openrouter").unlink()
    assert store.get_default() is None

def test_list_skips_unreadable(store: ProviderStore, config: StoreConfig, fields):
    store.add(fields("good"))
    config.provider_path("broken").write_text("{ not json")
    foreign = SecretCipher(derive_machine_key("other-host-other-user"))
    ProviderStore(config, cipher=foreign).add(fields("foreign"))

    records = store.list()
    assert [r.alias for r in records] == ["good"]
    assert {Path(s.path).name for s in store.last_skipped} == {"broken.json", "foreign.json"}

def test_list_sorted(store: ProviderStore, fields):
    for alias in ("zeta", "alpha", "mid"):
        store.add(fields(alias))
    assert [r.alias for r in store.list()] == ["alpha", "mid", "zeta"]

def test_legacy_plaintext_record(store: ProviderStore, config: StoreConfig):
    config.provider_path("legacy").write_text(json.dumps({
        "alias": "legacy", "baseURL": "https://api.example.com", "apiKey": "sk-legacy-plain-key",
    }))
    record = store.get("legacy")
    assert record.api_key == "sk-legacy-plain-key"
    assert record.version == "1.0.0"

    store.update("legacy", {"description": "migrated"})
    on_disk = json.loads(config.provider_path("legacy").read_text())
    assert is_encrypted(on_disk["apiKey"])
    assert on_disk["version"] == RECORD_VERSION
    assert on_disk["id"]

def test_export_redacts(store: ProviderStore, fields):
    store.add(fields())
    store.set_default("openrouter")
    payload = store.export()
    assert payload["count"] == 1
    assert payload["defaultProvider"] == "openrouter"
    assert payload["providers"]["openrouter"]["apiKey"] == REDACTED

    assert store.export(redact=False)["providers"]["openrouter"]["apiKey"] == "sk-or-v1-a8f3c9d2e7b1"

def test_import_records(store: ProviderStore, config: StoreConfig, cipher: SecretCipher, fields, tmp_path):
    store.add(fields("one"))
    store.add(fields("two"))
    payload = store.export(redact=False)

    other = ProviderStore(StoreConfig(root=tmp_path / "other"), cipher=cipher)
    other.add(fields("one", apiKey="sk-preexisting-key"))
    report = other.import_records(payload)
    assert report.successful == 1
    assert report.failed == 1
    assert other.get("two").api_key == "sk-or-v1-a8f3c9d2e7b1"

    report = other.import_records(payload, overwrite=True)
    assert report.failed == 0
    assert other.get("one").api_key == "sk-or-v1-a8f3c9d2e7b1"

def test_import_rejects_redacted(store: ProviderStore, fields):
    report = store.import_records([fields(apiKey=REDACTED), fields("other"), {"alias": "broken"}])
    assert [r.success for r in report.results] == [False, True, False]
    assert not store.exists("openrouter")

def test_import_rejects_malformed_entries(store: ProviderStore, fields):
    report = store.import_records({"providers": [fields("listed"), "not-a-provider", 42]})
    assert [r.success for r in report.results] == [True, False, False]
    assert "str" in report.results[1].error
    assert store.exists("listed")

    with pytest.raises(ValidationError):
        store.import_records({"providers": "openrouter"})
