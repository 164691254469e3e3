import json
import os
import shutil
import pytest
from pathlib import Path

from provkeep.config import StoreConfig, default_root
from provkeep.doctor import run_diagnostics
from provkeep.errors import ValidationError
from provkeep.history import check_history, create_initial_history
from provkeep.snapshot import SnapshotManager
from provkeep.store import ProviderStore


def by_name(checks):
    return {c.name.split(". ", 1)[1]: c for c in checks}

def test_healthy_store(config: StoreConfig, store: ProviderStore, fields):
    store.add(fields())
    store.set_default("openrouter")
    checks = by_name(run_diagnostics(config, store))

    assert checks["Store Layout"].status == "pass"
    assert checks["Provider Records"].status == "pass"
    assert checks["Secret Encryption"].status == "pass"
    assert checks["Default Provider"].detail == "openrouter"
    assert checks["Lock State"].status == "pass"
    assert checks["Cipher Self-Test"].status == "pass"
    assert not any(c.status == "fail" for c in checks.values())

def test_problems_are_reported(config: StoreConfig, store: ProviderStore, fields):
    store.add(fields())
    store.set_default("openrouter")
    config.provider_path("openrouter").unlink()
    config.provider_path("legacy").write_text(json.dumps({
        "alias": "legacy", "baseURL": "https://api.example.com", "apiKey": "sk-plain-legacy-key",
    }))
    config.provider_path("broken").write_text("nope")
    (config.providers_dir / ".legacy.json.abcd.tmp").write_text("")
    config.lock_path.write_text("")

    checks = by_name(run_diagnostics(config, store))
    assert checks["Provider Records"].status == "fail"
    assert "legacy" in checks["Secret Encryption"].detail
    assert checks["Default Provider"].status == "warn"
    assert checks["Orphaned Temp Files"].status == "warn"
    assert checks["Lock State"].status == "warn"

def test_missing_snapshot_on_disk(config: StoreConfig, store: ProviderStore, manager: SnapshotManager, fields):
    store.add(fields())
    snapshot = manager.create()
    manager.delete(snapshot.timestamp)
    kept = manager.create()
    shutil.rmtree(manager.snapshot_dir(kept.timestamp))

    checks = by_name(run_diagnostics(config, store))
    assert checks["Snapshot History"].status == "warn"
    assert kept.timestamp in checks["Snapshot History"].detail

def test_http_policy(config: StoreConfig, cipher):
    relaxed = config.model_copy(update={"allow_http": True})
    checks = by_name(run_diagnostics(relaxed, ProviderStore(relaxed, cipher=cipher)))
    assert checks["HTTP Policy"].status == "warn"

def test_check_history_counts():
    history = create_initial_history()
    assert check_history(history) == []
    broken = history.model_copy(update={"total_backups": 3})
    assert check_history(broken)

def test_config_from_env(tmp_path: Path):
    env = {
        "PROVKEEP_HOME": str(tmp_path / "home"),
        "PROVKEEP_SETTINGS_DIR": str(tmp_path / "claude"),
        "PROVKEEP_ALLOW_HTTP": "TRUE",
        "PROVKEEP_MAX_PROVIDERS": "7",
    }
    config = StoreConfig.from_env(env)
    assert config.root == tmp_path / "home"
    assert config.settings_dir == tmp_path / "claude"
    assert config.allow_http is True
    assert config.max_providers == 7
    assert StoreConfig.from_env(env, max_providers=3).max_providers == 3

@pytest.mark.parametrize("raw", ["lots", "0", "-4", "2.5"])
def test_config_rejects_bad_max_providers(tmp_path: Path, raw: str):
    env = {"PROVKEEP_HOME": str(tmp_path / "home"), "PROVKEEP_MAX_PROVIDERS": raw}
    with pytest.raises(ValidationError) as exc:
        StoreConfig.from_env(env)
    assert exc.value.field == "PROVKEEP_MAX_PROVIDERS"

@pytest.mark.skipif(os.name == "nt", reason="XDG layout is POSIX only")
def test_default_root_xdg(tmp_path: Path):
    assert default_root({"XDG_CONFIG_HOME": str(tmp_path)}) == tmp_path / "provkeep"
