"""
Store health diagnostics.
"""
from typing import List, Optional

import cryptography

from .codec import read_safe
from .config import StoreConfig, is_owner_only
from .crypto import SecretCipher, is_encrypted
from .errors import ProvKeepError
from .history import check_history, load_history
from .lock import LockCoordinator
from .models import DoctorCheck
from .snapshot import SnapshotManager, is_temp_artifact
from .store import ProviderStore


def _check_layout(config: StoreConfig) -> DoctorCheck:
    missing = [str(p) for p in (config.root, config.providers_dir, config.backups_dir) if not p.is_dir()]
    if missing:
        return DoctorCheck(name="1. Store Layout", status="fail", detail=f"Missing: {', '.join(missing)}")
    return DoctorCheck(name="1. Store Layout", status="pass", detail=str(config.root))

def _check_permissions(config: StoreConfig) -> DoctorCheck:
    loose = [config.root, config.providers_dir]
    loose += sorted(config.providers_dir.glob("*.json")) if config.providers_dir.is_dir() else []
    loose = [str(p) for p in loose if p.exists() and not is_owner_only(p)]
    if loose:
        return DoctorCheck(
            name="2. Permissions", status="warn",
            detail=f"{len(loose)} path(s) readable by group/others: {', '.join(loose[:3])}",
        )
    return DoctorCheck(name="2. Permissions", status="pass", detail="Store is owner-only.")

def _check_lock(lock: LockCoordinator) -> DoctorCheck:
    current = lock.inspect()
    if current is None:
        return DoctorCheck(name="3. Lock State", status="pass", detail="Free")
    held, created = current
    who = held.operation if held else "unreadable token"
    if lock.is_stale(created):
        return DoctorCheck(
            name="3. Lock State", status="warn",
            detail=f"Stale lock from '{who}' since {created.isoformat()}; the next write reclaims it.",
        )
    return DoctorCheck(name="3. Lock State", status="warn", detail=f"Held by '{who}' since {created.isoformat()}")

def _check_temp_files(config: StoreConfig) -> DoctorCheck:
    orphans = []
    for directory in (config.root, config.providers_dir, config.backups_dir):
        if directory.is_dir():
            orphans += [p.name for p in directory.iterdir() if is_temp_artifact(p.name)]
    if orphans:
        return DoctorCheck(
            name="4. Orphaned Temp Files", status="warn",
            detail=f"{len(orphans)} left by interrupted writes: {', '.join(sorted(orphans)[:3])}",
        )
    return DoctorCheck(name="4. Orphaned Temp Files", status="pass", detail="None")

def _check_records(store: ProviderStore) -> List[DoctorCheck]:
    records = store.list()
    checks = []
    if store.last_skipped:
        checks.append(DoctorCheck(
            name="5. Provider Records", status="fail",
            detail=f"{len(store.last_skipped)} unreadable: {store.last_skipped[0].path}",
        ))
    else:
        checks.append(DoctorCheck(name="5. Provider Records", status="pass", detail=f"{len(records)} readable"))

    legacy = []
    for record in records:
        data = read_safe(store.config.provider_path(record.alias), b"")
        if b'"enc:' not in data:
            legacy.append(record.alias)
    if legacy:
        checks.append(DoctorCheck(
            name="6. Secret Encryption", status="warn",
            detail=f"Plaintext secrets (re-save to encrypt): {', '.join(legacy)}",
        ))
    else:
        checks.append(DoctorCheck(name="6. Secret Encryption", status="pass", detail="All secrets encrypted"))

    pointer = store.descriptor().default_provider
    default = store.get_default()
    if pointer and default is None:
        checks.append(DoctorCheck(name="7. Default Provider", status="warn", detail=f"Points at missing '{pointer}'"))
    else:
        checks.append(DoctorCheck(name="7. Default Provider", status="pass", detail=default or "Not set"))
    return checks

def _check_history(manager: SnapshotManager) -> DoctorCheck:
    history = load_history(manager.config.history_path)
    problems = check_history(history)
    missing = [s.timestamp for s in history.backups if not manager.exists(s.timestamp)]
    if missing:
        problems.append(f"{len(missing)} snapshot(s) missing on disk: {', '.join(missing[:3])}")
    if problems:
        return DoctorCheck(name="8. Snapshot History", status="warn", detail="; ".join(problems))
    return DoctorCheck(name="8. Snapshot History", status="pass", detail=f"{len(history.backups)} snapshot(s)")

def _check_cipher(cipher: SecretCipher) -> DoctorCheck:
    probe = "provkeep-self-test"
    token = cipher.encrypt(probe)
    if not is_encrypted(token) or cipher.decrypt(token) != probe:
        return DoctorCheck(name="10. Cipher Self-Test", status="fail", detail="Round trip mismatch")
    return DoctorCheck(name="10. Cipher Self-Test", status="pass", detail="AES-256-CBC round trip OK")

def run_diagnostics(config: StoreConfig, store: Optional[ProviderStore] = None) -> List[DoctorCheck]:
    """Execute the store health checks synchronously."""
    checks: List[DoctorCheck] = [_check_layout(config)]
    store = store or ProviderStore(config)
    manager = SnapshotManager(config, lock=store.lock, audit=store.audit)

    checks.append(_check_permissions(config))
    checks.append(_check_lock(store.lock))
    checks.append(_check_temp_files(config))
    try:
        checks.extend(_check_records(store))
    except ProvKeepError as e:
        checks.append(DoctorCheck(name="5. Provider Records", status="fail", detail=str(e)))
    try:
        checks.append(_check_history(manager))
    except ProvKeepError as e:
        checks.append(DoctorCheck(name="8. Snapshot History", status="fail", detail=str(e)))

    checks.append(DoctorCheck(name="9. Cryptography Lib", status="pass", detail=f"v{cryptography.__version__}"))
    checks.append(_check_cipher(store.cipher))

    if config.allow_http:
        checks.append(DoctorCheck(name="11. HTTP Policy", status="warn", detail="PROVKEEP_ALLOW_HTTP is set; plain http allowed for any host"))
    else:
        checks.append(DoctorCheck(name="11. HTTP Policy", status="pass", detail="https required for non-local hosts"))
    return checks
