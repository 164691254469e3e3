import json
import os
import time
import pytest
from datetime import timedelta

from provkeep.audit import read_audit_log
from provkeep.config import StoreConfig
from provkeep.errors import LockConflictError
from provkeep.lock import LockCoordinator
from provkeep.utils import utcnow


@pytest.fixture
def lock(config: StoreConfig) -> LockCoordinator:
    config.ensure_layout()
    return LockCoordinator(config)

def write_token(config: StoreConfig, operation: str, age_seconds: float, owner: str = "999@elsewhere#dead") -> None:
    created = utcnow() - timedelta(seconds=age_seconds)
    config.lock_path.write_text(json.dumps({
        "operation": operation, "owner": owner, "created": created.isoformat(),
    }))

def test_hold_releases_on_exit(lock: LockCoordinator, config: StoreConfig):
    with lock.hold("add") as token:
        assert config.lock_path.exists()
        assert token.operation == "add"
        assert token.owner == lock.owner
    assert not config.lock_path.exists()

def test_hold_releases_on_exception(lock: LockCoordinator, config: StoreConfig):
    with pytest.raises(RuntimeError):
        with lock.hold("update"):
            raise RuntimeError("boom")
    assert not config.lock_path.exists()

def test_fresh_lock_conflicts(lock: LockCoordinator, config: StoreConfig):
    write_token(config, "restore", age_seconds=5)
    with pytest.raises(LockConflictError) as exc:
        lock.acquire("add")
    assert exc.value.held_by == "restore"
    assert exc.value.since is not None
    # The other holder's token is untouched.
    assert json.loads(config.lock_path.read_text())["operation"] == "restore"

def test_second_coordinator_conflicts(config: StoreConfig):
    config.ensure_layout()
    first = LockCoordinator(config)
    second = LockCoordinator(config)
    with first.hold("remove"):
        with pytest.raises(LockConflictError):
            second.acquire("add")

def test_stale_lock_is_reclaimed(lock: LockCoordinator, config: StoreConfig):
    write_token(config, "update", age_seconds=config.lock_stale_seconds + 30)
    token = lock.acquire("add")
    assert token.owner == lock.owner
    assert json.loads(config.lock_path.read_text())["owner"] == lock.owner

    events = read_audit_log(config, level="warning")
    assert events[-1]["event"] == "lock_reclaimed"
    assert events[-1]["details"]["stale_operation"] == "update"

def test_unreadable_lock_uses_mtime(lock: LockCoordinator, config: StoreConfig):
    config.lock_path.write_text("")
    with pytest.raises(LockConflictError):
        lock.acquire("add")

    old = time.time() - config.lock_stale_seconds - 60
    os.utime(config.lock_path, (old, old))
    token = lock.acquire("add")
    assert token.owner == lock.owner

def test_release_keeps_foreign_token(lock: LockCoordinator, config: StoreConfig):
    token = lock.acquire("add")
    # Simulate our token being reclaimed by someone else after going stale.
    write_token(config, "import", age_seconds=0, owner="1@other#beef")
    lock.release(token)
    assert config.lock_path.exists()
    assert read_audit_log(config)[-1]["event"] == "lock_lost"

def test_release_without_file_is_noop(lock: LockCoordinator, config: StoreConfig):
    token = lock.acquire("add")
    config.lock_path.unlink()
    lock.release(token)

def test_inspect(lock: LockCoordinator):
    assert lock.inspect() is None
    with lock.hold("use"):
        held, created = lock.inspect()
        assert held.operation == "use"
        assert not lock.is_stale(created)

def test_stale_reclaim_does_not_steal_a_fresh_lock(config: StoreConfig, monkeypatch):
    config.ensure_layout()
    first = LockCoordinator(config)
    second = LockCoordinator(config)
    write_token(config, "update", age_seconds=config.lock_stale_seconds + 30)

    real_inspect = second.inspect
    taken = []

    def inspect_then_lose_race():
        seen = real_inspect()
        if not taken:
            # The other coordinator reclaims the same stale token in between.
            taken.append(first.acquire("add"))
        return seen

    monkeypatch.setattr(second, "inspect", inspect_then_lose_race)
    with pytest.raises(LockConflictError) as exc:
        second.acquire("remove")

    assert exc.value.held_by == "add"
    assert json.loads(config.lock_path.read_text())["owner"] == first.owner
    assert not list(config.lock_path.parent.glob(".provider-lock.stale-*"))
    first.release(taken[0])
    assert not config.lock_path.exists()
