"""
Snapshot history index. Every update produces a new History value; callers persist it.
"""
from pathlib import Path
from typing import Iterable, List, Optional

from .codec import load_model, save_model
from .config import FILE_MODE
from .models import History, Snapshot
from .utils import utcnow


def create_initial_history() -> History:
    """Create an empty version 1.0.0 history."""
    return History(created=utcnow())

def load_history(path: Path) -> History:
    """Read the index; a missing file is an empty history, a corrupt one raises CorruptDataError."""
    history = load_model(path, History)
    if history is None:
        return create_initial_history()
    return history

def save_history(path: Path, history: History) -> None:
    save_model(path, history, FILE_MODE)

def _rebuild(history: History, backups: List[Snapshot]) -> History:
    backups.sort(key=lambda s: s.created)
    return History(
        version=history.version,
        created=history.created or utcnow(),
        last_backup=backups[-1].timestamp if backups else None,
        total_backups=len(backups),
        backups=backups,
    )

def append_snapshot(history: History, snapshot: Snapshot) -> History:
    """Append a snapshot entry, keeping entries ordered by creation time."""
    backups = [s for s in history.backups if s.timestamp != snapshot.timestamp]
    backups.append(snapshot)
    return _rebuild(history, backups)

def remove_snapshots(history: History, snapshot_ids: Iterable[str]) -> History:
    drop = set(snapshot_ids)
    return _rebuild(history, [s for s in history.backups if s.timestamp not in drop])

def find_snapshot(history: History, snapshot_id: str) -> Optional[Snapshot]:
    return next((s for s in history.backups if s.timestamp == snapshot_id), None)

def check_history(history: History) -> List[str]:
    """Return a list of consistency problems (duplicate ids, stale counters)."""
    errors = []
    seen = set()
    for entry in history.backups:
        if entry.timestamp in seen:
            errors.append(f"Duplicate snapshot ID in history: {entry.timestamp}")
        seen.add(entry.timestamp)
    if history.total_backups != len(history.backups):
        errors.append(
            f"History counts {history.total_backups} backups but lists {len(history.backups)}"
        )
    return errors
