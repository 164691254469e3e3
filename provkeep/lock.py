"""
Advisory cross-process lock for mutating store operations.

A sentinel file (`.provider-lock`) is created with O_EXCL; its JSON body names the
operation, the owning process and when it was taken. A token older than the
staleness threshold is presumed abandoned and reclaimed by the next caller.
"""
import os
import secrets
import socket
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, Optional, Tuple

from .audit import AuditLogger
from .codec import decode_model, encode_model, read_safe
from .config import FILE_MODE, StoreConfig
from .errors import CorruptDataError, LockConflictError, StorageIOError
from .models import LockToken
from .utils import utcnow


class LockCoordinator:
    def __init__(self, config: StoreConfig, audit: Optional[AuditLogger] = None):
        self.path = config.lock_path
        self.stale_after = config.lock_stale_seconds
        self.audit = audit or AuditLogger(config)
        self._owner = f"{os.getpid()}@{socket.gethostname()}#{secrets.token_hex(4)}"

    @property
    def owner(self) -> str:
        return self._owner

    def inspect(self) -> Optional[Tuple[Optional[LockToken], datetime]]:
        """
        Return (token, created) for the current lock file, or None if there is none.
        token is None when the file is unreadable; created then falls back to its mtime.
        """
        try:
            data = read_safe(self.path)
            if data is None:
                return None
            mtime = datetime.fromtimestamp(self.path.stat().st_mtime, tz=timezone.utc)
        except FileNotFoundError:
            return None
        try:
            token = decode_model(data, LockToken, self.path)
        except CorruptDataError:
            # Empty or half-written token from an interrupted writer.
            return None, mtime
        return token, token.created

    def age_of(self, created: datetime) -> float:
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return (utcnow() - created).total_seconds()

    def is_stale(self, created: datetime) -> bool:
        return self.age_of(created) > self.stale_after

    def _matches(self, path: Path, held: Optional[LockToken], created: datetime) -> bool:
        try:
            token = decode_model(path.read_bytes(), LockToken, path)
        except CorruptDataError:
            mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
            return held is None and mtime == created
        return held is not None and token.owner == held.owner and token.created == held.created

    def _reclaim(self, held: Optional[LockToken], created: datetime) -> None:
        """
        Move the stale token aside and delete it only if it is still the one we judged stale.
        A token that changed hands in between is put back and reported as a conflict.
        """
        aside = self.path.with_name(f"{self.path.name}.stale-{secrets.token_hex(4)}")
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            # Someone else reclaimed it first.
            return
        except OSError as e:
            raise StorageIOError(self.path, e) from e

        try:
            if self._matches(aside, held, created):
                aside.unlink()
                return
            try:
                current: Optional[LockToken] = decode_model(aside.read_bytes(), LockToken, aside)
            except CorruptDataError:
                # A new holder that has not written its token yet.
                current = None
            try:
                os.link(aside, self.path)
            except FileExistsError:
                self.audit.warning("lock_lost", owner=current.owner if current else None)
            aside.unlink()
        except OSError as e:
            raise StorageIOError(self.path, e) from e
        held_by = current.operation if current else "unknown"
        since = current.created if current else None
        raise LockConflictError(f"Store lock changed hands while reclaiming it; now held by '{held_by}'.", held_by=held_by, since=since)

    def acquire(self, operation: str) -> LockToken:
        """Take the lock for operation or raise LockConflictError naming the current holder."""
        token = LockToken(operation=operation, owner=self._owner, created=utcnow())
        payload = encode_model(token)

        for _ in range(3):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, FILE_MODE)
            except FileExistsError:
                current = self.inspect()
                if current is None:
                    # Released between our open() and read; try again.
                    continue
                held, created = current
                if self.is_stale(created):
                    self.audit.warning(
                        "lock_reclaimed",
                        operation=operation,
                        stale_operation=held.operation if held else None,
                        stale_owner=held.owner if held else None,
                        age_seconds=round(self.age_of(created), 1),
                    )
                    self._reclaim(held, created)
                    continue
                raise LockConflictError(
                    f"Store is locked by '{held.operation if held else 'unknown'}' since {created.isoformat()}.",
                    held_by=held.operation if held else "unknown",
                    since=created,
                )
            except OSError as e:
                raise StorageIOError(self.path, e) from e

            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                self.path.unlink(missing_ok=True)
                raise StorageIOError(self.path, e) from e
            return token

        raise LockConflictError("Could not acquire the store lock; it keeps changing hands.", held_by="unknown")

    def release(self, token: LockToken) -> None:
        """Delete the lock file if it is still ours; a missing file is fine."""
        current = self.inspect()
        if current is None:
            return
        held, _ = current
        if held is None:
            self.audit.warning("lock_unreadable", operation=token.operation)
            return
        if held.owner != token.owner:
            # Our token went stale and was reclaimed; the file belongs to someone else now.
            self.audit.warning("lock_lost", operation=token.operation, new_owner=held.owner)
            return
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageIOError(self.path, e) from e

    @contextmanager
    def hold(self, operation: str) -> Generator[LockToken, None, None]:
        """Scoped acquisition: the lock is released on every exit path."""
        token = self.acquire(operation)
        try:
            yield token
        finally:
            self.release(token)
