"""
Snapshot Manager: point-in-time copies of the store (and the adjacent settings tree)
with a per-item size/checksum manifest, a history index and retention.

Layout of one snapshot directory:
    backups/<id>/store/<item>      one entry per top-level store item
    backups/<id>/settings/         the external settings tree, when present
    backups/<id>/snapshot.json     manifest; written last, so its presence means the copy completed
"""
import os
import platform
import shutil
import socket
import tarfile
import tempfile
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path, PurePosixPath
from typing import Generator, List, Optional, Tuple, Union

from .audit import AuditLogger
from .codec import TEMP_SUFFIX, decode_model, read_safe, save_model
from .config import (
    AUDIT_FILENAME,
    BACKUPS_DIRNAME,
    DIR_MODE,
    FILE_MODE,
    HISTORY_FILENAME,
    LOCK_FILENAME,
    StoreConfig,
    apply_secure_permissions,
)
from .errors import (
    CorruptDataError,
    IntegrityError,
    SnapshotError,
    SnapshotExistsError,
    SnapshotNotFoundError,
    StorageIOError,
    ValidationError,
)
from .history import (
    append_snapshot,
    find_snapshot,
    load_history,
    remove_snapshots,
    save_history,
)
from .lock import LockCoordinator
from .models import (
    CleanupFailure,
    CleanupReport,
    HostMetadata,
    IntegrityIssue,
    ManifestEntry,
    RestoreResult,
    Snapshot,
    SnapshotKind,
    SnapshotStatus,
    VerifyResult,
    VerifySummary,
)
from .restore import copy_item, replace_path, safe_extract
from .utils import (
    contained_path,
    current_user,
    private_workdir,
    remove_path,
    timestamp_id,
    tree_checksum,
    tree_size,
    utcnow,
)

MANIFEST_FILENAME = "snapshot.json"
ARCHIVE_SUFFIX = ".tar.gz"
STORE_PREFIX = "store"
SETTINGS_PREFIX = "settings"

# Never copied into (or restored over from) a snapshot.
EXCLUDED_ITEMS = {BACKUPS_DIRNAME, HISTORY_FILENAME, LOCK_FILENAME, AUDIT_FILENAME}

SORT_KEYS = ("created", "size", "name")


def host_metadata() -> HostMetadata:
    return HostMetadata(
        hostname=socket.gethostname(),
        platform=platform.platform(),
        python=platform.python_version(),
        user=current_user(),
    )

def is_temp_artifact(name: str) -> bool:
    """Leftovers of interrupted atomic writes, restores or lock reclaims."""
    return name.startswith(".") and (name.endswith(TEMP_SUFFIX) or ".restore-" in name or ".old-" in name or ".stale-" in name)


class SnapshotManager:
    def __init__(
        self,
        config: StoreConfig,
        lock: Optional[LockCoordinator] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.config = config
        config.ensure_layout()
        self.audit = audit or AuditLogger(config)
        self.lock = lock or LockCoordinator(config, self.audit)

    # -- paths -------------------------------------------------------------

    def snapshot_dir(self, snapshot_id: str) -> Path:
        return contained_path(self.config.backups_dir / snapshot_id, self.config.backups_dir)

    def archive_path(self, snapshot_id: str) -> Path:
        return contained_path(self.config.backups_dir / f"{snapshot_id}{ARCHIVE_SUFFIX}", self.config.backups_dir)

    def exists(self, snapshot_id: str) -> bool:
        return self.snapshot_dir(snapshot_id).is_dir() or self.archive_path(snapshot_id).is_file()

    def _new_id(self) -> str:
        base = timestamp_id(utcnow())
        known = {s.timestamp for s in load_history(self.config.history_path).backups}
        candidate = base
        n = 2
        while candidate in known or self.exists(candidate):
            candidate = f"{base}_{n}"
            n += 1
        return candidate

    def _live_items(self) -> List[Tuple[Path, str]]:
        """(source, dest_path) pairs for everything a snapshot copies."""
        items: List[Tuple[Path, str]] = []
        for source in sorted(self.config.root.iterdir(), key=lambda p: p.name):
            if source.name in EXCLUDED_ITEMS or is_temp_artifact(source.name):
                continue
            if not source.exists():
                # dangling symlink
                continue
            items.append((source, f"{STORE_PREFIX}/{source.name}"))

        settings = self.config.settings_dir
        if settings is not None and settings.is_dir():
            items.append((settings, SETTINGS_PREFIX))
        return items

    def _live_target(self, dest_path: str) -> Optional[Path]:
        """Map a manifest destPath back onto the live tree of this config."""
        parts = PurePosixPath(dest_path).parts
        if parts == (SETTINGS_PREFIX,):
            return self.config.settings_dir
        if len(parts) == 2 and parts[0] == STORE_PREFIX and parts[1] not in EXCLUDED_ITEMS:
            return contained_path(self.config.root / parts[1], self.config.root)
        return None

    # -- manifest ----------------------------------------------------------

    def _read_manifest(self, snapshot_id: str, base: Path) -> Snapshot:
        path = base / MANIFEST_FILENAME
        data = read_safe(path)
        if data is None:
            raise SnapshotNotFoundError(snapshot_id, "Its manifest is missing.")
        try:
            return decode_model(data, Snapshot, path)
        except CorruptDataError as e:
            raise IntegrityError(path, "readable snapshot manifest", str(e.cause)) from e

    @contextmanager
    def _opened(self, snapshot_id: str) -> Generator[Optional[Path], None, None]:
        """Yield the snapshot's directory, extracting an archive into a private temp dir if needed."""
        directory = self.snapshot_dir(snapshot_id)
        archive = self.archive_path(snapshot_id)
        if directory.is_dir():
            yield directory
        elif archive.is_file():
            with private_workdir(prefix="provkeep_verify_") as temp_dir:
                safe_extract(archive, temp_dir)
                yield temp_dir / snapshot_id
        else:
            yield None

    # -- operations --------------------------------------------------------

    def create(
        self,
        description: str = "Manual backup",
        kind: SnapshotKind = "manual",
        auto_clean: bool = True,
        compress: bool = False,
    ) -> Snapshot:
        """Copy the live tree into a new snapshot, record it in history, then apply retention."""
        snapshot_id = self._new_id()
        destination = self.snapshot_dir(snapshot_id)
        destination.mkdir(parents=True)
        apply_secure_permissions(destination, DIR_MODE)

        entries: List[ManifestEntry] = []
        try:
            for source, dest_path in self._live_items():
                target = destination / dest_path
                target.parent.mkdir(parents=True, exist_ok=True)
                try:
                    copy_item(source, target)
                except OSError as e:
                    raise StorageIOError(source, e) from e
                entries.append(ManifestEntry(
                    source_path=str(source),
                    dest_path=dest_path,
                    size=tree_size(target),
                    checksum=tree_checksum(target) if self.config.checksums else None,
                ))

            snapshot = Snapshot(
                timestamp=snapshot_id,
                description=description,
                kind=kind,
                created=utcnow(),
                total_size=sum(e.size for e in entries),
                manifest=entries,
                host=host_metadata(),
            )
            save_model(destination / MANIFEST_FILENAME, snapshot, FILE_MODE)
        except BaseException:
            shutil.rmtree(destination, ignore_errors=True)
            raise

        history = load_history(self.config.history_path)
        save_history(self.config.history_path, append_snapshot(history, snapshot))
        self.audit.info(
            "snapshot_created", snapshot_id=snapshot_id, kind=kind,
            items=len(entries), total_size=snapshot.total_size,
        )

        if compress:
            self.compress(snapshot_id)
        if auto_clean:
            self.clean_old()
        return snapshot

    def get(self, snapshot_id: str) -> Snapshot:
        snapshot = find_snapshot(load_history(self.config.history_path), snapshot_id)
        if snapshot is not None:
            return snapshot
        with self._opened(snapshot_id) as base:
            if base is None:
                raise SnapshotNotFoundError(snapshot_id)
            return self._read_manifest(snapshot_id, base)

    def list(self, sort_by: str = "created", limit: Optional[int] = None) -> List[SnapshotStatus]:
        """History entries, newest first by default, annotated with their on-disk state."""
        if sort_by not in SORT_KEYS:
            raise ValidationError("sort_by", f"must be one of {', '.join(SORT_KEYS)}")
        backups = list(load_history(self.config.history_path).backups)
        if sort_by == "size":
            backups.sort(key=lambda s: s.total_size, reverse=True)
        elif sort_by == "name":
            backups.sort(key=lambda s: s.description.lower())
        else:
            backups.sort(key=lambda s: s.created, reverse=True)
        if limit is not None:
            backups = backups[:limit]

        statuses = []
        for snapshot in backups:
            compressed = self.archive_path(snapshot.timestamp).is_file()
            statuses.append(SnapshotStatus(
                snapshot=snapshot,
                exists=compressed or self.snapshot_dir(snapshot.timestamp).is_dir(),
                compressed=compressed,
            ))
        return statuses

    def verify(self, snapshot_id: Optional[str] = None) -> Union[VerifyResult, VerifySummary]:
        """
        Recompute size/checksum for every manifest entry against the backup copy.
        With no id, verify every snapshot in history and summarise.
        """
        if snapshot_id is None:
            results = [self.verify(s.timestamp) for s in load_history(self.config.history_path).backups]
            valid = sum(1 for r in results if r.valid)
            return VerifySummary(verified=len(results), valid=valid, invalid=len(results) - valid, results=results)

        with self._opened(snapshot_id) as base:
            if base is None:
                return VerifyResult(
                    snapshot_id=snapshot_id,
                    valid=False,
                    issues=[IntegrityIssue(path=snapshot_id, kind="missing")],
                )
            result = self._verify_dir(snapshot_id, base)
        if not result.valid:
            self.audit.warning(
                "snapshot_invalid", snapshot_id=snapshot_id,
                issues=[issue.message for issue in result.issues],
            )
        return result

    def _verify_dir(self, snapshot_id: str, base: Path) -> VerifyResult:
        try:
            snapshot = self._read_manifest(snapshot_id, base)
        except (SnapshotNotFoundError, IntegrityError) as e:
            return VerifyResult(
                snapshot_id=snapshot_id,
                valid=False,
                issues=[IntegrityIssue(path=MANIFEST_FILENAME, kind="manifest", actual=str(e))],
            )

        issues: List[IntegrityIssue] = []
        file_count = 0
        total_size = 0
        for entry in snapshot.manifest:
            try:
                target = contained_path(base / entry.dest_path, base)
            except IntegrityError:
                issues.append(IntegrityIssue(path=entry.dest_path, kind="manifest", actual="path escapes snapshot"))
                continue
            if not target.exists():
                issues.append(IntegrityIssue(path=entry.dest_path, kind="missing"))
                continue

            size = tree_size(target)
            if size != entry.size:
                issues.append(IntegrityIssue(
                    path=entry.dest_path, kind="size", expected=str(entry.size), actual=str(size),
                ))
            if entry.checksum and self.config.checksums:
                checksum = tree_checksum(target)
                if checksum != entry.checksum:
                    issues.append(IntegrityIssue(
                        path=entry.dest_path, kind="checksum", expected=entry.checksum, actual=checksum,
                    ))
            file_count += 1
            total_size += size

        return VerifyResult(
            snapshot_id=snapshot_id,
            valid=not issues,
            issues=issues,
            file_count=file_count,
            total_size=total_size,
        )

    def restore(self, snapshot_id: str, verify: bool = True) -> RestoreResult:
        """
        Overwrite the live tree from a snapshot. A pre-restore safety snapshot is
        always created before anything live is touched. Runs under the store lock.
        """
        if not self.exists(snapshot_id):
            raise SnapshotNotFoundError(snapshot_id)

        with self.lock.hold("restore"):
            with self._opened(snapshot_id) as base:
                snapshot = self._read_manifest(snapshot_id, base)
                if verify:
                    result = self._verify_dir(snapshot_id, base)
                    if not result.valid:
                        issue = result.issues[0]
                        raise IntegrityError(issue.path, issue.expected or "intact copy", issue.actual or issue.kind)

                safety = self.create(
                    f"Before restoring {snapshot_id}", kind="pre-restore", auto_clean=False,
                )

                restored: List[str] = []
                for entry in snapshot.manifest:
                    target = self._live_target(entry.dest_path)
                    if target is None:
                        self.audit.warning("restore_skipped", snapshot_id=snapshot_id, dest_path=entry.dest_path)
                        continue
                    replace_path(contained_path(base / entry.dest_path, base), target)
                    restored.append(str(target))

        self.audit.info(
            "snapshot_restored", snapshot_id=snapshot_id,
            safety_snapshot_id=safety.timestamp, items=len(restored),
        )
        return RestoreResult(snapshot_id=snapshot_id, safety_snapshot_id=safety.timestamp, restored=restored)

    def _remove_files(self, snapshot_id: str) -> int:
        """Delete a snapshot's directory and/or archive; returns bytes freed."""
        freed = 0
        directory = self.snapshot_dir(snapshot_id)
        archive = self.archive_path(snapshot_id)
        if directory.is_dir():
            freed += tree_size(directory)
            shutil.rmtree(directory)
        if archive.is_file():
            freed += archive.stat().st_size
            archive.unlink()
        return freed

    def clean_old(self, keep_count: Optional[int] = None, keep_days: Optional[int] = None) -> CleanupReport:
        """
        Delete snapshots beyond the keep_count newest, plus any older than keep_days.
        A failure on one candidate is recorded and the rest are still processed.
        """
        keep_count = self.config.keep_count if keep_count is None else keep_count
        keep_days = self.config.keep_days if keep_days is None else keep_days
        if keep_count < 0:
            raise ValidationError("keep_count", "must not be negative")
        if keep_days < 0:
            raise ValidationError("keep_days", "must not be negative")

        ordered = sorted(load_history(self.config.history_path).backups, key=lambda s: s.created, reverse=True)
        cutoff = utcnow() - timedelta(days=keep_days)
        candidates = ordered[keep_count:] + [s for s in ordered[:keep_count] if s.created < cutoff]

        removed: List[str] = []
        failures: List[CleanupFailure] = []
        freed = 0
        for snapshot in candidates:
            try:
                freed += self._remove_files(snapshot.timestamp)
            except OSError as e:
                failures.append(CleanupFailure(snapshot_id=snapshot.timestamp, error=str(e)))
                self.audit.warning("snapshot_cleanup_failed", snapshot_id=snapshot.timestamp, error=str(e))
                continue
            removed.append(snapshot.timestamp)

        if removed:
            history = load_history(self.config.history_path)
            save_history(self.config.history_path, remove_snapshots(history, removed))
            self.audit.info("snapshots_cleaned", removed=removed, space_freed=freed)

        return CleanupReport(
            cleaned=len(removed),
            space_freed=freed,
            kept=len(ordered) - len(removed),
            removed=removed,
            failures=failures,
        )

    def delete(self, snapshot_id: str) -> int:
        """Delete one snapshot and its history entry; returns bytes freed."""
        history = load_history(self.config.history_path)
        if find_snapshot(history, snapshot_id) is None and not self.exists(snapshot_id):
            raise SnapshotNotFoundError(snapshot_id)
        try:
            freed = self._remove_files(snapshot_id)
        except OSError as e:
            raise StorageIOError(self.snapshot_dir(snapshot_id), e) from e
        save_history(self.config.history_path, remove_snapshots(history, [snapshot_id]))
        self.audit.info("snapshot_deleted", snapshot_id=snapshot_id, space_freed=freed)
        return freed

    def _write_archive(self, directory: Path, snapshot_id: str, out_path: Path) -> None:
        """Tar+gzip directory into out_path via a temp file, confirming the archive reads back."""
        fd, tmp_name = tempfile.mkstemp(prefix=f".{out_path.name}.", suffix=TEMP_SUFFIX, dir=out_path.parent)
        os.close(fd)
        tmp_path = Path(tmp_name)
        try:
            with tarfile.open(tmp_path, mode="w:gz") as tar:
                tar.add(directory, arcname=snapshot_id)
            with tarfile.open(tmp_path, mode="r:gz") as tar:
                names = set(tar.getnames())
            if f"{snapshot_id}/{MANIFEST_FILENAME}" not in names:
                raise SnapshotError(f"Archive for {snapshot_id} is missing its manifest.")
            apply_secure_permissions(tmp_path, FILE_MODE)
            os.replace(tmp_path, out_path)
        except (OSError, tarfile.TarError) as e:
            tmp_path.unlink(missing_ok=True)
            raise SnapshotError(f"Failed to archive snapshot {snapshot_id}: {e}") from e
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

    def compress(self, snapshot_id: str) -> Path:
        """Pack a snapshot directory into <id>.tar.gz; the directory is removed only once the archive is in place."""
        directory = self.snapshot_dir(snapshot_id)
        archive = self.archive_path(snapshot_id)
        if not directory.is_dir():
            raise SnapshotNotFoundError(snapshot_id, "No uncompressed snapshot directory.")
        if archive.exists():
            raise SnapshotExistsError(f"Compressed archive for {snapshot_id} already exists.")

        original_size = tree_size(directory)
        self._write_archive(directory, snapshot_id, archive)
        shutil.rmtree(directory)
        self.audit.info(
            "snapshot_compressed", snapshot_id=snapshot_id,
            original_size=original_size, compressed_size=archive.stat().st_size,
        )
        return archive

    def decompress(self, snapshot_id: str) -> Path:
        """Unpack <id>.tar.gz back into a snapshot directory and remove the archive."""
        directory = self.snapshot_dir(snapshot_id)
        archive = self.archive_path(snapshot_id)
        if not archive.is_file():
            raise SnapshotNotFoundError(snapshot_id, "No compressed archive.")
        if directory.exists():
            raise SnapshotExistsError(f"Snapshot directory for {snapshot_id} already exists.")

        staging = Path(tempfile.mkdtemp(prefix=f".{snapshot_id}.", dir=self.config.backups_dir))
        try:
            safe_extract(archive, staging)
            extracted = staging / snapshot_id
            if not (extracted / MANIFEST_FILENAME).is_file():
                raise IntegrityError(archive, f"{snapshot_id}/{MANIFEST_FILENAME}", "missing")
            os.replace(extracted, directory)
        finally:
            remove_path(staging)

        archive.unlink()
        self.audit.info("snapshot_decompressed", snapshot_id=snapshot_id)
        return directory

    def export(self, snapshot_id: str, dest_dir: Path) -> Path:
        """Write a portable .tar.gz of a snapshot into dest_dir."""
        if not self.exists(snapshot_id):
            raise SnapshotNotFoundError(snapshot_id)
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        out_path = dest_dir / f"provkeep-backup-{snapshot_id}{ARCHIVE_SUFFIX}"

        archive = self.archive_path(snapshot_id)
        if archive.is_file():
            try:
                shutil.copy2(archive, out_path)
            except OSError as e:
                raise StorageIOError(out_path, e) from e
        else:
            self._write_archive(self.snapshot_dir(snapshot_id), snapshot_id, out_path)
        self.audit.info("snapshot_exported", snapshot_id=snapshot_id, path=str(out_path))
        return out_path
