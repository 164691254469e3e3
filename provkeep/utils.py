"""
Core utilities for provkeep.
"""
import getpass
import hashlib
import os
import shutil
import tempfile
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, List, Union

from .errors import IntegrityError

SIZE_UNITS = ("B", "KiB", "MiB", "GiB", "TiB")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def current_user() -> str:
    """OS login name, falling back to the numeric uid when none can be resolved."""
    try:
        return getpass.getuser()
    except (KeyError, OSError, ImportError):
        # bare containers often have no passwd entry for the running uid
        return str(os.getuid()) if hasattr(os, "getuid") else "unknown"

def mask_key(api_key: str) -> str:
    """
    Display form of an API key: the vendor prefix (``sk-``, ``gsk_``...) and the
    last four characters. Keys shorter than 12 characters are fully hidden.
    """
    if not api_key or len(api_key) < 12:
        return "****"
    head = ""
    for sep in ("-", "_"):
        if sep in api_key[:5]:
            head = api_key[: api_key.index(sep) + 1]
            break
    return f"{head}...{api_key[-4:]}"

def _shred(path: Path) -> None:
    size = path.stat().st_size
    try:
        with path.open("r+b") as f:
            f.write(os.urandom(size))
            f.flush()
            os.fsync(f.fileno())
    finally:
        path.unlink(missing_ok=True)

@contextmanager
def private_workdir(prefix: str = "provkeep_") -> Generator[Path, None, None]:
    """
    Owner-only scratch directory for unpacked snapshots. Files left inside are
    overwritten before the tree is removed.
    """
    workdir = Path(tempfile.mkdtemp(prefix=prefix))
    if os.name == "posix":
        workdir.chmod(0o700)
    try:
        yield workdir
    finally:
        for leftover in workdir.rglob("*"):
            if leftover.is_file() and not leftover.is_symlink():
                try:
                    _shred(leftover)
                except OSError:
                    pass
        shutil.rmtree(workdir, ignore_errors=True)

def contained_path(path: Union[str, Path], base_dir: Union[str, Path]) -> Path:
    """Resolve path and raise IntegrityError unless it stays inside base_dir."""
    base = Path(base_dir).resolve()
    target = Path(path).resolve()
    if target != base and base not in target.parents:
        raise IntegrityError(str(path), f"a path inside {base_dir}", str(target))
    return target

def sha256_file(path: Path) -> str:
    """Stream a file and return its SHA-256 hex digest."""
    hasher = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            hasher.update(chunk)
    return hasher.hexdigest()

def list_files(dir_path: Path) -> List[Path]:
    """Every regular file under dir_path, sorted by relative POSIX path."""
    files = [p for p in dir_path.rglob("*") if p.is_file()]
    files.sort(key=lambda p: p.relative_to(dir_path).as_posix())
    return files

def tree_checksum(path: Path) -> str:
    """
    SHA-256 over a file's bytes, or for a directory over each contained file's
    relative path followed by its bytes, in sorted order.
    """
    if path.is_file():
        return sha256_file(path)

    hasher = hashlib.sha256()
    for file_path in list_files(path):
        hasher.update(file_path.relative_to(path).as_posix().encode("utf-8"))
        with file_path.open("rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                hasher.update(chunk)
    return hasher.hexdigest()

def tree_size(path: Path) -> int:
    """Total size in bytes of a file or of every file under a directory."""
    if path.is_file():
        return path.stat().st_size
    return sum(p.stat().st_size for p in list_files(path))

def remove_path(path: Path) -> None:
    """Remove a file or a directory tree; missing paths are ignored."""
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink(missing_ok=True)

def human_size(nbytes: int) -> str:
    """Binary-unit size for tables, e.g. ``512 B`` or ``3.4 MiB``."""
    value = float(nbytes)
    for unit in SIZE_UNITS:
        if value < 1024 or unit == SIZE_UNITS[-1]:
            break
        value /= 1024
    return f"{nbytes} B" if unit == "B" else f"{value:.1f} {unit}"

def timestamp_id(moment: datetime) -> str:
    """Snapshot directory name for a moment: ``YYYYMMDD_HHMMSS``."""
    return moment.strftime("%Y%m%d_%H%M%S")
