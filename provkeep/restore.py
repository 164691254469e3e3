"""
Restore helpers: safe archive extraction and swap-in replacement of live paths.
"""
import os
import secrets
import shutil
import tarfile
from pathlib import Path

from .errors import IntegrityError, StorageIOError
from .utils import contained_path, remove_path


def safe_extract(archive: Path, target_dir: Path) -> None:
    """Unpack a snapshot archive into target_dir; only plain files and directories that stay inside it are accepted."""
    target_dir = Path(target_dir).resolve()
    target_dir.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(archive, mode="r:gz") as tar:
            for member in tar.getmembers():
                dest = contained_path(target_dir / member.name, target_dir)
                if member.isdir():
                    dest.mkdir(parents=True, exist_ok=True)
                elif member.isfile():
                    dest.parent.mkdir(parents=True, exist_ok=True)
                    src = tar.extractfile(member)
                    if src is None:
                        raise IntegrityError(member.name, "readable file member", "unreadable")
                    with src, dest.open("wb") as out:
                        shutil.copyfileobj(src, out)
                    os.chmod(dest, member.mode & 0o777)
                    os.utime(dest, (member.mtime, member.mtime))
                else:
                    raise IntegrityError(member.name, "regular file or directory", "link or special file")
    except tarfile.TarError as e:
        raise IntegrityError(archive, "readable gzip tar archive", str(e)) from e
    except OSError as e:
        raise StorageIOError(archive, e) from e

def copy_item(source: Path, target: Path) -> None:
    if source.is_dir():
        shutil.copytree(source, target, ignore_dangling_symlinks=True)
    else:
        shutil.copy2(source, target)

def replace_path(source: Path, target: Path) -> None:
    """
    Replace target with a copy of source. The copy is staged next to target and
    swapped in with renames, so target is never left half-written.
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    suffix = secrets.token_hex(4)
    staging = target.with_name(f".{target.name}.restore-{suffix}")
    retired = target.with_name(f".{target.name}.old-{suffix}")
    try:
        copy_item(source, staging)
    except OSError as e:
        remove_path(staging)
        raise StorageIOError(target, e) from e

    try:
        had_target = target.exists() or target.is_symlink()
        if had_target:
            os.replace(target, retired)
        os.replace(staging, target)
    except OSError as e:
        remove_path(staging)
        if retired.exists() and not target.exists():
            os.replace(retired, target)
        raise StorageIOError(target, e) from e

    if had_target:
        remove_path(retired)
