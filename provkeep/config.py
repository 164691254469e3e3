"""
Store configuration for provkeep.
A StoreConfig value is passed explicitly to the store, lock and snapshot manager;
nothing below reads a process-wide home directory on its own.
"""
import os
import stat
import sys
from pathlib import Path
from typing import Mapping, Optional

from pydantic import Field

from .errors import ValidationError
from .models import FrozenModel

APP_NAME = "provkeep"

PROVIDERS_DIRNAME = "providers"
BACKUPS_DIRNAME = "backups"
DESCRIPTOR_FILENAME = "config.json"
HISTORY_FILENAME = "history.json"
LOCK_FILENAME = ".provider-lock"
AUDIT_FILENAME = "audit.jsonl"

DIR_MODE = 0o700
FILE_MODE = 0o600

TRUTHY = {"1", "true", "yes", "on"}


def default_root(environ: Optional[Mapping[str, str]] = None) -> Path:
    """Returns the platform-specific store directory, honouring PROVKEEP_HOME."""
    env = os.environ if environ is None else environ
    override = env.get("PROVKEEP_HOME")
    if override:
        return Path(override).expanduser()
    if sys.platform == "win32":
        appdata = env.get("APPDATA")
        if appdata:
            base_dir = Path(appdata)
        else:
            base_dir = Path.home() / "AppData" / "Roaming"
    else:
        # XDG Base Directory specification
        xdg_config = env.get("XDG_CONFIG_HOME")
        if xdg_config:
            base_dir = Path(xdg_config)
        else:
            base_dir = Path.home() / ".config"
    return base_dir / APP_NAME

def apply_secure_permissions(path: Path, mode: int = FILE_MODE) -> None:
    """Apply chmod 600 (or the given mode) to a path; a no-op on Windows."""
    if sys.platform != "win32":
        path.chmod(mode)

def is_owner_only(path: Path) -> bool:
    """True when no group/other permission bits are set on path."""
    if sys.platform == "win32":
        return True
    mode = path.stat().st_mode
    return not mode & (stat.S_IRWXG | stat.S_IRWXO)


class StoreConfig(FrozenModel):
    root: Path
    # Externally-owned settings tree included in snapshots.
    settings_dir: Optional[Path] = None
    max_providers: int = Field(50, ge=1)
    lock_stale_seconds: float = Field(120.0, gt=0)
    keep_count: int = Field(20, ge=1)
    keep_days: int = Field(90, ge=1)
    allow_http: bool = False
    checksums: bool = True

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "StoreConfig":
        """Build a config from PROVKEEP_* environment variables; keyword overrides win."""
        env = os.environ if environ is None else environ
        values = {
            "root": default_root(env),
            "settings_dir": Path(env["PROVKEEP_SETTINGS_DIR"]).expanduser()
            if env.get("PROVKEEP_SETTINGS_DIR")
            else Path.home() / ".claude",
            "allow_http": env.get("PROVKEEP_ALLOW_HTTP", "").strip().lower() in TRUTHY,
        }
        raw_max = env.get("PROVKEEP_MAX_PROVIDERS", "").strip()
        if raw_max:
            if not raw_max.isdigit() or int(raw_max) < 1:
                raise ValidationError("PROVKEEP_MAX_PROVIDERS", f"must be a positive integer, got '{raw_max}'")
            values["max_providers"] = int(raw_max)
        values.update(overrides)
        return cls(**values)

    @property
    def providers_dir(self) -> Path:
        return self.root / PROVIDERS_DIRNAME

    @property
    def backups_dir(self) -> Path:
        return self.root / BACKUPS_DIRNAME

    @property
    def descriptor_path(self) -> Path:
        return self.root / DESCRIPTOR_FILENAME

    @property
    def history_path(self) -> Path:
        return self.root / HISTORY_FILENAME

    @property
    def lock_path(self) -> Path:
        return self.root / LOCK_FILENAME

    @property
    def audit_path(self) -> Path:
        return self.root / AUDIT_FILENAME

    def provider_path(self, alias: str) -> Path:
        return self.providers_dir / f"{alias}.json"

    def ensure_layout(self) -> None:
        """Create the store directories with owner-only permissions."""
        for directory in (self.root, self.providers_dir, self.backups_dir):
            directory.mkdir(parents=True, exist_ok=True)
            apply_secure_permissions(directory, DIR_MODE)
