"""
Pydantic v2 data models for provkeep.
Field names are snake_case; the on-disk JSON keys are their aliases.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

RECORD_VERSION = "2.0.0"
LEGACY_RECORD_VERSION = "1.0.0"
DESCRIPTOR_VERSION = "1.0.0"
HISTORY_VERSION = "1.0.0"


class FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

class ProviderRecord(FrozenModel):
    """One configured provider profile as it lives on disk (or decrypted, when returned by the store)."""
    alias: str
    base_url: str = Field(..., alias="baseURL")
    api_key: str = Field(..., alias="apiKey")
    timeout: Optional[int] = None
    description: Optional[str] = None
    enabled: bool = True
    # Legacy records predate the timestamp/id stamping.
    created: Optional[datetime] = None
    last_updated: Optional[datetime] = Field(None, alias="lastUpdated")
    last_used: Optional[datetime] = Field(None, alias="lastUsed")
    version: str = LEGACY_RECORD_VERSION
    id: Optional[str] = None

    def to_fields(self) -> dict:
        """The user-editable fields, keyed the way the validator expects them."""
        fields = {
            "alias": self.alias,
            "baseURL": self.base_url,
            "apiKey": self.api_key,
            "enabled": self.enabled,
        }
        if self.timeout is not None:
            fields["timeout"] = self.timeout
        if self.description is not None:
            fields["description"] = self.description
        return fields

class RootDescriptor(FrozenModel):
    version: str = DESCRIPTOR_VERSION
    default_provider: Optional[str] = Field(None, alias="defaultProvider")
    created: Optional[datetime] = None
    last_updated: Optional[datetime] = Field(None, alias="lastUpdated")

class LockToken(FrozenModel):
    operation: str
    owner: str
    created: datetime

class SkippedRecord(FrozenModel):
    path: str
    reason: str

class HostMetadata(FrozenModel):
    hostname: str
    platform: str
    python: str
    user: str

class ManifestEntry(FrozenModel):
    source_path: str = Field(..., alias="sourcePath")
    dest_path: str = Field(..., alias="destPath")
    size: int
    checksum: Optional[str] = None

SnapshotKind = Literal["manual", "auto", "pre-restore"]

class Snapshot(FrozenModel):
    timestamp: str
    description: str
    kind: SnapshotKind = "manual"
    created: datetime
    total_size: int = Field(0, alias="totalSize")
    manifest: List[ManifestEntry] = Field(default_factory=list)
    host: Optional[HostMetadata] = None
    version: str = HISTORY_VERSION

class History(FrozenModel):
    version: str = HISTORY_VERSION
    created: Optional[datetime] = None
    last_backup: Optional[str] = Field(None, alias="lastBackup")
    total_backups: int = Field(0, alias="totalBackups")
    backups: List[Snapshot] = Field(default_factory=list)

class SnapshotStatus(FrozenModel):
    snapshot: Snapshot
    exists: bool
    compressed: bool

class IntegrityIssue(FrozenModel):
    path: str
    kind: Literal["missing", "size", "checksum", "manifest"]
    expected: Optional[str] = None
    actual: Optional[str] = None

    @property
    def message(self) -> str:
        if self.kind == "missing":
            return f"File missing: {self.path}"
        if self.kind == "manifest":
            return f"Manifest unreadable: {self.actual or self.path}"
        return f"{self.kind.capitalize()} mismatch: {self.path} (expected {self.expected}, got {self.actual})"

class VerifyResult(FrozenModel):
    snapshot_id: str
    valid: bool
    issues: List[IntegrityIssue] = Field(default_factory=list)
    file_count: int = 0
    total_size: int = 0

class VerifySummary(FrozenModel):
    verified: int
    valid: int
    invalid: int
    results: List[VerifyResult] = Field(default_factory=list)

class RestoreResult(FrozenModel):
    snapshot_id: str
    safety_snapshot_id: str
    restored: List[str] = Field(default_factory=list)

class CleanupFailure(FrozenModel):
    snapshot_id: str
    error: str

class CleanupReport(FrozenModel):
    cleaned: int = 0
    space_freed: int = 0
    kept: int = 0
    removed: List[str] = Field(default_factory=list)
    failures: List[CleanupFailure] = Field(default_factory=list)

class ImportResult(FrozenModel):
    alias: str
    success: bool
    error: Optional[str] = None

class ImportReport(FrozenModel):
    results: List[ImportResult] = Field(default_factory=list)

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

class DoctorCheck(FrozenModel):
    name: str
    status: Literal["pass", "warn", "fail"]
    detail: str
