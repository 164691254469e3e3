"""
Provider Store: CRUD over provider records and the default-provider pointer.

Mutating operations run under the LockCoordinator; reads never lock and rely on
write_atomic so they only ever see complete files.
"""
import hashlib
import re
import secrets
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .audit import AuditLogger
from .codec import decode_record, encode_record, load_model, read_safe, save_model, write_atomic
from .config import FILE_MODE, StoreConfig
from .crypto import SecretCipher, is_encrypted
from .errors import (
    CapacityError,
    CipherError,
    ConflictError,
    CorruptDataError,
    DuplicateAliasError,
    NotFoundError,
    ProviderNotFoundError,
    StorageIOError,
    ValidationError,
)
from .lock import LockCoordinator
from .models import (
    RECORD_VERSION,
    ImportReport,
    ImportResult,
    ProviderRecord,
    RootDescriptor,
    SkippedRecord,
)
from .utils import utcnow
from .validator import validate_provider

# Lookups accept anything that is a safe file stem, so legacy records stay reachable.
SAFE_ALIAS = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

EDITABLE_FIELDS = {"baseURL", "apiKey", "timeout", "description", "enabled"}
REDACTED = "[REDACTED]"


def make_record_id(alias: str, created: datetime) -> str:
    seed = f"{alias}:{created.isoformat()}:{secrets.token_hex(8)}"
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()[:16]


class ProviderStore:
    def __init__(
        self,
        config: StoreConfig,
        cipher: Optional[SecretCipher] = None,
        lock: Optional[LockCoordinator] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.config = config
        config.ensure_layout()
        self.audit = audit or AuditLogger(config)
        self.cipher = cipher or SecretCipher()
        self.lock = lock or LockCoordinator(config, self.audit)
        # Populated by list(): files that could not be read and were left out.
        self.last_skipped: List[SkippedRecord] = []
        # Non-fatal validator findings from the most recent add/update.
        self.last_warnings: List[str] = []

    # -- paths and raw I/O -------------------------------------------------

    def _path(self, alias: str) -> Path:
        if not isinstance(alias, str) or not SAFE_ALIAS.fullmatch(alias):
            raise ValidationError("alias", f"'{alias}' is not a valid provider alias")
        return self.config.provider_path(alias)

    def _load(self, alias: str) -> ProviderRecord:
        """The record as stored (secret still encrypted)."""
        path = self._path(alias)
        data = read_safe(path)
        if data is None:
            raise ProviderNotFoundError(alias)
        return decode_record(data, path)

    def _save(self, record: ProviderRecord) -> None:
        write_atomic(self.config.provider_path(record.alias), encode_record(record), FILE_MODE)

    def _decrypted(self, record: ProviderRecord) -> ProviderRecord:
        return record.model_copy(update={"api_key": self.cipher.decrypt(record.api_key)})

    def _read_descriptor(self) -> RootDescriptor:
        return load_model(self.config.descriptor_path, RootDescriptor, RootDescriptor())

    def _write_descriptor(self, descriptor: RootDescriptor) -> None:
        now = utcnow()
        descriptor = descriptor.model_copy(update={
            "created": descriptor.created or now,
            "last_updated": now,
        })
        save_model(self.config.descriptor_path, descriptor, FILE_MODE)

    def _record_files(self) -> List[Path]:
        if not self.config.providers_dir.is_dir():
            return []
        return sorted(
            p for p in self.config.providers_dir.glob("*.json")
            if p.is_file() and not p.name.startswith(".")
        )

    # -- queries -----------------------------------------------------------

    def exists(self, alias: str) -> bool:
        return self._path(alias).is_file()

    def count(self) -> int:
        return len(self._record_files())

    def get(self, alias: str) -> ProviderRecord:
        """Return the decrypted record for alias."""
        return self._decrypted(self._load(alias))

    def list(self) -> List[ProviderRecord]:
        """All readable records sorted by alias; unreadable files are skipped and logged."""
        records: List[ProviderRecord] = []
        skipped: List[SkippedRecord] = []
        for path in self._record_files():
            try:
                data = read_safe(path)
                if data is None:
                    continue
                record = decode_record(data, path)
                if record.alias != path.stem:
                    raise CorruptDataError(path, ValueError(f"alias '{record.alias}' does not match file name"))
                records.append(self._decrypted(record))
            except (StorageIOError, CipherError) as e:
                skipped.append(SkippedRecord(path=str(path), reason=str(e)))
                self.audit.warning("provider_skipped", path=str(path), reason=str(e))
        self.last_skipped = skipped
        records.sort(key=lambda r: r.alias)
        return records

    def descriptor(self) -> RootDescriptor:
        return self._read_descriptor()

    def get_default(self) -> Optional[str]:
        """The default alias, or None. A pointer left dangling by an interrupted remove reads as None."""
        alias = self._read_descriptor().default_provider
        if alias is None:
            return None
        if not SAFE_ALIAS.fullmatch(alias) or not self.config.provider_path(alias).is_file():
            self.audit.warning("default_dangling", alias=alias)
            return None
        return alias

    def stats(self) -> Dict[str, Any]:
        records = self.list()
        return {
            "total": len(records),
            "enabled": sum(1 for r in records if r.enabled),
            "disabled": sum(1 for r in records if not r.enabled),
            "skipped": len(self.last_skipped),
            "default": self.get_default(),
            "aliases": [r.alias for r in records],
        }

    # -- mutations ---------------------------------------------------------

    def add(self, fields: Mapping[str, Any]) -> ProviderRecord:
        """Validate, encrypt and persist a new provider; returns it decrypted."""
        with self.lock.hold("add"):
            return self._add(dict(fields))

    def _add(self, fields: Dict[str, Any]) -> ProviderRecord:
        if fields.get("apiKey") == REDACTED:
            raise ValidationError("apiKey", "is redacted; supply the real key")
        warnings = validate_provider(fields, allow_http=self.config.allow_http)
        alias = fields["alias"]
        if self.exists(alias):
            raise DuplicateAliasError(f"Provider '{alias}' already exists.")
        if self.count() >= self.config.max_providers:
            raise CapacityError(f"Store already holds the maximum of {self.config.max_providers} providers.")

        now = utcnow()
        record = ProviderRecord(
            alias=alias,
            base_url=fields["baseURL"],
            api_key=self.cipher.encrypt(fields["apiKey"]),
            timeout=fields.get("timeout"),
            description=fields.get("description"),
            enabled=fields.get("enabled", True),
            created=now,
            last_updated=now,
            version=RECORD_VERSION,
            id=make_record_id(alias, now),
        )
        self._save(record)

        self.last_warnings = warnings
        self.audit.info("provider_added", alias=alias, base_url=record.base_url)
        for warning in warnings:
            self.audit.warning("provider_weak_secret", alias=alias, detail=warning)
        return self._decrypted(record)

    def update(self, alias: str, patch: Mapping[str, Any]) -> ProviderRecord:
        """Apply patch to an existing provider; created/id are preserved, lastUpdated bumped."""
        with self.lock.hold("update"):
            return self._update(alias, dict(patch))

    def _update(self, alias: str, patch: Dict[str, Any]) -> ProviderRecord:
        if patch.get("alias", alias) != alias:
            raise ValidationError("alias", "cannot be changed; remove the provider and add it again")
        patch.pop("alias", None)
        for key in patch:
            if key not in EDITABLE_FIELDS:
                raise ValidationError(key, "is not an editable field")
        if patch.get("apiKey") == REDACTED:
            raise ValidationError("apiKey", "is redacted; supply the real key")

        current = self._load(alias)
        merged = current.to_fields()
        # The stored key is decrypted only when the patch keeps it.
        secret_changed = "apiKey" in patch
        if not secret_changed:
            merged["apiKey"] = self.cipher.decrypt(current.api_key)
        merged.update(patch)
        warnings = validate_provider(merged, allow_http=self.config.allow_http)

        if secret_changed or not is_encrypted(current.api_key):
            stored_secret = self.cipher.encrypt(merged["apiKey"])
        else:
            stored_secret = current.api_key

        now = utcnow()
        updated = current.model_copy(update={
            "base_url": merged["baseURL"],
            "api_key": stored_secret,
            "timeout": merged.get("timeout"),
            "description": merged.get("description"),
            "enabled": merged.get("enabled", True),
            "created": current.created or now,
            "last_updated": now,
            "version": RECORD_VERSION,
            "id": current.id or make_record_id(alias, now),
        })
        self._save(updated)

        self.last_warnings = warnings
        self.audit.info("provider_updated", alias=alias, fields=sorted(patch), secret_changed=secret_changed)
        return self._decrypted(updated)

    def set_enabled(self, alias: str, enabled: bool) -> ProviderRecord:
        return self.update(alias, {"enabled": enabled})

    def remove(self, alias: str) -> None:
        """Delete a provider, clearing the default pointer if it named this alias."""
        with self.lock.hold("remove"):
            path = self._path(alias)
            try:
                path.unlink()
            except FileNotFoundError:
                raise ProviderNotFoundError(alias) from None
            except OSError as e:
                raise StorageIOError(path, e) from e

            descriptor = self._read_descriptor()
            cleared = descriptor.default_provider == alias
            if cleared:
                self._write_descriptor(descriptor.model_copy(update={"default_provider": None}))
            self.audit.info("provider_removed", alias=alias, default_cleared=cleared)

    def set_default(self, alias: str) -> ProviderRecord:
        """Point the default at alias and stamp the record's lastUsed."""
        with self.lock.hold("use"):
            record = self._load(alias)
            descriptor = self._read_descriptor()
            self._write_descriptor(descriptor.model_copy(update={"default_provider": alias}))

            record = record.model_copy(update={"last_used": utcnow()})
            self._save(record)
            self.audit.info("provider_default_set", alias=alias)
            return self._decrypted(record)

    # -- bulk --------------------------------------------------------------

    def export(self, redact: bool = True) -> Dict[str, Any]:
        """Plain-JSON export of every readable record; secrets are redacted unless asked otherwise."""
        providers: Dict[str, Any] = {}
        for record in self.list():
            data = record.model_dump(mode="json", by_alias=True)
            if redact:
                data["apiKey"] = REDACTED
            providers[record.alias] = data
        self.audit.info("providers_exported", count=len(providers), redacted=redact)
        return {
            "version": RECORD_VERSION,
            "exportDate": utcnow().isoformat(),
            "count": len(providers),
            "defaultProvider": self.get_default(),
            "providers": providers,
        }

    def import_records(
        self,
        payload: Union[Mapping[str, Any], Iterable[Mapping[str, Any]]],
        overwrite: bool = False,
    ) -> ImportReport:
        """
        Import records from an export() payload or a list of field mappings.
        Each record succeeds or fails on its own; the whole batch runs under one lock.
        """
        if isinstance(payload, Mapping):
            providers = payload.get("providers", {})
            if isinstance(providers, Mapping):
                entries = list(providers.values())
            elif isinstance(providers, list):
                entries = providers
            else:
                raise ValidationError("providers", "must be an object keyed by alias or a list of providers")
        else:
            entries = list(payload)

        results: List[ImportResult] = []
        with self.lock.hold("import"):
            for entry in entries:
                if not isinstance(entry, Mapping):
                    results.append(ImportResult(alias="", success=False, error=f"Expected a provider object, got {type(entry).__name__}"))
                    continue
                fields = {
                    k: entry[k] for k in ("alias", "baseURL", "apiKey", "timeout", "description", "enabled")
                    if k in entry
                }
                alias = str(fields.get("alias", ""))
                try:
                    if overwrite and alias and SAFE_ALIAS.fullmatch(alias) and self.exists(alias):
                        self._update(alias, {k: v for k, v in fields.items() if k != "alias"})
                    else:
                        self._add(fields)
                    results.append(ImportResult(alias=alias, success=True))
                except (ValidationError, ConflictError, NotFoundError, CipherError, CorruptDataError) as e:
                    results.append(ImportResult(alias=alias, success=False, error=str(e)))

        report = ImportReport(results=results)
        self.audit.info("providers_imported", successful=report.successful, failed=report.failed)
        return report
