"""
Custom exception hierarchy for provkeep.
Every failure the core raises is one of these, so callers can branch on category.
"""
from datetime import datetime
from pathlib import Path
from typing import Optional, Union


class ProvKeepError(Exception):
    """Base exception for all provkeep errors."""
    pass

class ValidationError(ProvKeepError):
    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")

class NotFoundError(ProvKeepError):
    pass

class ProviderNotFoundError(NotFoundError):
    def __init__(self, alias: str):
        self.alias = alias
        super().__init__(f"Provider '{alias}' does not exist.")

class SnapshotNotFoundError(NotFoundError):
    def __init__(self, snapshot_id: str, detail: str = ""):
        self.snapshot_id = snapshot_id
        message = f"Snapshot '{snapshot_id}' does not exist."
        if detail:
            message = f"{message} {detail}"
        super().__init__(message)

class ConflictError(ProvKeepError):
    def __init__(self, reason: str, held_by: Optional[str] = None, since: Optional[datetime] = None):
        self.reason = reason
        self.held_by = held_by
        self.since = since
        super().__init__(reason)

class DuplicateAliasError(ConflictError):
    pass

class CapacityError(ConflictError):
    pass

class LockConflictError(ConflictError):
    pass

class SnapshotExistsError(ConflictError):
    pass

class IntegrityError(ProvKeepError):
    def __init__(self, path: Union[str, Path], expected: object, actual: object):
        self.path = str(path)
        self.expected = expected
        self.actual = actual
        super().__init__(f"Integrity check failed for {self.path}: expected {expected}, got {actual}")

class StorageIOError(ProvKeepError):
    def __init__(self, path: Union[str, Path], cause: BaseException):
        self.path = str(path)
        self.cause = cause
        super().__init__(f"I/O failure on {self.path}: {cause}")

class CorruptDataError(StorageIOError):
    pass

class CipherError(ProvKeepError):
    pass

class EncryptionError(CipherError):
    pass

class MalformedCiphertextError(CipherError):
    pass

class DecryptionError(CipherError):
    pass

class SnapshotError(ProvKeepError):
    pass
