"""
Durable byte I/O for provkeep.
All writes go through write_atomic: temp file in the target's directory, then os.replace.
"""
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .config import FILE_MODE, apply_secure_permissions
from .errors import CorruptDataError, StorageIOError
from .models import ProviderRecord

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

TEMP_SUFFIX = ".tmp"


def write_atomic(path: Path, data: bytes, mode: int = FILE_MODE) -> None:
    """
    Replace path with data so that readers only ever see the old or the new content.
    The temp file shares the target's directory; os.replace is atomic within one filesystem.
    """
    path = Path(path)
    try:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=TEMP_SUFFIX, dir=path.parent)
    except OSError as e:
        raise StorageIOError(path, e) from e
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        apply_secure_permissions(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException as e:
        tmp_path.unlink(missing_ok=True)
        if isinstance(e, OSError):
            raise StorageIOError(path, e) from e
        raise

def read_safe(path: Path, default: Optional[T] = None) -> Any:
    """Return the bytes at path, or default when it does not exist. Other failures raise StorageIOError."""
    try:
        return Path(path).read_bytes()
    except FileNotFoundError:
        return default
    except OSError as e:
        raise StorageIOError(path, e) from e

def dump_json(obj: Any) -> bytes:
    return (json.dumps(obj, indent=2, ensure_ascii=False) + "\n").encode("utf-8")

def write_json(path: Path, obj: Any, mode: int = FILE_MODE) -> None:
    write_atomic(path, dump_json(obj), mode)

def read_json(path: Path, default: Any = None) -> Any:
    data = read_safe(path)
    if data is None:
        return default
    try:
        return json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CorruptDataError(path, e) from e

def encode_model(model: BaseModel) -> bytes:
    """Serialize a model with its on-disk (aliased) key names."""
    return dump_json(model.model_dump(mode="json", by_alias=True))

def decode_model(data: bytes, model_cls: "type[M]", path: Path) -> M:
    try:
        parsed = json.loads(data.decode("utf-8"))
        return model_cls.model_validate(parsed)
    except (UnicodeDecodeError, json.JSONDecodeError, PydanticValidationError) as e:
        raise CorruptDataError(path, e) from e

def load_model(path: Path, model_cls: "type[M]", default: Optional[M] = None) -> Optional[M]:
    data = read_safe(path)
    if data is None:
        return default
    return decode_model(data, model_cls, path)

def save_model(path: Path, model: BaseModel, mode: int = FILE_MODE) -> None:
    write_atomic(path, encode_model(model), mode)

def encode_record(record: ProviderRecord) -> bytes:
    return encode_model(record)

def decode_record(data: bytes, path: Path) -> ProviderRecord:
    return decode_model(data, ProviderRecord, path)
