"""
Audit logging with structured JSON-Lines.
"""
import json
import sys
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from .config import StoreConfig
from .utils import utcnow

SENSITIVE_KEYS = {"apiKey", "api_key", "secret", "token", "password", "key"}


def _scrub(details: Dict[str, Any]) -> Dict[str, Any]:
    return {k: ("*****" if k in SENSITIVE_KEYS else v) for k, v in details.items()}


class AuditLogger:
    """Writes structured JSONL audit events without sensitive data."""
    def __init__(self, config: StoreConfig):
        self.log_file = config.audit_path

    def log(self, event_type: str, level: str = "info", **kwargs: Any) -> None:
        """Log a structured operation event."""
        entry: Dict[str, Any] = {
            "timestamp": utcnow().isoformat(),
            "level": level,
            "event": event_type,
            "details": _scrub(kwargs),
        }
        line = json.dumps(entry, default=str) + "\n"
        try:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            with self.log_file.open("a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            # The audit trail must never take an operation down with it.
            sys.stderr.write(f"[provkeep audit] failed to write {self.log_file}: {e}\n")
            sys.stderr.write(line)

    def info(self, event_type: str, **kwargs: Any) -> None:
        self.log(event_type, "info", **kwargs)

    def warning(self, event_type: str, **kwargs: Any) -> None:
        self.log(event_type, "warning", **kwargs)

def read_audit_log(config: StoreConfig, last_n: int = 50, level: Optional[str] = None) -> List[Dict[str, Any]]:
    """Retrieve the last N events from the audit log, optionally filtered by level."""
    log_file = config.audit_path
    if not log_file.exists():
        return []

    # Stream the file; only the newest last_n matching events are kept in memory.
    recent: Deque[Dict[str, Any]] = deque(maxlen=max(last_n, 0))
    with log_file.open("r", encoding="utf-8") as f:
        for line in f:
            if not line.strip():
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            if level is None or event.get("level") == level:
                recent.append(event)
    return list(recent)
