"""
Provider record validation.
Pure checks over the raw field mapping: no disk access, no environment lookups.
"""
import ipaddress
import re
from typing import Any, List, Mapping
from urllib.parse import urlsplit

from .errors import ValidationError

ALIAS_MAX_LEN = 32
ALIAS_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_-]{0,%d}$" % (ALIAS_MAX_LEN - 1))

# Names that collide with CLI sub-commands.
RESERVED_ALIASES = frozenset({
    "add", "list", "ls", "show", "get", "edit", "update", "remove", "rm",
    "use", "current", "default", "backup", "restore", "history", "doctor",
    "status", "init", "export", "import", "help", "config", "providers",
})

ALLOWED_SCHEMES = ("http", "https")
PRIVATE_HTTP_NETWORKS = (
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
)

SECRET_MIN_LEN = 10
SECRET_MAX_LEN = 512
WEAK_SECRET_PATTERNS = ("test", "demo", "example", "123456", "password")

TIMEOUT_MIN_MS = 1_000
TIMEOUT_MAX_MS = 300_000

DESCRIPTION_MAX_LEN = 500

REQUIRED_FIELDS = ("alias", "baseURL", "apiKey")


def validate_alias(alias: Any) -> str:
    if not isinstance(alias, str) or not alias:
        raise ValidationError("alias", "is required")
    if len(alias) > ALIAS_MAX_LEN:
        raise ValidationError("alias", f"must be at most {ALIAS_MAX_LEN} characters")
    if not ALIAS_PATTERN.fullmatch(alias):
        raise ValidationError(
            "alias", "must start with a letter and contain only letters, digits, '_' or '-'"
        )
    if alias.lower() in RESERVED_ALIASES:
        raise ValidationError("alias", f"'{alias}' is a reserved name")
    return alias

def is_local_host(host: str) -> bool:
    """Loopback or private-range IPv4 host that may be reached over plain http."""
    host = host.lower()
    if host == "localhost":
        return True
    try:
        addr = ipaddress.ip_address(host)
    except ValueError:
        return False
    if addr.version == 6:
        return addr.is_loopback
    return any(addr in network for network in PRIVATE_HTTP_NETWORKS)

def validate_base_url(url: Any, allow_http: bool = False) -> str:
    if not isinstance(url, str) or not url.strip():
        raise ValidationError("baseURL", "is required")
    try:
        parts = urlsplit(url.strip())
        host = parts.hostname
        # Accessing .port validates the port component.
        parts.port
    except ValueError as e:
        raise ValidationError("baseURL", f"is not a valid URL: {e}") from None

    scheme = parts.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        raise ValidationError("baseURL", f"scheme must be http or https, not '{scheme or 'none'}'")
    if not host:
        raise ValidationError("baseURL", "must include a host")
    if scheme == "http" and not allow_http and not is_local_host(host):
        raise ValidationError(
            "baseURL", "https is required for non-local hosts (set PROVKEEP_ALLOW_HTTP=true to override)"
        )
    return url

def validate_secret(secret: Any) -> List[str]:
    if not isinstance(secret, str) or not secret:
        raise ValidationError("apiKey", "is required")
    if len(secret) < SECRET_MIN_LEN:
        raise ValidationError("apiKey", f"must be at least {SECRET_MIN_LEN} characters")
    if len(secret) > SECRET_MAX_LEN:
        raise ValidationError("apiKey", f"must be at most {SECRET_MAX_LEN} characters")
    if any(ch.isspace() for ch in secret):
        raise ValidationError("apiKey", "must not contain whitespace")

    lowered = secret.lower()
    for pattern in WEAK_SECRET_PATTERNS:
        if pattern in lowered:
            return [f"apiKey contains the weak pattern '{pattern}'"]
    return []

def validate_timeout(timeout: Any) -> None:
    if isinstance(timeout, bool) or not isinstance(timeout, int):
        raise ValidationError("timeout", "must be an integer number of milliseconds")
    if not TIMEOUT_MIN_MS <= timeout <= TIMEOUT_MAX_MS:
        raise ValidationError("timeout", f"must be between {TIMEOUT_MIN_MS} and {TIMEOUT_MAX_MS} ms")

def validate_provider(fields: Mapping[str, Any], allow_http: bool = False) -> List[str]:
    """
    Validate raw provider fields, failing on the first violation.

    Order: required fields, alias, baseURL, apiKey, timeout, then the optional
    description/enabled fields. Returns non-fatal warnings (weak secrets).
    """
    for name in REQUIRED_FIELDS:
        value = fields.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationError(name, "is required")

    validate_alias(fields["alias"])
    validate_base_url(fields["baseURL"], allow_http=allow_http)
    warnings = validate_secret(fields["apiKey"])

    if fields.get("timeout") is not None:
        validate_timeout(fields["timeout"])

    description = fields.get("description")
    if description is not None:
        if not isinstance(description, str):
            raise ValidationError("description", "must be a string")
        if len(description) > DESCRIPTION_MAX_LEN:
            raise ValidationError("description", f"must be at most {DESCRIPTION_MAX_LEN} characters")

    if "enabled" in fields and not isinstance(fields["enabled"], bool):
        raise ValidationError("enabled", "must be true or false")

    return warnings
