import pytest

from provkeep.errors import ValidationError
from provkeep.validator import is_local_host, validate_alias, validate_provider


def test_valid_provider_has_no_warnings(fields):
    assert validate_provider(fields(timeout=30000, description="Main account")) == []

@pytest.mark.parametrize("alias", ["a", "openrouter", "my-provider_2", "A" * 32])
def test_alias_accepted(alias: str):
    assert validate_alias(alias) == alias

@pytest.mark.parametrize("alias", ["", "1abc", "-abc", "has space", "a" * 33, "dot.name", "abc\n", "ünïcode"])
def test_alias_rejected(alias: str):
    with pytest.raises(ValidationError) as exc:
        validate_alias(alias)
    assert exc.value.field == "alias"

@pytest.mark.parametrize("alias", ["list", "Add", "DOCTOR", "current"])
def test_reserved_alias(alias: str):
    with pytest.raises(ValidationError, match="reserved"):
        validate_alias(alias)

@pytest.mark.parametrize("url", [
    "https://api.example.com/v1",
    "http://localhost:11434",
    "http://127.0.0.1:8080/v1",
    "http://10.1.2.3",
    "http://172.20.0.5",
    "http://192.168.1.10:1234",
])
def test_base_url_accepted(url: str, fields):
    validate_provider(fields(baseURL=url))

@pytest.mark.parametrize("url", [
    "http://api.example.com",
    "http://172.32.0.1",
    "ftp://example.com",
    "not a url",
    "https://",
    "https://example.com:notaport",
])
def test_base_url_rejected(url: str, fields):
    with pytest.raises(ValidationError) as exc:
        validate_provider(fields(baseURL=url))
    assert exc.value.field == "baseURL"

def test_allow_http_override(fields):
    validate_provider(fields(baseURL="http://api.example.com"), allow_http=True)

def test_local_hosts():
    assert is_local_host("LOCALHOST")
    assert is_local_host("::1")
    assert not is_local_host("8.8.8.8")
    assert not is_local_host("example.com")

@pytest.mark.parametrize("secret", ["short", "x" * 513, "sk-has space-inside", "sk-tab\tinside1"])
def test_secret_rejected(secret: str, fields):
    with pytest.raises(ValidationError) as exc:
        validate_provider(fields(apiKey=secret))
    assert exc.value.field == "apiKey"

def test_secret_bounds_inclusive(fields):
    validate_provider(fields(apiKey="x" * 10))
    validate_provider(fields(apiKey="x" * 512))

def test_weak_secret_only_warns(fields):
    warnings = validate_provider(fields(apiKey="sk-test-0000000"))
    assert len(warnings) == 1
    assert "test" in warnings[0]

@pytest.mark.parametrize("timeout", [999, 300001, "30000", 1.5, True])
def test_timeout_rejected(timeout, fields):
    with pytest.raises(ValidationError) as exc:
        validate_provider(fields(timeout=timeout))
    assert exc.value.field == "timeout"

def test_timeout_bounds_inclusive(fields):
    validate_provider(fields(timeout=1000))
    validate_provider(fields(timeout=300000))

def test_missing_required_field(fields):
    data = fields()
    del data["apiKey"]
    with pytest.raises(ValidationError) as exc:
        validate_provider(data)
    assert exc.value.field == "apiKey"

def test_first_violation_wins(fields):
    data = fields(alias="9bad", baseURL="ftp://x", apiKey="short", timeout=1)
    with pytest.raises(ValidationError) as exc:
        validate_provider(data)
    assert exc.value.field == "alias"

    data["alias"] = "good"
    with pytest.raises(ValidationError) as exc:
        validate_provider(data)
    assert exc.value.field == "baseURL"

def test_optional_fields_type_checked(fields):
    with pytest.raises(ValidationError):
        validate_provider(fields(enabled="yes"))
    with pytest.raises(ValidationError):
        validate_provider(fields(description="x" * 501))
