import pytest

from pbhost_core.errors import ValidationError
from pbhost_core.validators import (
    parse_yes_no,
    validate_domain,
    validate_email,
    validate_numeric,
    validate_password,
    validate_port,
    validate_rate_limit,
    validate_subdomain,
    validate_yes_no,
)


@pytest.mark.parametrize("port", ["1", "80", "8090", "65535"])
def test_valid_ports(port) -> None:
    assert validate_port(port)


@pytest.mark.parametrize("port", ["0", "65536", "-1", "80a", "", " 80"])
def test_invalid_ports(port) -> None:
    assert not validate_port(port)


@pytest.mark.parametrize("domain", ["example.com", "my-site.example.org", "ab.io", "Example.COM"])
def test_valid_domains(domain) -> None:
    assert validate_domain(domain)


@pytest.mark.parametrize(
    "domain",
    ["bad_domain", "a.b", "example", "-example.com", "example-.com", "example.c0m", "exa mple.com", ""],
)
def test_invalid_domains(domain) -> None:
    assert not validate_domain(domain)


def test_domain_label_length_limit() -> None:
    assert validate_domain(f"{'a' * 63}.com")
    assert not validate_domain(f"{'a' * 64}.com")


def test_subdomain_allows_blank() -> None:
    assert validate_subdomain("")
    assert validate_subdomain("www")
    assert not validate_subdomain("www.api")
    assert not validate_subdomain("bad_sub")


def test_yes_no_is_case_insensitive() -> None:
    for value in ("y", "Y", "yes", "YES", "n", "No"):
        assert validate_yes_no(value)
    assert not validate_yes_no("maybe")
    assert parse_yes_no("YeS") is True
    assert parse_yes_no("n") is False


def test_parse_yes_no_rejects_garbage() -> None:
    with pytest.raises(ValidationError):
        parse_yes_no("sure")


def test_numeric_and_rate_limit() -> None:
    assert validate_numeric("0")
    assert validate_numeric("20")
    assert not validate_numeric("-3")
    assert not validate_numeric("2.5")
    assert validate_rate_limit("10r/s")
    assert not validate_rate_limit("10r/m")
    assert not validate_rate_limit("r/s")
    assert not validate_rate_limit("10 r/s")


def test_email_and_password() -> None:
    assert validate_email("admin@example.com")
    assert not validate_email("admin@example")
    assert not validate_email("admin example.com")
    assert validate_password("12345678")
    assert not validate_password("1234567")
