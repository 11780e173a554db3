from __future__ import annotations

import re

from .errors import ValidationError

_LABEL = r"[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])"
_DOMAIN_RE = re.compile(rf"^(?:{_LABEL}\.)+[A-Za-z]{{2,}}$")
_SUBDOMAIN_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?$")
_DIGITS_RE = re.compile(r"^[0-9]+$")
_RATE_LIMIT_RE = re.compile(r"^[0-9]+r/s$")
_EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")

YES_VALUES = frozenset({"y", "yes"})
NO_VALUES = frozenset({"n", "no"})

MIN_PASSWORD_LENGTH = 8


def validate_domain(raw: str) -> bool:
    value = raw or ""
    if len(value) > 253:
        return False
    return bool(_DOMAIN_RE.match(value))


def validate_subdomain(raw: str) -> bool:
    value = raw or ""
    if not value:
        return True
    return bool(_SUBDOMAIN_RE.match(value))


def validate_port(raw: str) -> bool:
    value = str(raw if raw is not None else "")
    if not _DIGITS_RE.match(value):
        return False
    return 1 <= int(value) <= 65535


def validate_yes_no(raw: str) -> bool:
    value = (raw or "").lower()
    return value in YES_VALUES or value in NO_VALUES


def validate_numeric(raw: str) -> bool:
    return bool(_DIGITS_RE.match(str(raw if raw is not None else "")))


def validate_rate_limit(raw: str) -> bool:
    return bool(_RATE_LIMIT_RE.match(raw or ""))


def validate_email(raw: str) -> bool:
    return bool(_EMAIL_RE.match(raw or ""))


def validate_password(raw: str) -> bool:
    return len(raw or "") >= MIN_PASSWORD_LENGTH


def parse_yes_no(raw: str) -> bool:
    if not validate_yes_no(raw):
        raise ValidationError("Please answer 'y' or 'n'.")
    return raw.lower() in YES_VALUES
