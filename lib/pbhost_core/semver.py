from __future__ import annotations

import re

_SEMVER_RE = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)$")


def parse_semver(text: str) -> tuple[int, int, int] | None:
    m = _SEMVER_RE.match((text or "").strip())
    if not m:
        return None
    return int(m.group(1)), int(m.group(2)), int(m.group(3))


def same_version(left: str | None, right: str | None) -> bool:
    a = parse_semver(left or "")
    b = parse_semver(right or "")
    return a is not None and a == b
