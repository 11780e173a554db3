from __future__ import annotations

import hashlib
import logging
import os
import platform as platform_mod
import re
import zipfile
from dataclasses import dataclass
from pathlib import Path

import httpx

from .errors import ReleaseError
from .runner import CommandRunner
from .semver import parse_semver

logger = logging.getLogger(__name__)

DEFAULT_REPO = "pocketbase/pocketbase"
DEFAULT_API_URL = "https://api.github.com"
DOWNLOAD_BASE = "https://github.com"
MIN_ARCHIVE_SIZE = 1000
BINARY_MEMBER = "pocketbase"
CHECKSUMS_ASSET = "checksums.txt"

_ARCH_MAP = {
    "x86_64": "linux_amd64",
    "amd64": "linux_amd64",
    "aarch64": "linux_arm64",
    "arm64": "linux_arm64",
}
_VERSION_RE = re.compile(r"v?(\d+\.\d+\.\d+)")


@dataclass(frozen=True)
class Release:
    version: str
    arch: str
    download_url: str

    @property
    def asset_name(self) -> str:
        return f"pocketbase_{self.version}_{self.arch}.zip"

    @property
    def checksums_url(self) -> str:
        return f"{self.download_url.rsplit('/', 1)[0]}/{CHECKSUMS_ASSET}"


def detect_arch(machine: str | None = None) -> str:
    value = (machine if machine is not None else platform_mod.machine()).strip().lower()
    arch = _ARCH_MAP.get(value)
    if not arch:
        raise ReleaseError(f"Unsupported architecture: {value or 'unknown'}")
    return arch


def normalize_version(tag: str) -> str:
    value = (tag or "").strip()
    if value[:1] in {"v", "V"}:
        value = value[1:]
    return value


def build_download_url(repo: str, version: str, arch: str) -> str:
    return f"{DOWNLOAD_BASE}/{repo}/releases/download/v{version}/pocketbase_{version}_{arch}.zip"


def fetch_latest_version(client: httpx.Client, *, repo: str = DEFAULT_REPO, api_url: str = DEFAULT_API_URL) -> str:
    url = f"{api_url.rstrip('/')}/repos/{repo}/releases/latest"
    try:
        resp = client.get(url, headers={"Accept": "application/vnd.github+json"})
    except httpx.RequestError as exc:
        raise ReleaseError(f"Failed to determine latest PocketBase version: {exc}") from exc
    if resp.status_code >= 400:
        raise ReleaseError(
            f"Failed to determine latest PocketBase version: HTTP {resp.status_code}",
            stdout=resp.text[:1000],
        )
    try:
        data = resp.json()
    except ValueError as exc:
        raise ReleaseError("Failed to determine latest PocketBase version: invalid JSON.") from exc
    tag = data.get("tag_name") if isinstance(data, dict) else None
    version = normalize_version(tag) if isinstance(tag, str) else ""
    if not version or parse_semver(version) is None:
        raise ReleaseError(f"Failed to determine latest PocketBase version (tag_name={tag!r}).")
    return version


def resolve_release(
    client: httpx.Client,
    *,
    arch: str,
    repo: str = DEFAULT_REPO,
    api_url: str = DEFAULT_API_URL,
    version: str | None = None,
) -> Release:
    if version:
        pinned = normalize_version(version)
        if parse_semver(pinned) is None:
            raise ReleaseError(f"Invalid PocketBase version: {version}")
        resolved = pinned
    else:
        resolved = fetch_latest_version(client, repo=repo, api_url=api_url)
    release = Release(version=resolved, arch=arch, download_url=build_download_url(repo, resolved, arch))
    logger.info("resolved release %s (%s)", release.version, release.download_url)
    return release


def download_release(client: httpx.Client, url: str, dest: Path) -> str:
    sha = hashlib.sha256()
    try:
        with client.stream("GET", url, follow_redirects=True) as resp:
            if resp.status_code >= 400:
                raise ReleaseError(f"Failed to download PocketBase from {url}: HTTP {resp.status_code}")
            with dest.open("wb") as f:
                for chunk in resp.iter_bytes():
                    if not chunk:
                        continue
                    sha.update(chunk)
                    f.write(chunk)
    except httpx.RequestError as exc:
        raise ReleaseError(f"Failed to download PocketBase from {url}: {exc}") from exc
    return sha.hexdigest()


def fetch_checksums(client: httpx.Client, url: str) -> dict[str, str] | None:
    """Asset name to sha256 from a release's checksums file; None when it is not published."""
    try:
        resp = client.get(url, follow_redirects=True)
    except httpx.RequestError as exc:
        raise ReleaseError(f"Failed to download checksums from {url}: {exc}") from exc
    if resp.status_code == 404:
        return None
    if resp.status_code >= 400:
        raise ReleaseError(f"Failed to download checksums from {url}: HTTP {resp.status_code}")
    sums: dict[str, str] = {}
    for line in resp.text.splitlines():
        parts = line.split()
        if len(parts) == 2 and len(parts[0]) == 64:
            sums[parts[1].lstrip("*")] = parts[0].lower()
    return sums


def verify_checksum(sha256: str, checksums: dict[str, str], asset_name: str) -> None:
    expected = checksums.get(asset_name)
    if expected is None:
        raise ReleaseError(f"{asset_name} is not listed in the release checksums.")
    if expected != sha256.lower():
        raise ReleaseError(
            f"Checksum mismatch for {asset_name}: expected {expected}, got {sha256}",
        )


def verify_archive(path: Path) -> int:
    try:
        size = path.stat().st_size
    except FileNotFoundError as exc:
        raise ReleaseError(f"Downloaded file is missing: {path}") from exc
    if size < MIN_ARCHIVE_SIZE:
        raise ReleaseError(f"Downloaded file is too small or empty: {size} bytes")
    if not zipfile.is_zipfile(path):
        raise ReleaseError("Downloaded file is not a valid zip archive.")
    with zipfile.ZipFile(path) as zf:
        bad = zf.testzip()
        if bad is not None:
            raise ReleaseError(f"Corrupt archive member: {bad}")
        if BINARY_MEMBER not in zf.namelist():
            raise ReleaseError("PocketBase executable not found in the downloaded archive.")
    return size


def extract_archive(path: Path, dest: str) -> list[str]:
    os.makedirs(dest, exist_ok=True)
    with zipfile.ZipFile(path) as zf:
        zf.extractall(dest)
        return zf.namelist()


def installed_version(runner: CommandRunner, binary: str) -> str | None:
    if not os.path.isfile(binary):
        return None
    res = runner.run([binary, "--version"])
    if res.returncode != 0:
        return None
    match = _VERSION_RE.search(res.stdout or "")
    return match.group(1) if match else None
