"""
Version handling and release registry access.

This module implements:
- Semantic version parsing and ordering
- ReleaseInfo, the transient view of one registry release
- VersionSource, which queries the release registry with a time-based cache,
  extracts expected archive hashes, and downloads release archives
"""

from __future__ import annotations

import json
import re
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
from pydantic import BaseModel, Field, ValidationError

from snip.errors import InvalidArgumentError, UnavailableError
from snip.logging import get_logger

logger = get_logger(__name__)

# Accepts: 1.0.0, 1.2.3, 2.0.0-beta.1, 1.0.0-alpha+build.123
SEMVER_PATTERN = re.compile(
    r"^(?P<major>0|[1-9]\d*)"
    r"\.(?P<minor>0|[1-9]\d*)"
    r"\.(?P<patch>0|[1-9]\d*)"
    r"(?:-(?P<prerelease>(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)"
    r"(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+(?P<buildmetadata>[0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)

SHA256_IN_NOTES_PATTERN = re.compile(r"SHA256:\s*([a-f0-9]{64})", re.IGNORECASE)
SHA256_DIGEST_PATTERN = re.compile(r"^[a-f0-9]{64}$", re.IGNORECASE)
CHECKSUM_ASSET_PATTERN = re.compile(r"\.sha256|\.checksum", re.IGNORECASE)

# Reported when the registry cannot be reached; never newer than a real install.
FALLBACK_LATEST_VERSION = "0.0.0"

LATEST_CACHE_KEY = "latest"


def normalize_version(version: str) -> str:
    """Strip surrounding whitespace and a leading 'v' from a release tag."""
    version = version.strip()
    if version[:1] in ("v", "V"):
        version = version[1:]
    return version


def parse_semantic_version(version: str) -> dict[str, Any]:
    """
    Parse and validate a semantic version string.

    A leading 'v' (as used in release tags) is accepted and ignored.

    Args:
        version: Version string (e.g., "1.0.0", "v1.2.3-beta.1").

    Returns:
        Dictionary with major, minor, patch, prerelease, buildmetadata.

    Raises:
        InvalidArgumentError: If version string is invalid.
    """
    if not version or not version.strip():
        raise InvalidArgumentError(
            "Version string cannot be empty",
            details={"version": version},
        )

    match = SEMVER_PATTERN.match(normalize_version(version))
    if not match:
        raise InvalidArgumentError(
            f"Invalid semantic version: {version}",
            details={
                "version": version,
                "format": "MAJOR.MINOR.PATCH[-PRERELEASE][+BUILDMETADATA]",
                "examples": ["1.0.0", "1.2.3", "2.0.0-beta.1"],
            },
        )

    return {
        "major": int(match.group("major")),
        "minor": int(match.group("minor")),
        "patch": int(match.group("patch")),
        "prerelease": match.group("prerelease"),
        "buildmetadata": match.group("buildmetadata"),
    }


def _compare_prerelease(pre1: str, pre2: str) -> int:
    """Compare dot-separated pre-release identifiers per semver precedence."""
    for a, b in zip(pre1.split("."), pre2.split("."), strict=False):
        if a == b:
            continue
        a_num, b_num = a.isdigit(), b.isdigit()
        if a_num and b_num:
            return -1 if int(a) < int(b) else 1
        if a_num != b_num:
            # Numeric identifiers sort before alphanumeric ones
            return -1 if a_num else 1
        return -1 if a < b else 1

    len1, len2 = len(pre1.split(".")), len(pre2.split("."))
    if len1 == len2:
        return 0
    return -1 if len1 < len2 else 1


def compare_versions(v1: str, v2: str) -> int:
    """
    Compare two semantic versions.

    Returns:
        -1 if v1 < v2, 0 if v1 == v2, 1 if v1 > v2. Build metadata is ignored.

    Raises:
        InvalidArgumentError: If either version is invalid.
    """
    p1 = parse_semantic_version(v1)
    p2 = parse_semantic_version(v2)

    for key in ("major", "minor", "patch"):
        if p1[key] < p2[key]:
            return -1
        if p1[key] > p2[key]:
            return 1

    pre1 = p1["prerelease"]
    pre2 = p2["prerelease"]

    # A release ranks above any of its pre-releases
    if pre1 is None and pre2 is not None:
        return 1
    if pre1 is not None and pre2 is None:
        return -1
    if pre1 is not None and pre2 is not None:
        return _compare_prerelease(pre1, pre2)

    return 0


# =============================================================================
# Release Models
# =============================================================================


class ReleaseAsset(BaseModel):
    """A downloadable file attached to a release."""

    name: str = Field(default="")
    browser_download_url: str = Field(default="")


class ReleaseInfo(BaseModel):
    """
    One release as published by the registry.

    Attributes:
        tag: Release tag (e.g., "v1.2.0").
        body: Release notes.
        expected_hash: SHA-256 of the release archive, when known.
        assets: Files attached to the release.
    """

    tag: str = Field(default="")
    body: str = Field(default="")
    expected_hash: str | None = Field(default=None)
    assets: list[ReleaseAsset] = Field(default_factory=list)

    @property
    def version(self) -> str:
        """Release tag without the leading 'v'."""
        return normalize_version(self.tag) if self.tag else ""

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ReleaseInfo:
        """Build a ReleaseInfo from a registry JSON payload."""
        body = payload.get("body") or ""
        match = SHA256_IN_NOTES_PATTERN.search(body)
        return cls(
            tag=payload.get("tag_name") or "",
            body=body,
            expected_hash=match.group(1).lower() if match else None,
            assets=[
                ReleaseAsset(**asset)
                for asset in payload.get("assets") or []
                if isinstance(asset, dict)
            ],
        )


# =============================================================================
# Version Source
# =============================================================================


class VersionSource:
    """
    Queries the release registry for versions, notes, and hashes.

    Registry payloads are cached on disk keyed by "latest" or by release tag,
    each entry stamped with its retrieval time. Lookups never raise on
    network or parse failures; archive downloads do.

    Example:
        >>> source = VersionSource("snip-app", "snip", cache_file=Path("/tmp/vc.json"))
        >>> source.latest_version()
        '1.2.0'
    """

    DEFAULT_API_BASE = "https://api.github.com"
    DEFAULT_DOWNLOAD_BASE = "https://github.com"
    DEFAULT_TIMEOUT_SECONDS = 30.0
    DEFAULT_CACHE_TTL_SECONDS = 3600

    def __init__(
        self,
        owner: str,
        repo: str,
        *,
        cache_file: Path | str | None = None,
        api_base: str = DEFAULT_API_BASE,
        download_base: str = DEFAULT_DOWNLOAD_BASE,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        user_agent: str = "Snip-URL-Shortener/1.0",
        client: httpx.Client | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the VersionSource.

        Args:
            owner: Repository owner on the registry.
            repo: Repository name on the registry.
            cache_file: JSON cache file; None disables caching.
            api_base: Registry API base URL.
            download_base: Release archive base URL.
            timeout: Timeout for every remote call in seconds.
            cache_ttl_seconds: Lifetime of a cache entry.
            user_agent: User-Agent header.
            client: Optional preconfigured httpx.Client.
            clock: Source of the current Unix time.
        """
        self.owner = owner
        self.repo = repo
        self.cache_file = Path(cache_file) if cache_file else None
        self.api_base = api_base.rstrip("/")
        self.download_base = download_base.rstrip("/")
        self.timeout = timeout
        self.cache_ttl_seconds = cache_ttl_seconds
        self._client = client or httpx.Client(
            timeout=timeout,
            headers={
                "User-Agent": user_agent,
                "Accept": "application/vnd.github+json",
            },
            follow_redirects=True,
        )
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: Any,
        *,
        client: httpx.Client | None = None,
    ) -> VersionSource:
        """
        Create a VersionSource from an AppConfig.

        Args:
            config: AppConfig with releases settings.
            client: Optional preconfigured httpx.Client.
        """
        releases = config.releases
        return cls(
            releases.owner,
            releases.repo,
            cache_file=config.version_cache_file,
            api_base=releases.api_base,
            download_base=releases.download_base,
            timeout=releases.timeout_seconds,
            cache_ttl_seconds=releases.cache_ttl_seconds,
            user_agent=releases.user_agent,
            client=client,
        )

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()

    # -------------------------------------------------------------------------
    # Cache
    # -------------------------------------------------------------------------

    def _read_cache(self) -> dict[str, Any]:
        if self.cache_file is None or not self.cache_file.exists():
            return {}
        try:
            data = json.loads(self.cache_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.debug(f"Ignoring unreadable version cache: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _cache_get(self, key: str) -> dict[str, Any] | None:
        entry = self._read_cache().get(key)
        if not isinstance(entry, dict):
            return None

        fetched_at = entry.get("fetched_at")
        if not isinstance(fetched_at, (int, float)):
            return None
        if self._clock() - fetched_at > self.cache_ttl_seconds:
            return None

        release = entry.get("release")
        return release if isinstance(release, dict) else None

    def _cache_put(self, key: str, release: dict[str, Any]) -> None:
        if self.cache_file is None:
            return
        try:
            data = self._read_cache()
            data[key] = {"fetched_at": self._clock(), "release": release}
            self.cache_file.parent.mkdir(parents=True, exist_ok=True)
            self.cache_file.write_text(json.dumps(data), encoding="utf-8")
        except OSError as e:
            logger.warning(f"Failed to write version cache: {e}")

    def clear_cache(self) -> None:
        """Drop all cached release data."""
        if self.cache_file is not None:
            self.cache_file.unlink(missing_ok=True)
        logger.debug("Version cache cleared")

    # -------------------------------------------------------------------------
    # Registry access
    # -------------------------------------------------------------------------

    def _fetch_json(self, endpoint: str) -> dict[str, Any] | None:
        url = f"{self.api_base}/repos/{self.owner}/{self.repo}{endpoint}"
        try:
            response = self._client.get(url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.warning(
                "Release registry request failed",
                extra={"url": url, "error": str(e)},
            )
            return None
        except ValueError as e:
            logger.warning(
                "Release registry returned invalid JSON",
                extra={"url": url, "error": str(e)},
            )
            return None

        return data if isinstance(data, dict) else None

    def _release_payload(self, key: str, endpoint: str) -> dict[str, Any] | None:
        cached = self._cache_get(key)
        if cached is not None:
            return cached

        payload = self._fetch_json(endpoint)
        if payload is not None:
            self._cache_put(key, payload)
        return payload

    def latest_release(self) -> ReleaseInfo | None:
        """Get the latest release, or None when the registry is unreachable."""
        payload = self._release_payload(LATEST_CACHE_KEY, "/releases/latest")
        if payload is None:
            return None
        try:
            return ReleaseInfo.from_payload(payload)
        except ValidationError as e:
            logger.warning(f"Malformed latest release payload: {e}")
            return None

    def get_release(self, version: str) -> ReleaseInfo | None:
        """Get the release tagged ``v<version>``, or None if unavailable."""
        tag = f"v{normalize_version(version)}"
        payload = self._release_payload(f"tags/{tag}", f"/releases/tags/{tag}")
        if payload is None:
            return None
        try:
            return ReleaseInfo.from_payload(payload)
        except ValidationError as e:
            logger.warning(f"Malformed release payload for {tag}: {e}")
            return None

    def latest_version(self) -> str:
        """
        Get the latest released version.

        Returns:
            Version string without a leading 'v', or FALLBACK_LATEST_VERSION
            when the registry cannot be queried.
        """
        release = self.latest_release()
        if release is None or not release.version:
            logger.warning(
                "Latest version unavailable, using fallback",
                extra={"fallback": FALLBACK_LATEST_VERSION},
            )
            return FALLBACK_LATEST_VERSION
        return release.version

    def release_notes(self, version: str) -> str:
        """Get the release notes of a version, or "" if unavailable."""
        release = self.get_release(version)
        return release.body if release else ""

    def release_hash(self, version: str) -> str | None:
        """
        Get the expected SHA-256 of a version's release archive.

        Looks for a ``SHA256: <hex>`` token in the release notes first, then
        for a companion ``.sha256``/``.checksum`` asset.

        Returns:
            Lowercase hex digest, or None when the release publishes none.
        """
        release = self.get_release(version)
        if release is None:
            return None

        if release.expected_hash:
            return release.expected_hash

        for asset in release.assets:
            if CHECKSUM_ASSET_PATTERN.search(asset.name):
                return self._fetch_checksum(asset.browser_download_url)

        return None

    def _fetch_checksum(self, url: str) -> str | None:
        try:
            response = self._client.get(url, timeout=self.timeout)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(
                "Checksum asset download failed",
                extra={"url": url, "error": str(e)},
            )
            return None

        lines = response.text.strip().splitlines()
        first_line = lines[0].strip() if lines else ""
        # "sha256sum" output carries the file name after the digest
        digest = first_line.split()[0] if first_line else ""
        if SHA256_DIGEST_PATTERN.match(digest):
            return digest.lower()
        return None

    def archive_url(self, version: str) -> str:
        """Build the download URL of a version's source archive."""
        return (
            f"{self.download_base}/{self.owner}/{self.repo}"
            f"/archive/refs/tags/v{normalize_version(version)}.zip"
        )

    def download_release(self, version: str, dest_dir: Path) -> Path:
        """
        Download a version's release archive.

        Args:
            version: Version to download.
            dest_dir: Directory receiving the archive.

        Returns:
            Path to the downloaded archive.

        Raises:
            UnavailableError: If the download fails.
        """
        url = self.archive_url(version)
        dest_dir.mkdir(parents=True, exist_ok=True)
        dest = dest_dir / f"release-{normalize_version(version)}-{int(self._clock())}.zip"

        try:
            with self._client.stream("GET", url, timeout=self.timeout) as response:
                response.raise_for_status()
                with open(dest, "wb") as f:
                    for chunk in response.iter_bytes():
                        f.write(chunk)
        except (httpx.HTTPError, OSError) as e:
            dest.unlink(missing_ok=True)
            raise UnavailableError(
                f"Failed to download release {version}: {e}",
                details={"url": url, "version": version},
            ) from e

        logger.info(
            "Release downloaded",
            extra={"version": version, "path": str(dest), "bytes": dest.stat().st_size},
        )
        return dest
