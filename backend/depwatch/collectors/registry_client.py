# depwatch/collectors/registry_client.py
"""
Package registry lookups (npm, PyPI).

Audit tools report what is installed and what is vulnerable, but not how far
behind a package is or how old the installed release is. This client fills
in those two numbers from the public registry documents:

    npm:   GET https://registry.npmjs.org/<name>        → dist-tags, versions, time
    PyPI:  GET https://pypi.org/pypi/<name>/json        → info.version, releases

It also resolves advisory severity labels from OSV for tools that don't
report one (pip-audit, govulncheck):

    OSV:   GET https://api.osv.dev/v1/vulns/<id>       → database_specific.severity

Lookups are best-effort. A network error or an unexpected document is logged
and the caller falls back to "current == latest, 0 days". The tools' own data
is still valid without them.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote

import requests
from packaging.version import InvalidVersion, Version

logger = logging.getLogger(__name__)

NPM_REGISTRY_URL = "https://registry.npmjs.org"
PYPI_URL = "https://pypi.org/pypi"
OSV_URL = "https://api.osv.dev/v1/vulns"

CACHE_TTL_SECONDS = 3600
CACHE_MAX_ENTRIES = 4096
REQUEST_TIMEOUT = 10


@dataclass
class ReleaseInfo:
    """Registry view of one package."""
    name: str
    latest: str
    versions: List[str] = field(default_factory=list)           # oldest → newest
    published: Dict[str, datetime] = field(default_factory=dict)

    def versions_behind(self, current: str) -> int:
        return count_versions_behind(self.versions, current, self.latest)

    def days_since_release(self, version: str, now: Optional[datetime] = None) -> int:
        return days_since(self.published.get(version), now)


def parse_timestamp(raw: Optional[str]) -> Optional[datetime]:
    if not raw or not isinstance(raw, str):
        return None
    value = raw.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        ts = datetime.fromisoformat(value)
    except ValueError:
        # Go emits nanosecond precision, which fromisoformat rejects on older Pythons
        try:
            head, _, tail = value.partition(".")
            offset = ""
            for sep in ("+", "-"):
                if sep in tail:
                    offset = sep + tail.split(sep, 1)[1]
                    break
            ts = datetime.fromisoformat(head + offset)
        except ValueError:
            return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def days_since(ts: Optional[datetime], now: Optional[datetime] = None) -> int:
    if ts is None:
        return 0
    now = now or datetime.now(timezone.utc)
    return max(0, (now - ts).days)


def _parse_version(raw: str) -> Optional[Version]:
    try:
        return Version(raw)
    except (InvalidVersion, TypeError):
        return None


def count_versions_behind(versions: List[str], current: str, latest: str) -> int:
    """
    Number of releases newer than current, up to and including latest.

    Pre-releases are ignored unless current itself is a pre-release. When a
    version string is not PEP 440 / semver-ish, falls back to list position
    (registries return releases in publication order).
    """
    if not current or not latest or current == latest:
        return 0

    cur = _parse_version(current)
    top = _parse_version(latest)
    if cur is not None and top is not None:
        if top <= cur:
            return 0
        count = 0
        for raw in versions:
            v = _parse_version(raw)
            if v is None:
                continue
            if v.is_prerelease and not cur.is_prerelease:
                continue
            if cur < v <= top:
                count += 1
        return max(count, 1)

    if current in versions and latest in versions:
        return max(0, versions.index(latest) - versions.index(current))
    return 1


class PackageRegistryClient:
    """Thread-safe, cached registry lookups."""

    def __init__(self, timeout: float = REQUEST_TIMEOUT, ttl: float = CACHE_TTL_SECONDS,
                 max_entries: int = CACHE_MAX_ENTRIES):
        self.timeout = timeout
        self.ttl = ttl
        self.max_entries = max_entries
        self._cache: Dict[str, tuple] = {}
        self._lock = threading.Lock()

    def _lookup(self, key: str) -> Optional[tuple]:
        """(value,) for a fresh cache entry, else None. value itself may be None."""
        with self._lock:
            hit = self._cache.get(key)
            if hit is None:
                return None
            if time.monotonic() - hit[0] >= self.ttl:
                del self._cache[key]
                return None
            return (hit[1],)

    def _cached(self, key: str) -> Optional[ReleaseInfo]:
        hit = self._lookup(key)
        return hit[0] if hit else None

    def _store(self, key: str, value) -> None:
        now = time.monotonic()
        with self._lock:
            if key not in self._cache and len(self._cache) >= self.max_entries:
                for k in [k for k, (ts, _) in self._cache.items() if now - ts >= self.ttl]:
                    del self._cache[k]
                # Still full: drop the oldest insertions
                while len(self._cache) >= self.max_entries:
                    del self._cache[next(iter(self._cache))]
            self._cache[key] = (now, value)

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def _get_json(self, url: str, timeout: Optional[float] = None) -> Optional[dict]:
        if timeout is None:
            timeout = self.timeout
        try:
            resp = requests.get(url, timeout=timeout, headers={"Accept": "application/json"})
            if resp.status_code == 404:
                logger.info(f"Registry has no entry at {url}")
                return None
            resp.raise_for_status()
            data = resp.json()
        except requests.exceptions.RequestException as e:
            logger.warning(f"Registry lookup failed for {url}: {e}")
            return None
        except ValueError as e:
            logger.warning(f"Registry returned invalid JSON for {url}: {e}")
            return None
        return data if isinstance(data, dict) else None

    def npm(self, name: str, timeout: Optional[float] = None) -> Optional[ReleaseInfo]:
        key = f"npm:{name}"
        cached = self._cached(key)
        if cached:
            return cached

        # Scoped packages keep the @ but encode the slash
        data = self._get_json(f"{NPM_REGISTRY_URL}/{quote(name, safe='@')}", timeout)
        if not data:
            return None

        latest = (data.get("dist-tags") or {}).get("latest") or ""
        times = data.get("time") or {}
        published = {
            v: ts for v, ts in ((v, parse_timestamp(t)) for v, t in times.items()
                                if v not in ("created", "modified"))
            if ts is not None
        }
        versions = sorted(
            (data.get("versions") or {}).keys(),
            key=lambda v: published.get(v) or datetime.min.replace(tzinfo=timezone.utc),
        )
        info = ReleaseInfo(name=name, latest=latest, versions=versions, published=published)
        self._store(key, info)
        return info

    def osv_severity(self, ids: List[str],
                     timeout: Optional[float] = None) -> Optional[Tuple[str, Optional[float]]]:
        """
        Severity label for an advisory from OSV, trying each id/alias in turn.

        GHSA records carry database_specific.severity (CRITICAL/HIGH/MODERATE/LOW).
        PYSEC and GO records usually don't, so their GHSA alias is tried next.
        Returns (label, None); OSV only has CVSS vectors, not scores.
        """
        for advisory_id in ids:
            if not advisory_id:
                continue
            key = f"osv:{advisory_id}"
            hit = self._lookup(key)
            if hit is not None:
                if hit[0]:
                    return hit[0]
                continue

            data = self._get_json(f"{OSV_URL}/{quote(advisory_id)}", timeout)
            label = None
            if data:
                label = (data.get("database_specific") or {}).get("severity")
            found = (str(label).lower(), None) if label else None
            self._store(key, found)
            if found:
                return found
        return None

    def pypi(self, name: str, timeout: Optional[float] = None) -> Optional[ReleaseInfo]:
        key = f"pypi:{name.lower()}"
        cached = self._cached(key)
        if cached:
            return cached

        data = self._get_json(f"{PYPI_URL}/{quote(name)}/json", timeout)
        if not data:
            return None

        latest = (data.get("info") or {}).get("version") or ""
        published: Dict[str, datetime] = {}
        versions: List[str] = []
        for version, files in (data.get("releases") or {}).items():
            if not files:
                continue  # release with no uploads (yanked/empty)
            stamps = [parse_timestamp(f.get("upload_time_iso_8601") or f.get("upload_time"))
                      for f in files if isinstance(f, dict)]
            stamps = [s for s in stamps if s is not None]
            if stamps:
                published[version] = min(stamps)
            versions.append(version)

        versions.sort(key=lambda v: published.get(v) or datetime.min.replace(tzinfo=timezone.utc))
        info = ReleaseInfo(name=name, latest=latest, versions=versions, published=published)
        self._store(key, info)
        return info
