# depwatch/registry.py
"""
Service Registry: static mapping of service name → project path → ecosystem.

Loaded once at startup. Loading is fail-fast: one bad entry rejects the whole
mapping with a ConfigError naming that entry. A silently skipped entry would
let a scan "succeed" against the wrong project or none at all.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping

from depwatch.errors import ConfigError, ServiceNotFound

logger = logging.getLogger(__name__)

SUPPORTED_ECOSYSTEMS = ("nodejs", "python", "go")

ECOSYSTEM_ALIASES = {
    "nodejs": "nodejs",
    "node": "nodejs",
    "npm": "nodejs",
    "javascript": "nodejs",
    "js": "nodejs",
    "python": "python",
    "py": "python",
    "pip": "python",
    "go": "go",
    "golang": "go",
}


def normalize_ecosystem(value: Any) -> str:
    """Map an ecosystem tag or alias to its canonical name. Raises ValueError."""
    tag = str(value or "").strip().lower()
    if tag not in ECOSYSTEM_ALIASES:
        raise ValueError(
            f"unsupported ecosystem {value!r} (supported: {', '.join(SUPPORTED_ECOSYSTEMS)})"
        )
    return ECOSYSTEM_ALIASES[tag]


def check_project_path(path: Any) -> Path:
    """Resolve a project path and make sure it is a readable directory. Raises ValueError."""
    if not path or not isinstance(path, (str, os.PathLike)):
        raise ValueError("path is required")
    p = Path(path).expanduser()
    if not p.exists():
        raise ValueError(f"path does not exist: {p}")
    if not p.is_dir():
        raise ValueError(f"path is not a directory: {p}")
    if not os.access(p, os.R_OK | os.X_OK):
        raise ValueError(f"path is not readable: {p}")
    return p.resolve()


@dataclass(frozen=True)
class ServiceDescriptor:
    name: str
    ecosystem: str
    path: Path
    enabled: bool = True

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "ecosystem": self.ecosystem,
            "language": self.ecosystem,
            "path": str(self.path),
            "enabled": self.enabled,
        }


class ServiceRegistry:
    """Immutable name → ServiceDescriptor lookup."""

    def __init__(self, descriptors: List[ServiceDescriptor]):
        self._by_name: Dict[str, ServiceDescriptor] = {d.name: d for d in descriptors}

    @classmethod
    def load(cls, services: Mapping[str, Mapping[str, Any]]) -> "ServiceRegistry":
        descriptors: List[ServiceDescriptor] = []
        for name, entry in services.items():
            descriptors.append(_build_descriptor(name, entry))

        registry = cls(descriptors)
        logger.info(
            "Service registry loaded: %d service(s), %d enabled",
            len(descriptors), len(registry.enabled()),
        )
        return registry

    def get(self, name: str) -> ServiceDescriptor:
        try:
            return self._by_name[name]
        except KeyError:
            raise ServiceNotFound(f"service '{name}' is not registered")

    def list(self) -> List[ServiceDescriptor]:
        return sorted(self._by_name.values(), key=lambda d: d.name)

    def enabled(self) -> List[ServiceDescriptor]:
        return [d for d in self.list() if d.enabled]

    def names(self) -> List[str]:
        return sorted(self._by_name)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __len__(self) -> int:
        return len(self._by_name)


def _build_descriptor(name: Any, entry: Mapping[str, Any]) -> ServiceDescriptor:
    if not isinstance(name, str) or not name.strip():
        raise ConfigError(f"service entry {name!r}: name must be a non-empty string")
    name = name.strip()
    if name in ("all", "custom"):
        # Would shadow POST /scan/all and /scan/custom
        raise ConfigError(f"service '{name}': name is reserved")

    try:
        ecosystem = normalize_ecosystem(entry.get("ecosystem"))
    except ValueError as e:
        raise ConfigError(f"service '{name}': {e}")

    try:
        path = check_project_path(entry.get("path"))
    except ValueError as e:
        raise ConfigError(f"service '{name}': {e}")

    enabled = entry.get("enabled", True)
    if not isinstance(enabled, bool):
        raise ConfigError(f"service '{name}': enabled must be true or false")

    return ServiceDescriptor(name=name, ecosystem=ecosystem, path=path, enabled=enabled)
