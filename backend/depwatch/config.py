# depwatch/config.py
"""
Runtime configuration.

Two sources:
    - A JSON file (path in DEPWATCH_CONFIG) holding the service mapping and
      the two scan schedules. This is opaque input for the ServiceRegistry.
    - Environment variables for tuning knobs (workers, timeouts, retries...).

Config file shape:
    {
        "services": {
            "web":     {"path": "/srv/web", "ecosystem": "nodejs"},
            "billing": {"path": "/srv/billing", "ecosystem": "python", "enabled": false}
        },
        "schedule": {"full_scan": "0 */6 * * *", "security_scan": 3600},
        "security_services": ["web"]
    }

The legacy split form is also accepted:
    {"service_paths": {"web": "/srv/web"}, "service_languages": {"web": "nodejs"}}
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from depwatch.errors import ConfigError

CONFLICT_POLICIES = ("reject", "coalesce")

DEFAULT_FULL_SCAN = "0 */6 * * *"
DEFAULT_SECURITY_SCAN = 3600


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ScheduleConfig:
    # int → interval in seconds, str → 5-field crontab
    full_scan: Any = DEFAULT_FULL_SCAN
    security_scan: Any = DEFAULT_SECURITY_SCAN
    security_services: List[str] = field(default_factory=list)


@dataclass
class Settings:
    services: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)

    max_workers: int = 4
    queue_size: int = 16
    scan_timeout: float = 300.0
    max_retries: int = 2
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    conflict_policy: str = "reject"

    database_uri: str = "sqlite://"
    registry_lookups: bool = True
    scheduler_enabled: bool = True

    config_path: Optional[Path] = None

    def validate(self) -> None:
        if self.max_workers < 1:
            raise ConfigError("max_workers must be >= 1")
        if self.queue_size < 0:
            raise ConfigError("queue_size must be >= 0")
        if self.scan_timeout <= 0:
            raise ConfigError("scan_timeout must be > 0")
        if self.max_retries < 0:
            raise ConfigError("max_retries must be >= 0")
        if self.backoff_base < 0 or self.backoff_max < 0:
            raise ConfigError("backoff values must be >= 0")
        if self.conflict_policy not in CONFLICT_POLICIES:
            raise ConfigError(
                f"conflict_policy must be one of {', '.join(CONFLICT_POLICIES)}, "
                f"got {self.conflict_policy!r}"
            )

    @classmethod
    def from_env(cls, config_path: Optional[str] = None) -> "Settings":
        """Build settings from DEPWATCH_* environment variables and the config file."""
        path = config_path or os.getenv("DEPWATCH_CONFIG")
        raw: Dict[str, Any] = {}
        if path:
            raw = load_config_file(Path(path))

        settings = cls(
            services=parse_services(raw),
            schedule=parse_schedule(raw),
            max_workers=_env_int("DEPWATCH_MAX_WORKERS", 4),
            queue_size=_env_int("DEPWATCH_QUEUE_SIZE", 16),
            scan_timeout=_env_float("DEPWATCH_SCAN_TIMEOUT", 300.0),
            max_retries=_env_int("DEPWATCH_MAX_RETRIES", 2),
            backoff_base=_env_float("DEPWATCH_BACKOFF_BASE", 1.0),
            backoff_max=_env_float("DEPWATCH_BACKOFF_MAX", 30.0),
            conflict_policy=(os.getenv("DEPWATCH_CONFLICT_POLICY") or "reject").strip().lower(),
            database_uri=os.getenv("DEPWATCH_DATABASE_URI") or "sqlite://",
            registry_lookups=_env_bool("DEPWATCH_REGISTRY_LOOKUPS", True),
            scheduler_enabled=_env_bool("SCHEDULER_ENABLED", True),
            config_path=Path(path) if path else None,
        )
        settings.validate()
        return settings


def load_config_file(path: Path) -> Dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigError(f"config file not found: {path}")
    except json.JSONDecodeError as e:
        raise ConfigError(f"config file {path} is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a JSON object")
    return data


def parse_services(raw: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Normalize both config shapes to {name: {"path", "ecosystem", "enabled"}}."""
    services: Dict[str, Dict[str, Any]] = {}

    block = raw.get("services")
    if block is not None:
        if not isinstance(block, dict):
            raise ConfigError("'services' must be an object mapping name -> entry")
        for name, entry in block.items():
            if not isinstance(entry, dict):
                raise ConfigError(f"service '{name}': entry must be an object")
            services[name] = {
                "path": entry.get("path"),
                "ecosystem": entry.get("ecosystem") or entry.get("language"),
                "enabled": entry.get("enabled", True),
            }

    paths = raw.get("service_paths")
    languages = raw.get("service_languages")
    if paths is not None or languages is not None:
        if not isinstance(paths, dict) or not isinstance(languages, dict):
            raise ConfigError("'service_paths' and 'service_languages' must both be objects")
        for name in sorted(set(paths) | set(languages)):
            if name in services:
                raise ConfigError(f"service '{name}': defined twice")
            services[name] = {
                "path": paths.get(name),
                "ecosystem": languages.get(name),
                "enabled": True,
            }

    return services


def parse_schedule(raw: Dict[str, Any]) -> ScheduleConfig:
    block = raw.get("schedule") or {}
    if not isinstance(block, dict):
        raise ConfigError("'schedule' must be an object")

    security_services = raw.get("security_services") or []
    if not isinstance(security_services, list) or not all(
        isinstance(s, str) for s in security_services
    ):
        raise ConfigError("'security_services' must be a list of service names")

    return ScheduleConfig(
        full_scan=block.get("full_scan", DEFAULT_FULL_SCAN),
        security_scan=block.get("security_scan", DEFAULT_SECURITY_SCAN),
        security_services=security_services,
    )
