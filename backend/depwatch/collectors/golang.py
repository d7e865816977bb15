# depwatch/collectors/golang.py
"""
Go collector: `go list` for modules, govulncheck for advisories.

Inventory:
    go list -m -u -versions -json all

    Prints one JSON object per module (no enclosing array):
        {"Path": "golang.org/x/text", "Version": "v0.3.5", "Time": "2020-12-14T...",
         "Update": {"Version": "v0.14.0", "Time": "..."}, "Indirect": true,
         "Versions": ["v0.1.0", ..., "v0.14.0"]}

    The main module is skipped. Indirect modules are skipped unless
    options.extra["include_indirect"] is set.

Audit:
    govulncheck -json ./...

    A stream of messages. "osv" messages describe advisories, "finding"
    messages tie an advisory to a module version:
        {"osv": {"id": "GO-2021-0113", "aliases": ["CVE-2021-38561", "GHSA-..."], ...}}
        {"finding": {"osv": "GO-2021-0113", "fixed_version": "v0.3.7",
                     "trace": [{"module": "golang.org/x/text", "version": "v0.3.5"}]}}

    The Go vulnerability database has no severity field. It is taken from
    the OSV record's database_specific.severity, then from OSV lookups of
    the aliases, and otherwise coerced to "medium".

Profile options (options.extra):
    include_indirect: bool: report indirect modules too (default: False)
    reachable_only:   bool: only findings with a call-stack trace (default: False)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from depwatch.collectors.base import BaseCollector, ToolRunner, iter_json_stream
from depwatch.collectors.registry_client import count_versions_behind, days_since, parse_timestamp
from depwatch.models import Dependency, ScanOptions, Vulnerability

logger = logging.getLogger(__name__)


class GoCollector(BaseCollector):

    @property
    def ecosystem(self) -> str:
        return "go"

    @property
    def binaries(self) -> List[str]:
        return ["go", "govulncheck"]

    def inventory(self, path: Path, options: ScanOptions, runner: ToolRunner) -> List[Dependency]:
        out = runner.run(["go", "list", "-m", "-u", "-versions", "-json", "all"], cwd=path)
        deps = parse_go_list(
            out.stdout,
            include_indirect=bool(options.extra.get("include_indirect")),
        )
        logger.info(f"go inventory for {path}: {len(deps)} modules")
        return deps

    def audit(self, path: Path, options: ScanOptions, runner: ToolRunner) -> List[Vulnerability]:
        # govulncheck exits 3 when it finds vulnerabilities (newer releases exit 0 in -json mode)
        out = runner.run(["govulncheck", "-json", "./..."], cwd=path, ok_codes=(0, 3))
        lookup = None
        if options.registry_lookups and self.registry_client is not None:
            lookup = lambda ids: self.registry_lookup(runner, "osv_severity", ids)
        vulns = parse_govulncheck(
            out.stdout,
            reachable_only=bool(options.extra.get("reachable_only")),
            severity_lookup=lookup,
        )
        logger.info(f"govulncheck for {path}: {len(vulns)} advisories")
        return vulns


def parse_go_list(text: str, include_indirect: bool = False) -> List[Dependency]:
    deps: List[Dependency] = []
    for mod in iter_json_stream(text, "go list"):
        if not isinstance(mod, dict) or mod.get("Main"):
            continue
        if mod.get("Indirect") and not include_indirect:
            continue

        # A replace directive pins the effective version
        replace = mod.get("Replace") if isinstance(mod.get("Replace"), dict) else None
        current = (replace or {}).get("Version") or mod.get("Version") or ""
        if not mod.get("Path") or not current:
            continue

        update = mod.get("Update") if isinstance(mod.get("Update"), dict) else {}
        latest = update.get("Version") or current
        versions = [v for v in (mod.get("Versions") or []) if isinstance(v, str)]

        deps.append(Dependency(
            package_name=mod["Path"],
            current_version=current,
            latest_version=latest,
            versions_behind=count_versions_behind(versions, current, latest),
            last_updated_days=days_since(parse_timestamp(mod.get("Time"))),
        ))
    return deps


def _affected_range(osv: Dict[str, Any], module: str) -> str:
    for affected in osv.get("affected") or []:
        if (affected.get("package") or {}).get("name") != module:
            continue
        parts: List[str] = []
        for rng in affected.get("ranges") or []:
            for event in rng.get("events") or []:
                if "introduced" in event and event["introduced"] not in ("0", ""):
                    parts.append(f">={event['introduced']}")
                if "fixed" in event:
                    parts.append(f"<{event['fixed']}")
        return ", ".join(parts)
    return ""


def parse_govulncheck(text: str, reachable_only: bool = False,
                      severity_lookup=None) -> List[Vulnerability]:
    osvs: Dict[str, Dict[str, Any]] = {}
    findings: List[Dict[str, Any]] = []

    for msg in iter_json_stream(text, "govulncheck"):
        if not isinstance(msg, dict):
            continue
        if isinstance(msg.get("osv"), dict):
            osv = msg["osv"]
            if osv.get("id"):
                osvs[osv["id"]] = osv
        elif isinstance(msg.get("finding"), dict):
            findings.append(msg["finding"])

    vulns: List[Vulnerability] = []
    seen = set()
    for finding in findings:
        trace = finding.get("trace") or []
        if not trace or not isinstance(trace[0], dict):
            continue
        if reachable_only and not trace[0].get("function"):
            continue

        osv_id = finding.get("osv") or "unknown"
        module = trace[0].get("module") or ""
        key = (module, osv_id)
        if key in seen:
            continue
        seen.add(key)

        osv = osvs.get(osv_id, {})
        severity: Optional[str] = (osv.get("database_specific") or {}).get("severity")
        if not severity and severity_lookup is not None:
            found = severity_lookup([a for a in osv.get("aliases") or [] if isinstance(a, str)])
            if found:
                severity = found[0]

        affected = _affected_range(osv, module)
        if not affected and finding.get("fixed_version"):
            affected = f"<{finding['fixed_version']}"

        vulns.append(Vulnerability(
            package_name=module,
            severity=severity,
            advisory_id=osv_id,
            affected_version_range=affected,
            title=osv.get("summary") or "",
            url=(osv.get("database_specific") or {}).get("url") or f"https://pkg.go.dev/vuln/{osv_id}",
        ))
    return vulns
