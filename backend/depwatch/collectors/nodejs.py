# depwatch/collectors/nodejs.py
"""
Node.js collector: npm's built-in tooling.

Commands (run in the project directory):
    npm ls --json --depth=0     installed top-level packages
    npm outdated --json         current / wanted / latest per outdated package
    npm audit --json            advisories (npm 7+ report v2, npm 6 legacy format)

Exit codes are not trustworthy on their own: `npm outdated` exits 1 when
something is outdated, `npm audit` exits 1 when something is vulnerable and
`npm ls` exits 1 on extraneous/missing packages. All of them still print
JSON, so output is accepted whenever stdout is non-empty.

Output (per dependency):
    Dependency(package_name="lodash", current_version="4.17.20",
               latest_version="4.17.21", versions_behind=1, last_updated_days=1460)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from depwatch.collectors.base import BaseCollector, ToolRunner, parse_json_output
from depwatch.errors import ParseError, ProcessFailure
from depwatch.models import Dependency, ScanOptions, Vulnerability

logger = logging.getLogger(__name__)


class NodeCollector(BaseCollector):

    @property
    def ecosystem(self) -> str:
        return "nodejs"

    @property
    def binaries(self) -> List[str]:
        return ["npm"]

    # ------------------------------------------------------------------
    # Inventory / outdated
    # ------------------------------------------------------------------

    def inventory(self, path: Path, options: ScanOptions, runner: ToolRunner) -> List[Dependency]:
        ls_out = runner.run(["npm", "ls", "--json", "--depth=0"], cwd=path,
                            allow_output_on_failure=True)
        installed = parse_installed(parse_json_output(ls_out.stdout, "npm ls"))

        outdated_out = runner.run(["npm", "outdated", "--json"], cwd=path, ok_codes=(0, 1),
                                  allow_output_on_failure=True)
        outdated = parse_outdated(parse_json_output(outdated_out.stdout, "npm outdated", empty={}))

        # Packages declared but not installed only show up in `npm outdated`
        for name, info in outdated.items():
            if name not in installed and info.get("current"):
                installed[name] = info["current"]

        deps: List[Dependency] = []
        for name in sorted(installed):
            current = installed[name]
            latest = (outdated.get(name) or {}).get("latest") or current
            deps.append(self._build_dependency(name, current, latest, options, runner))

        logger.info(f"npm inventory for {path}: {len(deps)} packages, "
                    f"{sum(1 for d in deps if d.is_outdated)} outdated")
        return deps

    def _build_dependency(self, name: str, current: str, latest: str,
                          options: ScanOptions, runner: ToolRunner) -> Dependency:
        info = None
        if options.registry_lookups and self.registry_client is not None:
            info = self.registry_lookup(runner, "npm", name)

        if info is None:
            return Dependency(
                package_name=name,
                current_version=current,
                latest_version=latest,
                versions_behind=0 if latest == current else 1,
            )

        latest = info.latest or latest
        return Dependency(
            package_name=name,
            current_version=current,
            latest_version=latest,
            versions_behind=info.versions_behind(current) if latest != current else 0,
            last_updated_days=info.days_since_release(current),
        )

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def audit(self, path: Path, options: ScanOptions, runner: ToolRunner) -> List[Vulnerability]:
        out = runner.run(["npm", "audit", "--json"], cwd=path, allow_output_on_failure=True)
        report = parse_json_output(out.stdout, "npm audit")
        if not isinstance(report, dict):
            raise ParseError("npm audit output is not a JSON object")

        error = report.get("error")
        if isinstance(error, dict):
            # e.g. {"code": "ENOLOCK", "summary": "This command requires an existing lockfile."}
            raise ProcessFailure(
                f"npm audit failed: {error.get('code', 'unknown')}: {error.get('summary', '')}".strip()
            )

        vulns = parse_audit_report(report)
        logger.info(f"npm audit for {path}: {len(vulns)} advisories")
        return vulns


# ---------------------------------------------------------------------------
# Parsers: module level so tests can feed them fixture documents
# ---------------------------------------------------------------------------

def parse_installed(doc: Any) -> Dict[str, str]:
    """{name: version} from `npm ls --json --depth=0`."""
    if not isinstance(doc, dict):
        return {}
    out: Dict[str, str] = {}
    for name, info in (doc.get("dependencies") or {}).items():
        if isinstance(info, dict) and info.get("version"):
            out[name] = str(info["version"])
    return out


def parse_outdated(doc: Any) -> Dict[str, Dict[str, str]]:
    """{name: {"current", "wanted", "latest"}} from `npm outdated --json`."""
    if not isinstance(doc, dict):
        return {}
    out: Dict[str, Dict[str, str]] = {}
    for name, info in doc.items():
        # Workspaces report one entry per dependent
        if isinstance(info, list):
            info = info[0] if info else {}
        if not isinstance(info, dict):
            continue
        out[name] = {
            "current": str(info.get("current") or ""),
            "wanted": str(info.get("wanted") or ""),
            "latest": str(info.get("latest") or ""),
        }
    return out


def _advisory_id(via: Dict[str, Any]) -> str:
    url = via.get("url") or ""
    if url:
        tail = url.rstrip("/").rsplit("/", 1)[-1]
        if tail:
            return tail
    source = via.get("source")
    return f"npm-{source}" if source is not None else "unknown"


def _cvss(value: Any) -> Optional[float]:
    if isinstance(value, dict):
        return value.get("score")
    return value


def parse_audit_report(report: Dict[str, Any]) -> List[Vulnerability]:
    vulns: List[Vulnerability] = []
    seen = set()

    # npm 7+ (auditReportVersion 2)
    for pkg_name, entry in (report.get("vulnerabilities") or {}).items():
        if not isinstance(entry, dict):
            continue
        for via in entry.get("via") or []:
            # Strings mean "vulnerable through another package"; that
            # package carries the advisory itself.
            if not isinstance(via, dict):
                continue
            name = via.get("name") or pkg_name
            advisory = _advisory_id(via)
            key = (name, advisory)
            if key in seen:
                continue
            seen.add(key)
            vulns.append(Vulnerability(
                package_name=name,
                severity=via.get("severity") or entry.get("severity"),
                cvss_score=_cvss(via.get("cvss")),
                advisory_id=advisory,
                affected_version_range=via.get("range") or entry.get("range") or "",
                title=via.get("title") or "",
                url=via.get("url") or "",
            ))

    # npm 6 legacy format
    for adv_id, adv in (report.get("advisories") or {}).items():
        if not isinstance(adv, dict):
            continue
        name = adv.get("module_name") or ""
        advisory = adv.get("github_advisory_id") or (adv.get("cves") or [None])[0] or f"npm-{adv_id}"
        key = (name, advisory)
        if key in seen:
            continue
        seen.add(key)
        vulns.append(Vulnerability(
            package_name=name,
            severity=adv.get("severity"),
            cvss_score=_cvss(adv.get("cvss")),
            advisory_id=str(advisory),
            affected_version_range=adv.get("vulnerable_versions") or "",
            title=adv.get("title") or "",
            url=adv.get("url") or "",
        ))

    return vulns
