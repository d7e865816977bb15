# depwatch/collectors/python.py
"""
Python collector: pinned requirements + pip-audit.

Inventory:
    Pinned `name==version` lines from the project's requirements file(s)
    (default: requirements.txt). Latest version, versions behind and release
    age come from the PyPI JSON API.

Audit:
    pip-audit -r <file> --format json --progress-spinner off --disable-pip --no-deps

    `--disable-pip --no-deps` audits exactly the pinned set without building
    a virtualenv. Set options.extra["resolve"] = True to let pip-audit
    resolve transitive dependencies instead (slower, needs network).

    pip-audit exits 1 when it finds something and still prints JSON:
        {"dependencies": [{"name": "flask", "version": "0.5",
                           "vulns": [{"id": "PYSEC-2019-179", "aliases": ["GHSA-..."],
                                      "fix_versions": ["1.0"], "description": "..."}]}]}

    pip-audit does not report severity. The advisory is looked up on OSV
    (itself and its aliases); if nothing is found it is coerced to "medium".

Profile options (options.extra):
    requirements_files: list : relative paths (default: ["requirements.txt"])
    resolve:            bool : let pip-audit resolve dependencies (default: False)
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from depwatch.collectors.base import BaseCollector, ToolRunner, parse_json_output
from depwatch.errors import ParseError
from depwatch.models import Dependency, ScanOptions, Vulnerability

logger = logging.getLogger(__name__)

DEFAULT_REQUIREMENTS = ["requirements.txt"]

_PIN_RE = re.compile(
    r"^\s*(?P<name>[A-Za-z0-9][A-Za-z0-9._-]*)\s*(?:\[[^\]]*\])?\s*==(?!=)\s*(?P<version>[^\s;#,]+)"
)


def normalize_name(name: str) -> str:
    """PEP 503 normalization."""
    return re.sub(r"[-_.]+", "-", name).lower()


def parse_requirements(text: str) -> Tuple[Dict[str, str], List[str]]:
    """
    Return ({normalized name: version} for pinned lines, [unpinned lines]).

    Options (-r, -e, --hash...), comments and blank lines are skipped.
    Continuation lines are joined first.
    """
    pinned: Dict[str, str] = {}
    unpinned: List[str] = []
    joined = text.replace("\\\n", " ")
    for raw in joined.splitlines():
        line = raw.split(" #", 1)[0].strip()
        if not line or line.startswith("#") or line.startswith("-"):
            continue
        m = _PIN_RE.match(line)
        if m and "*" not in m.group("version"):
            pinned[normalize_name(m.group("name"))] = m.group("version")
        else:
            unpinned.append(line)
    return pinned, unpinned


class PythonCollector(BaseCollector):

    @property
    def ecosystem(self) -> str:
        return "python"

    @property
    def binaries(self) -> List[str]:
        return ["pip-audit"]

    def _requirement_files(self, path: Path, options: ScanOptions) -> List[Path]:
        names = options.extra.get("requirements_files") or DEFAULT_REQUIREMENTS
        files = [path / n for n in names if (path / n).is_file()]
        if not files:
            raise ParseError(f"no requirements file found in {path} (looked for {', '.join(names)})")
        return files

    def _pins(self, path: Path, options: ScanOptions) -> Dict[str, str]:
        pins: Dict[str, str] = {}
        for f in self._requirement_files(path, options):
            try:
                text = f.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                raise ParseError(f"cannot read {f}: {e}")
            pinned, unpinned = parse_requirements(text)
            if unpinned:
                logger.info(f"{f}: {len(unpinned)} unpinned requirement(s) skipped")
            pins.update(pinned)
        return pins

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------

    def inventory(self, path: Path, options: ScanOptions, runner: ToolRunner) -> List[Dependency]:
        pins = self._pins(path, options)

        deps: List[Dependency] = []
        for name in sorted(pins):
            current = pins[name]
            info = None
            if options.registry_lookups and self.registry_client is not None:
                info = self.registry_lookup(runner, "pypi", name)

            if info is None or not info.latest:
                deps.append(Dependency(package_name=name, current_version=current))
                continue

            deps.append(Dependency(
                package_name=name,
                current_version=current,
                latest_version=info.latest,
                versions_behind=info.versions_behind(current),
                last_updated_days=info.days_since_release(current),
            ))

        logger.info(f"python inventory for {path}: {len(deps)} pinned packages")
        return deps

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def audit(self, path: Path, options: ScanOptions, runner: ToolRunner) -> List[Vulnerability]:
        vulns: List[Vulnerability] = []
        seen = set()
        for req in self._requirement_files(path, options):
            cmd = [
                "pip-audit",
                "-r", str(req),
                "--format", "json",
                "--progress-spinner", "off",
            ]
            if not options.extra.get("resolve"):
                cmd.extend(["--disable-pip", "--no-deps"])

            out = runner.run(cmd, cwd=path, ok_codes=(0, 1), allow_output_on_failure=True)
            report = parse_json_output(out.stdout, "pip-audit")
            for v in parse_pip_audit(report, severity_lookup=self._severity_lookup(options, runner)):
                key = (v.package_name, v.advisory_id)
                if key not in seen:
                    seen.add(key)
                    vulns.append(v)

        logger.info(f"pip-audit for {path}: {len(vulns)} advisories")
        return vulns

    def _severity_lookup(self, options: ScanOptions, runner: ToolRunner):
        if options.registry_lookups and self.registry_client is not None:
            return lambda ids: self.registry_lookup(runner, "osv_severity", ids)
        return None


def parse_pip_audit(report, severity_lookup=None) -> List[Vulnerability]:
    """Vulnerabilities from a pip-audit JSON report (old list form or current object form)."""
    if isinstance(report, dict):
        entries = report.get("dependencies")
    else:
        entries = report
    if not isinstance(entries, list):
        raise ParseError("pip-audit output has no 'dependencies' list")

    vulns: List[Vulnerability] = []
    for dep in entries:
        if not isinstance(dep, dict):
            continue
        name = normalize_name(str(dep.get("name") or ""))
        version = str(dep.get("version") or "")
        for adv in dep.get("vulns") or []:
            if not isinstance(adv, dict):
                continue
            advisory_id = str(adv.get("id") or "unknown")
            aliases = [a for a in (adv.get("aliases") or []) if isinstance(a, str)]

            severity: Optional[str] = None
            cvss: Optional[float] = None
            if severity_lookup is not None:
                found = severity_lookup([advisory_id, *aliases])
                if found:
                    severity, cvss = found

            fixes = [f for f in (adv.get("fix_versions") or []) if isinstance(f, str)]
            affected = f"=={version}" if version else ""
            if fixes:
                affected = f"<{fixes[0]}"

            vulns.append(Vulnerability(
                package_name=name,
                severity=severity,
                cvss_score=cvss,
                advisory_id=advisory_id,
                affected_version_range=affected,
                title=(adv.get("description") or "").strip().split("\n", 1)[0][:200],
                url=f"https://osv.dev/vulnerability/{advisory_id}",
            ))
    return vulns
