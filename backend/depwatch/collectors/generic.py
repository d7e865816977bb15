# depwatch/collectors/generic.py
"""
Ad-hoc collector for projects that are not in the service registry.

The (path, ecosystem) pair is supplied at call time (POST /scan/custom).
Both are validated the same way the registry validates its entries. The
scan itself is delegated to the ecosystem's regular collector.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional

from depwatch.collectors.base import BaseCollector, ToolRunner
from depwatch.errors import BadRequest
from depwatch.models import CollectorOutcome, ScanOptions
from depwatch.registry import check_project_path, normalize_ecosystem

logger = logging.getLogger(__name__)


class GenericCollector:

    def __init__(self, collectors: Dict[str, BaseCollector]):
        self._collectors = collectors

    def resolve(self, path, ecosystem) -> "tuple[Path, BaseCollector]":
        """Validate the pair. Raises BadRequest."""
        try:
            tag = normalize_ecosystem(ecosystem)
        except ValueError as e:
            raise BadRequest(str(e))
        collector = self._collectors.get(tag)
        if collector is None:
            raise BadRequest(f"no collector registered for ecosystem '{tag}'")
        try:
            project = check_project_path(path)
        except ValueError as e:
            raise BadRequest(f"project_path: {e}")
        return project, collector

    def scan_for(
        self,
        path,
        ecosystem,
        options: Optional[ScanOptions] = None,
        runner: Optional[ToolRunner] = None,
    ) -> CollectorOutcome:
        project, collector = self.resolve(path, ecosystem)
        logger.info(f"Ad-hoc {collector.ecosystem} scan of {project}")
        return collector.run(project, options, runner)
