# depwatch/collectors/__init__.py
"""
Ecosystem collectors.
Each collector scans one project with its ecosystem's own tooling.
Collectors never raise past run(): failures come back as classified ScanErrors.
"""
from depwatch.collectors.base import BaseCollector, ToolRunner
from depwatch.collectors.generic import GenericCollector
from depwatch.collectors.golang import GoCollector
from depwatch.collectors.nodejs import NodeCollector
from depwatch.collectors.python import PythonCollector
from depwatch.collectors.registry_client import PackageRegistryClient

# Registry of all available collectors, keyed by ecosystem tag.
# The orchestrator dispatches on ServiceDescriptor.ecosystem through this.
ALL_COLLECTORS = {
    "nodejs": NodeCollector,
    "python": PythonCollector,
    "go": GoCollector,
}


def build_collectors(registry_client=None):
    """One shared instance per ecosystem."""
    return {tag: cls(registry_client=registry_client) for tag, cls in ALL_COLLECTORS.items()}


__all__ = [
    "BaseCollector", "ToolRunner", "GenericCollector",
    "NodeCollector", "PythonCollector", "GoCollector",
    "PackageRegistryClient",
    "ALL_COLLECTORS", "build_collectors",
]
