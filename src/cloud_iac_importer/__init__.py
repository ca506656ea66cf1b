"""
Cloud IaC Importer

Imports existing cloud resources into Terraform configuration or state,
closing the result over the references between resources.
"""

__version__ = "1.0.0"

from .adapters import ProviderAdapter, RawResource, SnapshotAdapter
from .filters import FilterEngine, FilterSpec
from .graph import GraphBuilder, ResourceGraph
from .orchestrator import ImportOrchestrator, ImportReport, RunContext
from .registry import ResourceRegistry, default_registry
from .resolver import ClosureResolver
from .writer import Writer

__all__ = [
    "ProviderAdapter",
    "RawResource",
    "SnapshotAdapter",
    "FilterEngine",
    "FilterSpec",
    "GraphBuilder",
    "ResourceGraph",
    "ImportOrchestrator",
    "ImportReport",
    "RunContext",
    "ResourceRegistry",
    "default_registry",
    "ClosureResolver",
    "Writer"
]
