#!/usr/bin/env python3
"""
Import Orchestrator

This module coordinates one import run: verify the provider account,
discover and filter resources, build the graph, close it over its
references and serialize it. Everything a run needs travels in a
RunContext; the outcome is summarized in an ImportReport.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, TextIO

import yaml
from tabulate import tabulate

from .adapters import ProviderAdapter, SnapshotAdapter
from .aws import AWSAdapter
from .config import ToolConfig
from .discovery import DiscoveryEngine
from .errors import (
    ConfigurationError,
    FatalDiscoveryError,
    ImportCancelledError,
    SerializationError,
    UnsupportedResourceTypeError,
)
from .filters import FilterEngine, FilterSpec
from .graph import UNRESOLVED, GraphBuilder, ResourceGraph
from .registry import ResourceRegistry, default_registry
from .resolver import ClosureResolver
from .writer import MODE_HCL, MODES, Writer, is_identifier

logger = logging.getLogger(__name__)


class RunContext:
    """
    Per-run state passed explicitly through discovery, resolution and writing

    Holds the provider adapter, the filter spec, the limiter capping
    in-flight adapter calls and the cancellation signal (explicit or by
    deadline).
    """

    def __init__(self,
                 adapter: ProviderAdapter,
                 filter_spec: Optional[FilterSpec] = None,
                 max_workers: int = 10,
                 timeout: Optional[float] = None):
        if max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1")
        self.adapter = adapter
        self.filter_spec = filter_spec or FilterSpec()
        self.max_workers = max_workers
        self.deadline = time.monotonic() + timeout if timeout else None
        self._limiter = threading.BoundedSemaphore(max_workers)
        self._cancel_event = threading.Event()

    @property
    def cancelled(self) -> bool:
        if not self._cancel_event.is_set() and self.deadline is not None and time.monotonic() >= self.deadline:
            logger.warning("Import deadline exceeded")
            self._cancel_event.set()
        return self._cancel_event.is_set()

    def cancel(self):
        self._cancel_event.set()

    def check_cancelled(self):
        if self.cancelled:
            raise ImportCancelledError("Import cancelled")

    def limited(self):
        """Context manager holding one slot of the adapter call limiter"""
        return self._limiter


@dataclass
class ImportReport:
    """Outcome of one import run"""
    discovered: int = 0
    filtered_out: int = 0
    included: int = 0
    dependency_fetched: int = 0
    unresolved: int = 0
    demoted: int = 0
    errors: Dict[str, List[str]] = field(default_factory=dict)
    per_type: Dict[str, Dict[str, int]] = field(default_factory=dict)
    build_errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    write_error: Optional[str] = None
    fatal_error: Optional[str] = None
    cancelled: bool = False
    mode: str = MODE_HCL
    modes: List[str] = field(default_factory=list)
    documents: Dict[str, str] = field(default_factory=dict, repr=False)
    start_time: str = ''
    duration: float = 0.0
    graph: Optional[ResourceGraph] = field(default=None, repr=False)

    @property
    def success(self) -> bool:
        return not (self.fatal_error or self.write_error or self.cancelled)

    def add_error(self, resource_type: str, message: str):
        self.errors.setdefault(resource_type, []).append(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'start_time': self.start_time,
            'duration': round(self.duration, 3),
            'mode': self.mode,
            'modes': self.modes,
            'counts': {
                'discovered': self.discovered,
                'filtered_out': self.filtered_out,
                'included': self.included,
                'dependency_fetched': self.dependency_fetched,
                'unresolved': self.unresolved,
                'demoted': self.demoted,
            },
            'per_type': self.per_type,
            'errors': self.errors,
            'build_errors': self.build_errors,
            'warnings': self.warnings,
            'write_error': self.write_error,
            'fatal_error': self.fatal_error,
            'cancelled': self.cancelled,
        }

    def summary_table(self) -> str:
        """Per-type counts as a grid table"""
        rows = []
        for resource_type in sorted(set(self.per_type) | set(self.errors)):
            stats = self.per_type.get(resource_type, {})
            rows.append([
                resource_type,
                stats.get('discovered', 0),
                stats.get('included', 0),
                stats.get('dependency_fetched', 0),
                len(self.errors.get(resource_type, [])),
            ])
        rows.append(['TOTAL', self.discovered, self.included, self.dependency_fetched,
                     sum(len(v) for v in self.errors.values())])
        return tabulate(rows, headers=['Resource Type', 'Discovered', 'Included', 'Dependencies', 'Errors'],
                        tablefmt='grid')

    def export_report(self, output_file: str, format: str = 'json'):
        """Write the report as JSON or YAML"""
        data = self.to_dict()
        with open(output_file, 'w') as f:
            if format.lower() == 'yaml':
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
            elif format.lower() == 'json':
                json.dump(data, f, indent=2, default=str)
            else:
                raise ValueError(f"Unsupported format: {format}")
        logger.info(f"Import report exported to {output_file}")


def build_adapter(config: ToolConfig, registry: ResourceRegistry) -> ProviderAdapter:
    """Select the provider adapter named in the configuration"""
    discovery = config.discovery
    if discovery.provider == 'snapshot':
        if not discovery.snapshot_file:
            raise ConfigurationError("discovery.snapshot_file is required for the snapshot provider")
        return SnapshotAdapter.from_file(registry, discovery.snapshot_file)
    if discovery.provider == 'aws':
        return AWSAdapter(registry, region=discovery.region, profile=discovery.profile)
    raise ConfigurationError(f"Unsupported provider: {discovery.provider}")


class ImportOrchestrator:
    """
    Main import controller

    Runs verify, discover, build, resolve and write in sequence. Per-type
    and per-resource failures end up in the report; fatal provider errors
    are recorded and re-raised.
    """

    def __init__(self,
                 registry: Optional[ResourceRegistry] = None,
                 writer: Optional[Writer] = None,
                 fetch_dependencies: bool = True):
        """
        Initialize the orchestrator

        Args:
            registry: Resource types to import (defaults to the built-in catalog)
            writer: Serializer for the final graph
            fetch_dependencies: Fetch referenced resources that were not discovered
        """
        self.registry = registry if registry is not None else default_registry()
        self.writer = writer or Writer()
        self.builder = GraphBuilder(self.registry)
        self.resolver = ClosureResolver(self.builder, fetch_dependencies=fetch_dependencies)

    @classmethod
    def from_config(cls, config: ToolConfig, adapter: ProviderAdapter,
                    registry: Optional[ResourceRegistry] = None,
                    module_variables: Optional[Dict[str, List[str]]] = None) -> 'ImportOrchestrator':
        output = config.output
        writer = Writer(
            interpolate=output.interpolate,
            provider_block=output.provider_block,
            provider_name=adapter.name,
            provider_config=adapter.provider_block(),
            terraform_version=output.terraform_version,
            provider_version=output.provider_version,
            module_variables=module_variables,
        )
        return cls(registry=registry if registry is not None else adapter.registry, writer=writer,
                   fetch_dependencies=config.discovery.fetch_dependencies)

    def run(self, ctx: RunContext, mode: str = MODE_HCL, out: Optional[TextIO] = None,
            split: bool = False, module: Optional[str] = None,
            outputs: Optional[Dict[str, TextIO]] = None) -> ImportReport:
        """
        Run a complete import

        Every requested document is rendered from the same resolved graph
        before any of them is written.

        Args:
            ctx: RunContext for this run
            mode: 'hcl' or 'state'
            out: Stream receiving the serialized output
            split: Render HCL per category into `report.documents` instead of `out`
            module: Render HCL as a module of this name into `report.documents`
            outputs: Additional mode -> stream pairs, e.g. state next to HCL

        Returns:
            ImportReport; partial when the run was cancelled

        Raises:
            FatalDiscoveryError: Authentication failure or unreachable provider
            UnsupportedResourceTypeError: Filters or module variables name an unknown resource type
        """
        streams = dict(outputs or {})
        if out is not None:
            if mode in streams:
                raise ConfigurationError(f"Output mode {mode} requested twice")
            streams[mode] = out
        for requested in [mode] + list(streams):
            if requested not in MODES:
                raise ConfigurationError(f"Unsupported output mode: {requested}")
        if split and module:
            raise ConfigurationError("Split and module output are mutually exclusive")
        if module is not None and not is_identifier(module):
            raise ConfigurationError(f"Invalid module name: {module!r}")
        for resource_type in sorted(self.writer.module_variables):
            if not self.registry.has(resource_type):
                raise UnsupportedResourceTypeError(resource_type, "module variables")

        modes = sorted(set(streams) | ({MODE_HCL} if split or module else set()))
        started = time.time()
        report = ImportReport(mode=mode, modes=modes or [mode], start_time=time.strftime('%Y-%m-%d %H:%M:%S'))
        logger.info(f"Starting import ({', '.join(report.modes)})")

        filter_engine = FilterEngine(ctx.filter_spec)
        filter_engine.validate(self.registry)

        try:
            self._run(ctx, filter_engine, streams, split, module, report)
        except FatalDiscoveryError as e:
            report.fatal_error = str(e)
            logger.error(f"Import aborted: {str(e)}")
            raise
        except ImportCancelledError as e:
            report.cancelled = True
            logger.warning(f"Import cancelled: {str(e)}")
        finally:
            report.duration = time.time() - started

        logger.info(
            f"Import finished in {report.duration:.2f}s: {report.included} included, "
            f"{report.dependency_fetched} dependencies fetched, {report.unresolved} unresolved"
        )
        return report

    def _run(self, ctx: RunContext, filter_engine: FilterEngine, streams: Dict[str, TextIO],
             split: bool, module: Optional[str], report: ImportReport):
        # Phase 1: Verify
        ctx.adapter.verify(ctx)

        # Phase 2: Discovery
        discovery = DiscoveryEngine(self.registry, filter_engine).discover(ctx)
        report.discovered = len(discovery.discovered)
        report.filtered_out = discovery.filtered_out
        report.included = len(discovery.included)
        report.per_type = {k: dict(v) for k, v in discovery.per_type.items()}
        for resource_type, messages in discovery.errors.items():
            for message in messages:
                report.add_error(resource_type, message)
                report.warnings.append(f"{resource_type}: {message}")

        if discovery.cancelled or ctx.cancelled:
            raise ImportCancelledError("Import cancelled during discovery")

        # Phase 3: Build
        graph = self.builder.build(discovery.included)
        report.graph = graph

        # Phase 4: Resolve
        resolution = self.resolver.resolve(graph, ctx)
        report.dependency_fetched = len(resolution.fetched)
        report.unresolved = len(resolution.unresolved)
        report.demoted = len(resolution.demoted)

        for node_id in resolution.fetched:
            stats = report.per_type.setdefault(node_id.resource_type, {'discovered': 0, 'included': 0})
            stats['dependency_fetched'] = stats.get('dependency_fetched', 0) + 1

        for error in graph.build_errors:
            report.build_errors.append(str(error))
            report.add_error(error.resource_type, f"{error.provider_id}: {error.reason}")

        for target, reason in sorted(resolution.unresolved.items()):
            sources = sorted({str(ref.source) for ref in graph.references()
                              if ref.target == target and ref.status == UNRESOLVED})
            message = f"unresolved reference {target} from {', '.join(sources) or 'nothing'}: {reason}"
            report.add_error(target.resource_type, message)
            report.warnings.append(message)

        if resolution.cancelled or ctx.cancelled:
            raise ImportCancelledError("Import cancelled during closure resolution")

        # Phase 5: Write
        try:
            rendered = {mode: self.writer.render(graph, mode) for mode in sorted(streams)}
            if module:
                report.documents = self.writer.write_module(graph, module)
            elif split:
                report.documents = self.writer.write_split(graph)
            for mode, content in rendered.items():
                streams[mode].write(content)
                logger.info(f"Wrote {len(graph)} resources as {mode}")
        except SerializationError as e:
            report.write_error = str(e)
            logger.error(f"Failed to write output: {str(e)}")
