#!/usr/bin/env python3
"""
Discovery Engine

This module lists every requested resource type through the provider
adapter on a bounded worker pool and applies the filter engine to the
result. Failures are isolated per resource type: one type failing to list
is recorded and the others continue. Fatal provider errors cancel the
remaining work and propagate.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List

from .adapters import RawResource
from .errors import DiscoveryError, FatalDiscoveryError, ImportCancelledError
from .filters import FilterEngine
from .registry import ResourceRegistry

logger = logging.getLogger(__name__)


@dataclass
class DiscoveryResult:
    """Raw resources found, and what the filter kept"""
    discovered: List[RawResource] = field(default_factory=list)
    included: List[RawResource] = field(default_factory=list)
    filtered_out: int = 0
    errors: Dict[str, List[str]] = field(default_factory=dict)
    per_type: Dict[str, Dict[str, int]] = field(default_factory=dict)
    cancelled: bool = False

    def add_error(self, resource_type: str, message: str):
        self.errors.setdefault(resource_type, []).append(message)


class DiscoveryEngine:
    """
    Resource discovery across registry types

    Types are listed in parallel, at most `ctx.max_workers` at a time, and
    every adapter call additionally holds the RunContext limiter.
    """

    def __init__(self, registry: ResourceRegistry, filter_engine: FilterEngine):
        self.registry = registry
        self.filter_engine = filter_engine
        self._lock = threading.Lock()

    def discover(self, ctx) -> DiscoveryResult:
        """
        Discover and filter resources

        Args:
            ctx: RunContext carrying the adapter, filter spec and cancellation

        Returns:
            DiscoveryResult; `included` is sorted by (type, provider id)

        Raises:
            FatalDiscoveryError: If the account cannot be used at all
        """
        result = DiscoveryResult()
        types = self.filter_engine.types_to_discover(self.registry)
        targets = self.filter_engine.targets_by_type()

        logger.info(f"Discovering {len(types)} resource types and {sum(len(v) for v in targets.values())} targets")

        with ThreadPoolExecutor(max_workers=ctx.max_workers) as executor:
            futures = {}
            for resource_type in types:
                futures[executor.submit(self._discover_type, ctx, resource_type, result)] = resource_type
            for resource_type, provider_ids in targets.items():
                futures[executor.submit(self._fetch_targets, ctx, resource_type, provider_ids, result)] = resource_type

            for future in as_completed(futures):
                resource_type = futures[future]
                try:
                    future.result()
                except FatalDiscoveryError:
                    for pending in futures:
                        pending.cancel()
                    raise
                except ImportCancelledError:
                    result.cancelled = True
                    logger.warning(f"Discovery of {resource_type} cancelled")
                except DiscoveryError as e:
                    logger.warning(f"Failed to discover {resource_type}: {str(e)}")
                    with self._lock:
                        result.add_error(resource_type, str(e))
                except Exception as e:
                    logger.error(f"Unexpected error discovering {resource_type}: {str(e)}")
                    with self._lock:
                        result.add_error(resource_type, str(e))

        result.discovered.sort(key=lambda r: (r.resource_type, r.provider_id))
        result.included.sort(key=lambda r: (r.resource_type, r.provider_id))

        logger.info(
            f"Discovery complete: {len(result.discovered)} discovered, "
            f"{len(result.included)} included, {result.filtered_out} filtered out"
        )
        return result

    def _discover_type(self, ctx, resource_type: str, result: DiscoveryResult):
        ctx.check_cancelled()
        logger.debug(f"Listing {resource_type}")
        with ctx.limited():
            resources = ctx.adapter.list_resources(ctx, resource_type, self.filter_engine.spec)
        self._record(result, resource_type, resources, targeted=False)

    def _fetch_targets(self, ctx, resource_type: str, provider_ids: List[str], result: DiscoveryResult):
        resources = []
        for provider_id in provider_ids:
            ctx.check_cancelled()
            try:
                with ctx.limited():
                    resources.append(ctx.adapter.get_resource(ctx, resource_type, provider_id))
            except DiscoveryError as e:
                logger.warning(f"Failed to fetch target {resource_type}.{provider_id}: {str(e)}")
                with self._lock:
                    result.add_error(resource_type, str(e))
        self._record(result, resource_type, resources, targeted=True)

    def _record(self, result: DiscoveryResult, resource_type: str, resources: List[RawResource], targeted: bool):
        included = [
            raw for raw in resources
            if targeted or self.filter_engine.should_include(raw.resource_type, raw.tags)
        ]
        with self._lock:
            result.discovered.extend(resources)
            result.included.extend(included)
            result.filtered_out += len(resources) - len(included)
            stats = result.per_type.setdefault(resource_type, {'discovered': 0, 'included': 0})
            stats['discovered'] += len(resources)
            stats['included'] += len(included)
        logger.debug(f"{resource_type}: {len(resources)} discovered, {len(included)} included")
