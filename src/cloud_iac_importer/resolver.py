#!/usr/bin/env python3
"""
Deduplication & Closure Resolver

Closes the resource graph over its references. Targets that were not
discovered (filtered out, or never listed) are fetched one by one through
the provider adapter and inserted as dependency-only nodes; their own
references are closed in the following round.

Targets that cannot be fetched are recorded as unresolved instead of
failing the run. Once the closure is complete, reference cycles are broken
by demoting edges so the emission graph becomes a DAG, and the graph is
frozen.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Tuple, Union

import networkx as nx

from .adapters import RawResource
from .errors import DiscoveryError, FatalDiscoveryError, ImportCancelledError
from .graph import PENDING, RESOLVED, GraphBuilder, NodeID, Reference, ResourceGraph

logger = logging.getLogger(__name__)

FetchOutcome = Union[RawResource, Exception]


@dataclass
class ResolutionResult:
    """What the resolver added, gave up on and demoted"""
    fetched: List[NodeID] = field(default_factory=list)
    unresolved: Dict[NodeID, str] = field(default_factory=dict)
    demoted: List[Reference] = field(default_factory=list)
    rounds: int = 0
    cancelled: bool = False


class ClosureResolver:
    """Fetches missing reference targets and breaks reference cycles"""

    def __init__(self, builder: GraphBuilder, fetch_dependencies: bool = True):
        """
        Initialize the resolver

        Args:
            builder: Builder used to insert fetched dependencies
            fetch_dependencies: When False every missing target becomes unresolved
        """
        self.builder = builder
        self.fetch_dependencies = fetch_dependencies

    def resolve(self, graph: ResourceGraph, ctx) -> ResolutionResult:
        """
        Close the graph over its references and freeze it

        Args:
            graph: Graph produced by the builder
            ctx: RunContext carrying the adapter, limiter and cancellation

        Returns:
            ResolutionResult describing fetched, unresolved and demoted items

        Raises:
            FatalDiscoveryError: If the account becomes unusable while fetching
        """
        result = ResolutionResult()
        visited = set()

        while True:
            missing = []
            for target in graph.missing_targets():
                if target in visited:
                    # Failed in an earlier round; new references share its reason
                    graph.mark_unresolved(target, result.unresolved.get(target, "target could not be resolved"))
                else:
                    missing.append(target)
            if not missing:
                break

            if not self.fetch_dependencies:
                self._give_up(graph, result, missing, "dependency fetching disabled")
                break
            if ctx.cancelled:
                result.cancelled = True
                self._give_up(graph, result, missing, "run cancelled")
                break

            result.rounds += 1
            visited.update(missing)
            logger.info(f"Closure round {result.rounds}: fetching {len(missing)} missing dependencies")
            self._fetch_round(graph, ctx, missing, result)

        # Anything still pending points at an existing node
        for ref in graph.references():
            if ref.status == PENDING:
                if ref.target in graph:
                    ref.status = RESOLVED
                else:
                    reason = graph.mark_unresolved(ref.target, "target could not be resolved")
                    result.unresolved.setdefault(ref.target, reason)

        result.demoted = self._demote_cycles(graph)
        graph.freeze()

        logger.info(
            f"Closure complete: {len(result.fetched)} dependencies fetched, "
            f"{len(result.unresolved)} unresolved targets, {len(result.demoted)} references demoted"
        )
        return result

    def _give_up(self, graph: ResourceGraph, result: ResolutionResult, targets: List[NodeID], reason: str):
        for target in targets:
            result.unresolved[target] = graph.mark_unresolved(target, reason)

    def _fetch_round(self, graph: ResourceGraph, ctx, targets: List[NodeID], result: ResolutionResult):
        registry = self.builder.registry
        fetchable = []
        for target in targets:
            if registry.has(target.resource_type):
                fetchable.append(target)
            else:
                self._give_up(graph, result, [target], f"unsupported resource type {target.resource_type}")

        outcomes = self._fetch_all(ctx, fetchable)

        fetched = []
        for target in fetchable:
            outcome = outcomes[target]
            if isinstance(outcome, Exception):
                logger.warning(f"Could not fetch dependency {target}: {outcome}")
                self._give_up(graph, result, [target], str(outcome))
            else:
                fetched.append(outcome)

        added = self.builder.extend(graph, fetched, dependency_only=True)
        result.fetched.extend(added)

        errors = {(e.resource_type, e.provider_id): e.reason for e in graph.build_errors}
        for target in fetchable:
            if isinstance(outcomes[target], Exception) or target in graph:
                continue
            reason = errors.get(tuple(target), f"fetched resource does not match {target}")
            self._give_up(graph, result, [target], reason)

    def _fetch_all(self, ctx, targets: List[NodeID]) -> Dict[NodeID, FetchOutcome]:
        """Run one round of Get calls on the bounded pool"""
        outcomes: Dict[NodeID, FetchOutcome] = {}
        if not targets:
            return outcomes

        fatal: List[Tuple[NodeID, FatalDiscoveryError]] = []
        with ThreadPoolExecutor(max_workers=ctx.max_workers) as executor:
            futures = {executor.submit(self._fetch_one, ctx, target): target for target in targets}

            for future in as_completed(futures):
                target = futures[future]
                try:
                    outcomes[target] = future.result()
                except FatalDiscoveryError as e:
                    fatal.append((target, e))
                    outcomes[target] = e
                except (DiscoveryError, ImportCancelledError) as e:
                    outcomes[target] = e
                except Exception as e:
                    logger.error(f"Unexpected error fetching {target}: {str(e)}")
                    outcomes[target] = e

        if fatal:
            raise min(fatal, key=lambda item: item[0])[1]
        return outcomes

    def _fetch_one(self, ctx, target: NodeID) -> RawResource:
        ctx.check_cancelled()
        with ctx.limited():
            return ctx.adapter.get_resource(ctx, target.resource_type, target.provider_id)

    def _demote_cycles(self, graph: ResourceGraph) -> List[Reference]:
        """
        Demote references until the ordering graph is acyclic

        Self-references are always demoted. For every strongly connected
        component with more than one node the cheapest edge is demoted:
        edges with fewer hard references first, then lexical (source,
        target) order. Components are recomputed after each pass.
        """
        demoted = []
        for ref in graph.references():
            if ref.status == RESOLVED and ref.is_self:
                ref.demoted = True
                demoted.append(ref)

        while True:
            ordering = nx.DiGraph()
            ordering.add_nodes_from(sorted(graph.nodes))
            for ref in graph.references():
                if ref.orders:
                    if not ordering.has_edge(ref.source, ref.target):
                        ordering.add_edge(ref.source, ref.target, refs=[])
                    ordering.edges[ref.source, ref.target]['refs'].append(ref)

            components = [c for c in nx.strongly_connected_components(ordering) if len(c) > 1]
            if not components:
                break

            for component in sorted(components, key=min):
                candidates = [
                    (sum(1 for r in data['refs'] if not r.soft), u, v, data['refs'])
                    for u, v, data in ordering.edges(data=True)
                    if u in component and v in component
                ]
                hard_count, source, target, refs = min(candidates, key=lambda c: c[:3])
                logger.info(f"Breaking reference cycle by demoting {source} -> {target}")
                for ref in refs:
                    ref.demoted = True
                    demoted.append(ref)

        return demoted
