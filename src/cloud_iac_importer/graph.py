#!/usr/bin/env python3
"""
Resource Graph Builder

This module turns raw provider resources into graph nodes: attributes are
normalized through the registry extractors, reference fields become
candidate edges and every node receives a deterministic Terraform local
name.

Edges are recorded whether or not their target is present; the closure
resolver decides afterwards which ones can be satisfied.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, NamedTuple, Optional, Set, Tuple

from .adapters import RawResource
from .errors import NormalizationError, UnsupportedResourceTypeError
from .registry import AttributePath, ResourceRegistry

logger = logging.getLogger(__name__)

PENDING = 'pending'
RESOLVED = 'resolved'
UNRESOLVED = 'unresolved'


class NodeID(NamedTuple):
    """Graph key: resource type plus provider id"""
    resource_type: str
    provider_id: str

    def __str__(self):
        return f"{self.resource_type}.{self.provider_id}"


@dataclass
class Reference:
    """Edge from an attribute of `source` to the node `target`"""
    source: NodeID
    target: NodeID
    path: AttributePath
    value: str
    target_attribute: str = 'id'
    soft: bool = False
    status: str = PENDING
    reason: Optional[str] = None
    demoted: bool = False

    @property
    def is_self(self) -> bool:
        return self.source == self.target

    @property
    def orders(self) -> bool:
        """Whether this edge constrains emission order"""
        return self.status == RESOLVED and not self.demoted and not self.is_self

    def sort_key(self) -> Tuple:
        return (self.source, self.target, tuple(str(p) for p in self.path))


@dataclass
class GraphNode:
    """Canonical intermediate form of one resource"""
    id: NodeID
    terraform_type: str
    local_name: str
    identity: str
    attributes: Dict[str, Any]
    category: str
    outgoing_refs: List[Reference] = field(default_factory=list)
    dependency_only: bool = False

    @property
    def address(self) -> str:
        return f"{self.terraform_type}.{self.local_name}"


@dataclass
class BuildError:
    """A raw resource that could not become a node"""
    resource_type: str
    provider_id: str
    reason: str

    def __str__(self):
        return f"{self.resource_type}.{self.provider_id}: {self.reason}"


class ResourceGraph:
    """Nodes keyed by NodeID plus the bookkeeping of the closure"""

    def __init__(self):
        self.nodes: Dict[NodeID, GraphNode] = {}
        self.unresolved: Dict[NodeID, str] = {}
        self.build_errors: List[BuildError] = []
        self.frozen = False
        self._names: Dict[str, Set[str]] = {}

    def __contains__(self, node_id: NodeID) -> bool:
        return node_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def get(self, node_id: NodeID) -> Optional[GraphNode]:
        return self.nodes.get(node_id)

    def add_node(self, node: GraphNode):
        self._check_mutable()
        self.nodes[node.id] = node

    def sorted_nodes(self) -> List[GraphNode]:
        return [self.nodes[node_id] for node_id in sorted(self.nodes)]

    def references(self) -> Iterator[Reference]:
        for node in self.sorted_nodes():
            yield from node.outgoing_refs

    def missing_targets(self) -> List[NodeID]:
        """Targets of pending references that are not nodes, sorted"""
        return sorted({
            ref.target for ref in self.references()
            if ref.status == PENDING and ref.target not in self.nodes
        })

    def mark_unresolved(self, target: NodeID, reason: str) -> str:
        """
        Mark every pending reference to `target` unresolved

        The first reason recorded for a target is kept; later calls reuse it.

        Returns:
            The reason the references now carry
        """
        self._check_mutable()
        reason = self.unresolved.setdefault(target, reason)
        for ref in self.references():
            if ref.target == target and ref.status == PENDING:
                ref.status = UNRESOLVED
                ref.reason = reason
        return reason

    def claim_name(self, resource_type: str, provider_id: str) -> str:
        """
        Reserve a unique local name for a resource of `resource_type`

        The base name is the sanitized provider id; collisions inside the
        same type get `_2`, `_3`, ... appended until unique.
        """
        taken = self._names.setdefault(resource_type, set())
        base = sanitize_name(provider_id)
        name = base
        suffix = 2
        while name in taken:
            name = f"{base}_{suffix}"
            suffix += 1
        taken.add(name)
        return name

    def freeze(self):
        self.frozen = True

    def _check_mutable(self):
        if self.frozen:
            raise RuntimeError("Resource graph is frozen")

    def stats(self) -> Dict[str, int]:
        refs = list(self.references())
        return {
            'nodes': len(self.nodes),
            'dependency_only': sum(1 for n in self.nodes.values() if n.dependency_only),
            'references': len(refs),
            'resolved': sum(1 for r in refs if r.status == RESOLVED),
            'unresolved': sum(1 for r in refs if r.status == UNRESOLVED),
            'demoted': sum(1 for r in refs if r.demoted),
        }


_INVALID_NAME_CHARS = re.compile(r'[^a-z0-9]')


def sanitize_name(provider_id: str) -> str:
    """Lower-cased provider id with every non-alphanumeric character replaced by `_`"""
    name = _INVALID_NAME_CHARS.sub('_', provider_id.lower()) or '_'
    if name[0].isdigit():
        name = f"_{name}"
    return name


class GraphBuilder:
    """Builds and extends ResourceGraphs from raw resources"""

    def __init__(self, registry: ResourceRegistry):
        self.registry = registry

    def build(self, raw_resources: Iterable[RawResource]) -> ResourceGraph:
        """
        Build a graph from the filtered discovery result

        Args:
            raw_resources: Resources that passed the filter engine

        Returns:
            ResourceGraph with pending references; failures are in build_errors
        """
        graph = ResourceGraph()
        added = self.extend(graph, raw_resources)
        logger.info(f"Built graph with {len(added)} nodes, {len(graph.build_errors)} build errors")
        return graph

    def extend(self, graph: ResourceGraph, raw_resources: Iterable[RawResource],
               dependency_only: bool = False) -> List[NodeID]:
        """
        Insert further resources into an existing graph

        Resources are processed in (provider_id, resource_type) order so
        local names do not depend on discovery order. Duplicates of an
        existing node are dropped.

        Returns:
            Ids of the nodes actually added
        """
        added = []
        for raw in sorted(raw_resources, key=lambda r: (r.provider_id, r.resource_type)):
            node_id = NodeID(raw.resource_type, raw.provider_id)
            if node_id in graph:
                logger.debug(f"Dropping duplicate {node_id}")
                continue

            try:
                node = self._make_node(graph, node_id, raw, dependency_only)
            except (UnsupportedResourceTypeError, NormalizationError) as e:
                logger.warning(f"Skipping {node_id}: {e}")
                graph.build_errors.append(BuildError(raw.resource_type, raw.provider_id, str(e)))
                continue

            graph.add_node(node)
            added.append(node_id)
        return added

    def _make_node(self, graph: ResourceGraph, node_id: NodeID, raw: RawResource,
                   dependency_only: bool) -> GraphNode:
        descriptor = self.registry.require(raw.resource_type)

        try:
            attributes = descriptor.normalize(raw.attributes)
        except ValueError as e:
            raise NormalizationError(raw.resource_type, raw.provider_id, str(e)) from e

        references = []
        for reference_field in descriptor.reference_fields:
            for path, value in reference_field.locate(attributes):
                try:
                    target_id = reference_field.target_id(value)
                except (ValueError, TypeError) as e:
                    raise NormalizationError(raw.resource_type, raw.provider_id,
                                             f"bad reference at {reference_field.attribute}: {e}") from e
                references.append(Reference(
                    source=node_id,
                    target=NodeID(reference_field.target_type, target_id),
                    path=path,
                    value=value,
                    target_attribute=reference_field.target_attribute,
                    soft=reference_field.soft,
                ))

        return GraphNode(
            id=node_id,
            terraform_type=descriptor.name,
            local_name=graph.claim_name(descriptor.name, raw.provider_id),
            identity=raw.provider_id,
            attributes=attributes,
            category=descriptor.category,
            outgoing_refs=references,
            dependency_only=dependency_only,
        )
